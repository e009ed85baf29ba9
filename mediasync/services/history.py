"""Maps per-source playback events onto canonical items."""

from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import BatchPersistenceError, CapabilityError, SyncCancelledError
from ..identity import IdentityResolver, merge_source_mapping
from ..models import CanonicalMediaItem, PlaybackRecord, QueryOptions, SourceMapping
from ..repository import MediaItemRepository, PlaybackRepository
from ..utils import chunked
from .adapters import HistoryProvider, MediaSourceAdapter, MovieProvider
from .progress import ProgressReporter
from .upsert import SyncStats, merge_into_existing, prepare_new_item

logger = logging.getLogger(__name__)

HISTORY_BATCH_SIZE = 100
HISTORY_MEDIA_TYPES = frozenset({"movie", "series", "episode", "track"})


class HistoryReconciler:
    """Reconciles a source's play history into per-user playback records."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reporter: ProgressReporter,
        *,
        write_lock: asyncio.Lock | None = None,
    ):
        self._session_factory = session_factory
        self._reporter = reporter
        self._write_lock = write_lock or asyncio.Lock()

    async def sync_history(
        self,
        adapter: MediaSourceAdapter,
        source_id: int,
        job_run_id: int,
        *,
        user_id: int,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncStats:
        if not isinstance(adapter, HistoryProvider):
            raise CapabilityError("history")
        if not adapter.supports_history():
            logger.info("Source %s does not declare history support, skipping", source_id)
            await self._reporter.set_progress(
                job_run_id, 100, "History not supported by source, skipped"
            )
            return SyncStats()

        await self._reporter.set_progress(job_run_id, 10, "Fetching play history from client")
        records = await adapter.get_play_history(QueryOptions())
        stats = SyncStats(total=len(records))
        total = stats.total
        await self._reporter.set_total(job_run_id, total)
        await self._reporter.set_progress(
            job_run_id, 30, f"Processing {total} history records"
        )

        done = 0
        for batch in chunked(records, HISTORY_BATCH_SIZE):
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError(job_run_id=job_run_id)
            fetched = await self._fetch_missing_movies(adapter, batch, source_id)
            persisted = await self._persist_batch(batch, fetched, source_id, user_id, stats)
            done += len(batch)
            await self._reporter.add_processed(job_run_id, persisted)
            await self._reporter.set_progress(
                job_run_id,
                30 + done * 70 // total,
                f"Processed {done}/{total} history records",
            )

        await self._reporter.set_progress(job_run_id, 100, f"Synced {total} history records")
        logger.info(
            "Synced %s history records from source %s for user %s: %s stored, %s skipped, %s failed",
            total,
            source_id,
            user_id,
            stats.persisted,
            stats.skipped,
            stats.failed,
        )
        return stats

    async def _fetch_missing_movies(
        self,
        adapter: MediaSourceAdapter,
        batch: Sequence[PlaybackRecord],
        source_id: int,
    ) -> dict[str, CanonicalMediaItem]:
        """Fetch movies the canonical store has not seen yet.

        Only movies can be created on demand; other types need a prior
        catalog sync.
        """

        if not isinstance(adapter, MovieProvider):
            return {}
        wanted: list[str] = []
        async with self._session_factory() as session:
            resolver = IdentityResolver(session)
            for record in batch:
                source_item_id = _source_item_id(record, source_id)
                if record.media_type != "movie" or source_item_id is None:
                    continue
                if source_item_id in wanted:
                    continue
                if await resolver.resolve_canonical_id(source_id, source_item_id) is None:
                    wanted.append(source_item_id)

        fetched: dict[str, CanonicalMediaItem] = {}
        for source_item_id in wanted:
            try:
                movie = await adapter.get_movie_by_id(source_item_id)
            except Exception as exc:
                logger.warning(
                    "Failed to fetch movie %s from source %s: %s",
                    source_item_id,
                    source_id,
                    exc,
                )
                continue
            if movie is None:
                logger.warning("Source %s has no movie %s", source_id, source_item_id)
                continue
            merge_source_mapping(
                movie,
                SourceMapping(
                    source_id=source_id,
                    source_type=getattr(adapter, "source_type", ""),
                    source_item_id=source_item_id,
                ),
            )
            fetched[source_item_id] = movie
        return fetched

    async def _persist_batch(
        self,
        batch: Sequence[PlaybackRecord],
        fetched: dict[str, CanonicalMediaItem],
        source_id: int,
        user_id: int,
        stats: SyncStats,
    ) -> int:
        stored = skipped = failed = 0
        async with self._write_lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        resolver = IdentityResolver(session)
                        items = MediaItemRepository(session)
                        playback = PlaybackRepository(session)
                        for record in batch:
                            if record.media_type not in HISTORY_MEDIA_TYPES:
                                logger.debug(
                                    "Skipping history entry of unsupported type %s",
                                    record.media_type,
                                )
                                skipped += 1
                                continue
                            source_item_id = _source_item_id(record, source_id)
                            if source_item_id is None:
                                logger.debug(
                                    "Skipping history entry without a mapping for source %s",
                                    source_id,
                                )
                                skipped += 1
                                continue
                            try:
                                async with session.begin_nested():
                                    media_item_id = await self._resolve_item(
                                        resolver, items, record, source_item_id, source_id, fetched
                                    )
                                    if media_item_id is None:
                                        skipped += 1
                                        continue
                                    await playback.record(
                                        record.model_copy(
                                            update={
                                                "id": None,
                                                "user_id": user_id,
                                                "media_item_id": media_item_id,
                                                "item": None,
                                                "completed": record.reached_completion,
                                            }
                                        )
                                    )
                            except (SQLAlchemyError, ValueError) as exc:
                                logger.warning(
                                    "Failed to record history for %s %s from source %s: %s",
                                    record.media_type,
                                    source_item_id,
                                    source_id,
                                    exc,
                                )
                                failed += 1
                                continue
                            stored += 1
            except SQLAlchemyError as exc:
                raise BatchPersistenceError(f"failed to commit history batch: {exc}") from exc

        stats.created += stored
        stats.skipped += skipped
        stats.failed += failed
        return stored

    async def _resolve_item(
        self,
        resolver: IdentityResolver,
        items: MediaItemRepository,
        record: PlaybackRecord,
        source_item_id: str,
        source_id: int,
        fetched: dict[str, CanonicalMediaItem],
    ) -> int | None:
        media_item_id = await resolver.resolve_canonical_id(source_id, source_item_id)
        if media_item_id is not None:
            return media_item_id
        movie = fetched.get(source_item_id) if record.media_type == "movie" else None
        if movie is None:
            logger.warning(
                "No canonical %s for %s on source %s; run a catalog sync first",
                record.media_type,
                source_item_id,
                source_id,
            )
            return None
        existing = await resolver.find_existing(movie, source_id)
        if existing is not None:
            await items.update(merge_into_existing(existing, movie, source_id))
            return existing.id
        created = await items.create(prepare_new_item(movie, source_id))
        logger.info(
            "Created movie %r from history of source %s", created.title, source_id
        )
        return created.id


def _source_item_id(record: PlaybackRecord, source_id: int) -> str | None:
    if record.item is None:
        return None
    return record.item.source_item_id(source_id)
