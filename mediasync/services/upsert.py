"""Batched reconciliation of source catalogs into the canonical store."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import BatchPersistenceError, CapabilityError, SyncCancelledError
from ..identity import IdentityResolver, merge_identities, normalize_identities
from ..models import CanonicalMediaItem, QueryOptions, SeriesPayload, SyncTarget
from ..repository import MediaItemRepository
from ..utils import chunked
from .adapters import (
    MediaSourceAdapter,
    MovieProvider,
    MusicProvider,
    PlaylistProvider,
    SeriesProvider,
)
from .progress import ProgressReporter

logger = logging.getLogger(__name__)

BATCH_SIZES: dict[str, int] = {
    "movie": 50,
    "series": 50,
    "album": 50,
    "artist": 50,
    "playlist": 50,
    "track": 100,
    "episode": 100,
}

_TARGET_MEDIA_TYPES: dict[SyncTarget, str] = {
    SyncTarget.MOVIES: "movie",
    SyncTarget.SERIES: "series",
    SyncTarget.EPISODES: "episode",
    SyncTarget.TRACKS: "track",
    SyncTarget.ALBUMS: "album",
    SyncTarget.ARTISTS: "artist",
    SyncTarget.PLAYLISTS: "playlist",
}


@dataclass(slots=True)
class SyncStats:
    """Outcome counters of one media-type sync."""

    total: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0

    @property
    def persisted(self) -> int:
        return self.created + self.updated


def prepare_new_item(incoming: CanonicalMediaItem, source_id: int) -> CanonicalMediaItem:
    """Return a copy of ``incoming`` ready to be stored as a new canonical item."""

    item = normalize_identities(incoming.model_copy(deep=True))
    item.id = None
    item.source_mappings = [m for m in item.source_mappings if m.source_id == source_id]
    item.apply_payload_fields()
    return item


def merge_into_existing(
    existing: CanonicalMediaItem, incoming: CanonicalMediaItem, source_id: int
) -> CanonicalMediaItem:
    """Fold a freshly fetched record from ``source_id`` into ``existing``.

    Only the active source's mapping is merged. Payload and title fields
    always come from the incoming record; series keep the union of genres and
    any counts the incoming payload omits.
    """

    merged = existing.model_copy(deep=True)
    own = normalize_identities(incoming.model_copy(deep=True))
    own.source_mappings = [m for m in own.source_mappings if m.source_id == source_id]
    merge_identities(merged, own)

    payload = own.payload.model_copy(deep=True)
    previous = existing.payload
    if isinstance(payload, SeriesPayload) and isinstance(previous, SeriesPayload):
        payload.genres = _union(previous.genres, payload.genres)
        if payload.season_count is None:
            payload.season_count = previous.season_count
        if payload.episode_count is None:
            payload.episode_count = previous.episode_count
    merged.payload = payload
    merged.apply_payload_fields()
    return merged


def _union(existing: Sequence[str], incoming: Sequence[str]) -> list[str]:
    seen: set[str] = set()
    combined: list[str] = []
    for genre in [*existing, *incoming]:
        key = genre.strip().lower()
        if not key or key in seen:
            continue
        seen.add(key)
        combined.append(genre)
    return combined


class BatchUpsertProcessor:
    """Fetches one media type from a source and upserts it in batches."""

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

    async def sync_media_type(
        self,
        adapter: MediaSourceAdapter,
        target: SyncTarget,
        source_id: int,
        job_run_id: int,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncStats:
        media_type = _TARGET_MEDIA_TYPES.get(target)
        if media_type is None:
            raise ValueError(f"{target.value} is not a catalog media type")

        if target is SyncTarget.EPISODES:
            items = await self._fetch_episodes(adapter, source_id, job_run_id)
        else:
            fetch = self._listing_call(adapter, target)
            await self._reporter.set_progress(
                job_run_id, 10, f"Fetching {target.value} from client"
            )
            items = await fetch(QueryOptions())
            if target is SyncTarget.SERIES:
                await self._fill_series_counts(adapter, items, source_id)

        return await self._upsert_items(
            items,
            media_type=media_type,
            label=target.value,
            source_id=source_id,
            job_run_id=job_run_id,
            cancel_event=cancel_event,
        )

    def _listing_call(
        self, adapter: MediaSourceAdapter, target: SyncTarget
    ) -> Callable[[QueryOptions], Awaitable[list[CanonicalMediaItem]]]:
        if target is SyncTarget.MOVIES:
            if not adapter.supports_movies() or not isinstance(adapter, MovieProvider):
                raise CapabilityError("movies")
            return adapter.get_movies
        if target is SyncTarget.SERIES:
            if not adapter.supports_series() or not isinstance(adapter, SeriesProvider):
                raise CapabilityError("series")
            return adapter.get_series
        if target is SyncTarget.PLAYLISTS:
            if not isinstance(adapter, PlaylistProvider) or not adapter.supports_playlists():
                raise CapabilityError("playlists")
            return adapter.get_playlists
        if not adapter.supports_music() or not isinstance(adapter, MusicProvider):
            raise CapabilityError("music")
        if target is SyncTarget.TRACKS:
            return adapter.get_tracks
        if target is SyncTarget.ALBUMS:
            return adapter.get_albums
        return adapter.get_artists

    async def _fetch_episodes(
        self, adapter: MediaSourceAdapter, source_id: int, job_run_id: int
    ) -> list[CanonicalMediaItem]:
        """Walk series, then seasons, then episodes, in fetch order."""

        if not adapter.supports_series() or not isinstance(adapter, SeriesProvider):
            raise CapabilityError("series")

        await self._reporter.set_progress(job_run_id, 10, "Fetching series from client")
        series_list = await adapter.get_series(QueryOptions())
        total = len(series_list)
        await self._reporter.set_progress(
            job_run_id, 15, f"Fetching seasons and episodes for {total} series"
        )

        episodes: list[CanonicalMediaItem] = []
        for index, series in enumerate(series_list, start=1):
            series_id = series.source_item_id(source_id)
            if series_id is None:
                logger.warning(
                    "Skipping series %r without a mapping for source %s",
                    series.title or series.payload.title,
                    source_id,
                )
            else:
                seasons = await adapter.get_series_seasons(series_id)
                for season in seasons:
                    number = getattr(season.payload, "number", 0)
                    episodes.extend(await adapter.get_series_episodes(series_id, number))
            await self._reporter.set_progress(
                job_run_id,
                20 + index * 30 // total,
                f"Fetched episodes for {index}/{total} series",
            )
        return episodes

    async def _fill_series_counts(
        self,
        adapter: SeriesProvider,
        series_list: list[CanonicalMediaItem],
        source_id: int,
    ) -> None:
        """Derive season and episode counts the source did not report."""

        for series in series_list:
            payload = series.payload
            if not isinstance(payload, SeriesPayload):
                continue
            if payload.season_count is not None and payload.episode_count is not None:
                continue
            series_id = series.source_item_id(source_id)
            if series_id is None:
                continue
            try:
                seasons = await adapter.get_series_seasons(series_id)
            except Exception as exc:
                logger.warning(
                    "Could not fetch seasons for series %s from source %s: %s",
                    series_id,
                    source_id,
                    exc,
                )
                continue
            if not seasons:
                continue
            if payload.season_count is None:
                payload.season_count = len(seasons)
            if payload.episode_count is None:
                payload.episode_count = sum(
                    getattr(season.payload, "episode_count", None) or 0 for season in seasons
                )

    async def _upsert_items(
        self,
        items: Sequence[CanonicalMediaItem],
        *,
        media_type: str,
        label: str,
        source_id: int,
        job_run_id: int,
        cancel_event: asyncio.Event | None,
    ) -> SyncStats:
        stats = SyncStats(total=len(items))
        total = stats.total
        await self._reporter.set_total(job_run_id, total)
        await self._reporter.set_progress(job_run_id, 50, f"Processing {total} {label}")

        done = 0
        for batch in chunked(items, BATCH_SIZES[media_type]):
            if cancel_event is not None and cancel_event.is_set():
                raise SyncCancelledError(job_run_id=job_run_id)
            persisted = await self._persist_batch(batch, media_type, source_id, stats)
            done += len(batch)
            await self._reporter.add_processed(job_run_id, persisted)
            await self._reporter.set_progress(
                job_run_id,
                50 + done * 50 // total,
                f"Processed {done}/{total} {label}",
            )

        await self._reporter.set_progress(job_run_id, 100, f"Synced {total} {label}")
        logger.info(
            "Synced %s %s from source %s: %s created, %s updated, %s skipped, %s failed",
            total,
            label,
            source_id,
            stats.created,
            stats.updated,
            stats.skipped,
            stats.failed,
        )
        return stats

    async def _persist_batch(
        self,
        batch: Sequence[CanonicalMediaItem],
        media_type: str,
        source_id: int,
        stats: SyncStats,
    ) -> int:
        """Write one batch in a single transaction, isolating each item."""

        created = updated = skipped = failed = 0
        async with self._write_lock:
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        resolver = IdentityResolver(session)
                        items = MediaItemRepository(session)
                        for incoming in batch:
                            source_item_id = incoming.source_item_id(source_id)
                            if source_item_id is None:
                                logger.debug(
                                    "Skipping %s %r without a mapping for source %s",
                                    media_type,
                                    incoming.title or incoming.payload.title,
                                    source_id,
                                )
                                skipped += 1
                                continue
                            try:
                                async with session.begin_nested():
                                    was_created = await self._upsert_one(
                                        resolver, items, incoming, media_type, source_id
                                    )
                            except (SQLAlchemyError, ValueError) as exc:
                                logger.warning(
                                    "Failed to persist %s %s from source %s: %s",
                                    media_type,
                                    source_item_id,
                                    source_id,
                                    exc,
                                )
                                failed += 1
                                continue
                            if was_created:
                                created += 1
                            else:
                                updated += 1
            except SQLAlchemyError as exc:
                raise BatchPersistenceError(
                    f"failed to commit {media_type} batch: {exc}"
                ) from exc

        stats.created += created
        stats.updated += updated
        stats.skipped += skipped
        stats.failed += failed
        return created + updated

    async def _upsert_one(
        self,
        resolver: IdentityResolver,
        items: MediaItemRepository,
        incoming: CanonicalMediaItem,
        media_type: str,
        source_id: int,
    ) -> bool:
        """Create or update the canonical item; returns ``True`` when created."""

        if incoming.type != media_type:
            raise ValueError(f"expected {media_type} but source returned {incoming.type}")
        existing = await resolver.find_existing(incoming, source_id)
        if existing is None:
            await items.create(prepare_new_item(incoming, source_id))
            return True
        await items.update(merge_into_existing(existing, incoming, source_id))
        return False
