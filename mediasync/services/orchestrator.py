"""Decides which syncs run and records their outcome as job runs."""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from datetime import datetime
from typing import Callable, Mapping

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..exceptions import (
    AdapterResolutionError,
    InvalidSyncRequestError,
    SyncCancelledError,
    SyncError,
    UnsupportedMediaTypeError,
)
from ..models import Frequency, JobRun, JobStatus, SourceConfig, SyncScheduleEntry, SyncTarget
from ..repository import ScheduleRepository, SourceRepository
from ..utils import normalize_sync_target, utcnow
from .adapters import AdapterFactory, MediaSourceAdapter, close_adapter
from .history import HistoryReconciler
from .progress import ProgressReporter
from .upsert import BatchUpsertProcessor

logger = logging.getLogger(__name__)

JOB_NAME_PREFIX = "system.media.sync"
FULL_SYNC_TARGETS: tuple[SyncTarget, ...] = (
    SyncTarget.MOVIES,
    SyncTarget.SERIES,
    SyncTarget.TRACKS,
    SyncTarget.HISTORY,
)


class SyncOrchestrator:
    """Runs scheduled, manual and full syncs one source/media type at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        factories: Mapping[str, AdapterFactory],
        *,
        poll_seconds: int = 3_600,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._session_factory = session_factory
        self._factories = dict(factories)
        self._poll_seconds = poll_seconds
        self._clock = clock
        self._write_lock = asyncio.Lock()
        self.reporter = ProgressReporter(session_factory)
        self._upserts = BatchUpsertProcessor(
            session_factory, self.reporter, write_lock=self._write_lock
        )
        self._history = HistoryReconciler(
            session_factory, self.reporter, write_lock=self._write_lock
        )
        self._schedule_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        """Launch the background schedule loop."""

        if self._schedule_task is None:
            self._schedule_task = asyncio.create_task(self._schedule_loop())

    async def stop(self) -> None:
        """Stop the background schedule loop."""

        if self._schedule_task is None:
            return
        self._schedule_task.cancel()
        with suppress(asyncio.CancelledError):
            await self._schedule_task
        self._schedule_task = None

    async def _schedule_loop(self) -> None:
        while True:
            await asyncio.sleep(self._poll_seconds)
            try:
                await self.run_due_schedules()
            except Exception as exc:  # pragma: no cover - background safety net
                logger.exception("Scheduled sync failed: %s", exc)

    async def run_due_schedules(
        self, *, cancel_event: asyncio.Event | None = None
    ) -> list[JobRun]:
        """Run every enabled schedule entry that is due, in order.

        A failing entry is logged and does not stop the remaining ones. The
        entry's last run time advances after each attempt.
        """

        async with self._session_factory() as session:
            due = await ScheduleRepository(session).get_due_schedules(self._clock())
        if due:
            logger.info("Running %s due sync schedule(s)", len(due))

        job_runs: list[JobRun] = []
        for entry in due:
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Scheduled syncs cancelled before schedule %s", entry.id)
                break
            job_run_id: int | None = None
            try:
                job_run = await self.run_one(entry, cancel_event=cancel_event)
                job_run_id = job_run.id
            except SyncCancelledError as exc:
                logger.info("Scheduled sync %s cancelled", entry.id)
                if exc.job_run_id is not None:
                    job_runs.append(await self._load_job_run(exc.job_run_id))
                break
            except SyncError as exc:
                logger.error(
                    "Scheduled %s sync for source %s failed: %s",
                    entry.media_type,
                    entry.source_id,
                    exc.message,
                )
                job_run_id = exc.job_run_id
            except Exception:
                logger.exception(
                    "Scheduled %s sync for source %s crashed",
                    entry.media_type,
                    entry.source_id,
                )
            if job_run_id is not None:
                job_runs.append(await self._load_job_run(job_run_id))
            await self._mark_schedule_run(entry)
        return job_runs

    async def run_manual(
        self,
        user_id: int,
        source_id: int,
        media_type: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> JobRun:
        """Run one sync outside the schedule.

        The source type is found by asking each registered factory for the
        source's configuration; the first factory that knows it wins.
        """

        if user_id <= 0 or source_id <= 0:
            raise InvalidSyncRequestError("user id and source id must be positive")
        if normalize_sync_target(media_type) is SyncTarget.FULL:
            return await self.run_full(user_id, cancel_event=cancel_event)

        config = await self._detect_source(user_id, source_id)
        entry = SyncScheduleEntry(
            user_id=user_id,
            source_id=source_id,
            source_type=config.source_type,
            media_type=media_type,
            frequency=Frequency.MANUAL,
        )
        return await self.run_one(entry, cancel_event=cancel_event)

    async def run_full(
        self, user_id: int, *, cancel_event: asyncio.Event | None = None
    ) -> JobRun:
        """Sync movies, series, music and history from every source of the user."""

        parent = await self.reporter.start(
            f"{JOB_NAME_PREFIX}.full", user_id=user_id, metadata={"mediaType": "full"}
        )
        try:
            async with self._session_factory() as session:
                sources = await SourceRepository(session).list_for_user(user_id)
            if not sources:
                await self.reporter.complete(
                    parent.id, JobStatus.FAILED, "No media sources found for user"
                )
                return await self._load_job_run(parent.id)

            steps = [(source, target) for source in sources for target in FULL_SYNC_TARGETS]
            failures = 0
            for index, (source, target) in enumerate(steps):
                if cancel_event is not None and cancel_event.is_set():
                    raise SyncCancelledError(job_run_id=parent.id)
                await self.reporter.set_progress(
                    parent.id,
                    index * 100 // len(steps),
                    f"Syncing {target.value} from {source.name or source.source_type}",
                )
                entry = SyncScheduleEntry(
                    user_id=user_id,
                    source_id=source.id,
                    source_type=source.source_type,
                    media_type=target.value,
                    frequency=Frequency.MANUAL,
                )
                try:
                    await self.run_one(entry, cancel_event=cancel_event)
                except SyncCancelledError:
                    raise
                except SyncError as exc:
                    failures += 1
                    logger.warning(
                        "Full sync step %s for source %s failed: %s",
                        target.value,
                        source.id,
                        exc.message,
                    )
                except Exception:
                    failures += 1
                    logger.exception(
                        "Full sync step %s for source %s crashed", target.value, source.id
                    )
            await self.reporter.set_progress(
                parent.id,
                100,
                f"Synced {len(sources)} source(s), {failures} step(s) failed",
            )
            await self.reporter.complete(parent.id, JobStatus.COMPLETED)
        except asyncio.CancelledError:
            await self.reporter.complete(parent.id, JobStatus.FAILED, "Sync cancelled")
            raise
        except SyncError as exc:
            if exc.job_run_id is None:
                exc.job_run_id = parent.id
            await self.reporter.complete(parent.id, JobStatus.FAILED, exc.message)
            raise
        return await self._load_job_run(parent.id)

    async def run_one(
        self,
        entry: SyncScheduleEntry,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> JobRun:
        """Create a job run and sync one media type from one source.

        Failures are recorded on the job run and re-raised.
        """

        target = normalize_sync_target(entry.media_type)
        if target is SyncTarget.FULL:
            return await self.run_full(entry.user_id, cancel_event=cancel_event)

        job_type = target.value if target is not None else entry.media_type.strip().lower()
        job_run = await self.reporter.start(
            f"{JOB_NAME_PREFIX}.{job_type}",
            user_id=entry.user_id,
            metadata={
                "sourceId": entry.source_id,
                "sourceType": entry.source_type,
                "mediaType": entry.media_type,
            },
        )
        job_run_id = job_run.id
        try:
            await self.reporter.set_progress(job_run_id, 0, "Starting media sync")
            if target is None:
                raise UnsupportedMediaTypeError(entry.media_type)
            adapter = await self._resolve_adapter(entry.source_type, entry.source_id)
            try:
                await self._dispatch(adapter, target, entry, job_run_id, cancel_event)
            finally:
                await close_adapter(adapter)
        except asyncio.CancelledError:
            await self.reporter.complete(job_run_id, JobStatus.FAILED, "Sync cancelled")
            raise
        except SyncError as exc:
            if exc.job_run_id is None:
                exc.job_run_id = job_run_id
            logger.error(
                "Sync of %s from source %s failed: %s",
                entry.media_type,
                entry.source_id,
                exc.message,
            )
            await self.reporter.complete(job_run_id, JobStatus.FAILED, exc.message)
            raise
        except Exception as exc:
            logger.exception(
                "Sync of %s from source %s crashed", entry.media_type, entry.source_id
            )
            await self.reporter.complete(
                job_run_id, JobStatus.FAILED, str(exc) or exc.__class__.__name__
            )
            raise

        await self.reporter.complete(job_run_id, JobStatus.COMPLETED)
        return await self._load_job_run(job_run_id)

    async def _dispatch(
        self,
        adapter: MediaSourceAdapter,
        target: SyncTarget,
        entry: SyncScheduleEntry,
        job_run_id: int,
        cancel_event: asyncio.Event | None,
    ) -> None:
        if target is SyncTarget.HISTORY:
            await self._history.sync_history(
                adapter,
                entry.source_id,
                job_run_id,
                user_id=entry.user_id,
                cancel_event=cancel_event,
            )
            return
        await self._upserts.sync_media_type(
            adapter, target, entry.source_id, job_run_id, cancel_event=cancel_event
        )

    async def _resolve_adapter(self, source_type: str, source_id: int) -> MediaSourceAdapter:
        factory = self._factories.get(source_type)
        if factory is None:
            raise AdapterResolutionError(f"no adapter registered for source type {source_type}")
        config = await factory.load_config(source_id)
        if config is None:
            raise AdapterResolutionError(f"{source_type} source {source_id} not found")
        if not config.enabled:
            raise AdapterResolutionError(f"{source_type} source {source_id} is disabled")
        try:
            return factory.create(config)
        except Exception as exc:
            raise AdapterResolutionError(
                f"could not create {source_type} adapter for source {source_id}: {exc}"
            ) from exc

    async def _detect_source(self, user_id: int, source_id: int) -> SourceConfig:
        matches: list[SourceConfig] = []
        for source_type, factory in self._factories.items():
            try:
                config = await factory.load_config(source_id)
            except Exception as exc:
                logger.debug("Factory %s could not load source %s: %s", source_type, source_id, exc)
                continue
            if config is None or config.user_id != user_id:
                continue
            matches.append(config)
        if not matches:
            raise AdapterResolutionError(f"source {source_id} not found for user {user_id}")
        if len(matches) > 1:
            logger.warning(
                "Source %s is known to several adapter types (%s); using %s",
                source_id,
                ", ".join(match.source_type for match in matches),
                matches[0].source_type,
            )
        return matches[0]

    async def _mark_schedule_run(self, entry: SyncScheduleEntry) -> None:
        if entry.id is None:
            return
        async with self._session_factory() as session:
            async with session.begin():
                await ScheduleRepository(session).update_schedule_last_run(
                    entry.id, self._clock()
                )

    async def _load_job_run(self, job_run_id: int) -> JobRun:
        job_run = await self.reporter.get(job_run_id)
        if job_run is None:  # pragma: no cover - runs are never deleted
            raise SyncError(f"job run {job_run_id} disappeared", job_run_id=job_run_id)
        return job_run
