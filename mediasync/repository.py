"""Session-scoped data access for canonical items, playback and jobs."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from .db_models import (
    JobRunRecord,
    MediaItemExternalIDRecord,
    MediaItemRecord,
    MediaItemSourceRecord,
    MediaSourceRecord,
    PlaybackRecordRow,
    SyncScheduleRecord,
)
from .models import (
    CanonicalMediaItem,
    ExternalID,
    Frequency,
    JobRun,
    JobStatus,
    PlaybackRecord,
    SourceConfig,
    SyncScheduleEntry,
)
from .utils import utcnow


class MediaItemRepository:
    """Reads and writes canonical items and keeps their lookup indexes aligned."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, item_id: int) -> CanonicalMediaItem | None:
        record = await self._session.get(MediaItemRecord, item_id)
        if record is None:
            return None
        return self._to_model(record)

    async def resolve_id(self, source_id: int, source_item_id: str) -> int | None:
        stmt = select(MediaItemSourceRecord.media_item_id).where(
            MediaItemSourceRecord.source_id == source_id,
            MediaItemSourceRecord.source_item_id == source_item_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def find_by_source_mapping(
        self, source_id: int, source_item_id: str
    ) -> CanonicalMediaItem | None:
        item_id = await self.resolve_id(source_id, source_item_id)
        if item_id is None:
            return None
        return await self.get(item_id)

    async def find_by_external_ids(
        self,
        media_type: str,
        external_ids: Iterable[ExternalID],
        *,
        catalogs: Sequence[str] | None = None,
    ) -> CanonicalMediaItem | None:
        """Return the oldest item of ``media_type`` sharing any external id."""

        for external in external_ids:
            if catalogs is not None and external.catalog_name not in catalogs:
                continue
            if not external.catalog_id:
                continue
            stmt = (
                select(MediaItemRecord)
                .join(
                    MediaItemExternalIDRecord,
                    MediaItemExternalIDRecord.media_item_id == MediaItemRecord.id,
                )
                .where(
                    MediaItemRecord.type == media_type,
                    MediaItemExternalIDRecord.catalog_name == external.catalog_name,
                    MediaItemExternalIDRecord.catalog_id == external.catalog_id,
                )
                .order_by(MediaItemRecord.id)
                .limit(1)
            )
            result = await self._session.execute(stmt)
            record = result.scalar_one_or_none()
            if record is not None:
                return self._to_model(record)
        return None

    async def create(self, item: CanonicalMediaItem) -> CanonicalMediaItem:
        now = utcnow()
        record = MediaItemRecord(
            type=item.type,
            title=item.title,
            release_date=item.release_date,
            release_year=item.release_year,
            payload=item.payload.model_dump(mode="json"),
            source_mappings=[m.model_dump(mode="json") for m in item.source_mappings],
            external_ids=[e.model_dump(mode="json") for e in item.external_ids],
            created_at=now,
            updated_at=now,
        )
        self._session.add(record)
        await self._session.flush()
        await self._write_indexes(record.id, item)
        return self._to_model(record)

    async def update(self, item: CanonicalMediaItem) -> CanonicalMediaItem:
        if item.id is None:
            raise ValueError("Cannot update a media item without an id")
        record = await self._session.get(MediaItemRecord, item.id)
        if record is None:
            raise KeyError(f"Media item {item.id} not found")
        record.type = item.type
        record.title = item.title
        record.release_date = item.release_date
        record.release_year = item.release_year
        record.payload = item.payload.model_dump(mode="json")
        record.source_mappings = [m.model_dump(mode="json") for m in item.source_mappings]
        record.external_ids = [e.model_dump(mode="json") for e in item.external_ids]
        record.updated_at = utcnow()
        await self._session.execute(
            delete(MediaItemSourceRecord).where(
                MediaItemSourceRecord.media_item_id == item.id
            )
        )
        await self._session.execute(
            delete(MediaItemExternalIDRecord).where(
                MediaItemExternalIDRecord.media_item_id == item.id
            )
        )
        await self._session.flush()
        await self._write_indexes(item.id, item)
        return self._to_model(record)

    async def list_all(self, media_type: str | None = None) -> list[CanonicalMediaItem]:
        stmt = select(MediaItemRecord).order_by(MediaItemRecord.id)
        if media_type is not None:
            stmt = stmt.where(MediaItemRecord.type == media_type)
        result = await self._session.execute(stmt)
        return [self._to_model(record) for record in result.scalars().all()]

    async def _write_indexes(self, item_id: int, item: CanonicalMediaItem) -> None:
        for mapping in item.source_mappings:
            self._session.add(
                MediaItemSourceRecord(
                    media_item_id=item_id,
                    source_id=mapping.source_id,
                    source_type=mapping.source_type,
                    source_item_id=mapping.source_item_id,
                )
            )
        for external in item.external_ids:
            self._session.add(
                MediaItemExternalIDRecord(
                    media_item_id=item_id,
                    catalog_name=external.catalog_name,
                    catalog_id=external.catalog_id,
                )
            )
        await self._session.flush()

    @staticmethod
    def _to_model(record: MediaItemRecord) -> CanonicalMediaItem:
        return CanonicalMediaItem.model_validate(
            {
                "id": record.id,
                "type": record.type,
                "title": record.title,
                "release_date": record.release_date,
                "release_year": record.release_year,
                "payload": record.payload,
                "source_mappings": record.source_mappings or [],
                "external_ids": record.external_ids or [],
            }
        )


class PlaybackRepository:
    """Upserts playback state keyed by (user, canonical item)."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, user_id: int, media_item_id: int) -> PlaybackRecord | None:
        row = await self._get_row(user_id, media_item_id)
        return self._to_model(row) if row is not None else None

    async def list_for_user(self, user_id: int) -> list[PlaybackRecord]:
        stmt = (
            select(PlaybackRecordRow)
            .where(PlaybackRecordRow.user_id == user_id)
            .order_by(PlaybackRecordRow.id)
        )
        result = await self._session.execute(stmt)
        return [self._to_model(row) for row in result.scalars().all()]

    async def record(self, incoming: PlaybackRecord) -> PlaybackRecord:
        """Create or merge the playback state for ``incoming``.

        Repeating the same observation leaves the stored state unchanged and
        a completed record is never reset.
        """

        if incoming.media_item_id is None:
            raise ValueError("Playback records must reference a canonical item")
        row = await self._get_row(incoming.user_id, incoming.media_item_id)
        completed = incoming.completed or incoming.reached_completion
        if row is None:
            now = utcnow()
            row = PlaybackRecordRow(
                user_id=incoming.user_id,
                media_item_id=incoming.media_item_id,
                media_type=incoming.media_type,
                play_count=incoming.play_count,
                position_seconds=incoming.position_seconds,
                duration_seconds=incoming.duration_seconds,
                played_percentage=incoming.played_percentage,
                completed=completed,
                favorite=incoming.favorite,
                user_rating=incoming.user_rating,
                played_at=incoming.played_at,
                last_played_at=incoming.last_played_at or incoming.played_at,
                created_at=now,
                updated_at=now,
            )
            self._session.add(row)
            await self._session.flush()
            return self._to_model(row)

        incoming_last = incoming.last_played_at or incoming.played_at
        is_newer = (
            row.last_played_at is None
            or incoming_last is None
            or incoming_last >= row.last_played_at
        )
        if is_newer:
            row.position_seconds = incoming.position_seconds
            row.duration_seconds = incoming.duration_seconds or row.duration_seconds
            row.played_percentage = incoming.played_percentage
        row.play_count = max(row.play_count or 0, incoming.play_count)
        row.completed = bool(row.completed) or completed
        row.favorite = incoming.favorite
        if incoming.user_rating is not None:
            row.user_rating = incoming.user_rating
        row.played_at = _earliest(row.played_at, incoming.played_at)
        row.last_played_at = _latest(row.last_played_at, incoming_last)
        await self._session.flush()
        return self._to_model(row)

    async def _get_row(self, user_id: int, media_item_id: int) -> PlaybackRecordRow | None:
        stmt = select(PlaybackRecordRow).where(
            PlaybackRecordRow.user_id == user_id,
            PlaybackRecordRow.media_item_id == media_item_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _to_model(row: PlaybackRecordRow) -> PlaybackRecord:
        return PlaybackRecord(
            id=row.id,
            user_id=row.user_id,
            media_item_id=row.media_item_id,
            media_type=row.media_type,
            play_count=row.play_count or 0,
            position_seconds=row.position_seconds or 0,
            duration_seconds=row.duration_seconds or 0,
            played_percentage=row.played_percentage or 0.0,
            completed=bool(row.completed),
            favorite=bool(row.favorite),
            user_rating=row.user_rating,
            played_at=row.played_at,
            last_played_at=row.last_played_at,
        )


def _earliest(left: datetime | None, right: datetime | None) -> datetime | None:
    if left is None:
        return right
    if right is None:
        return left
    return min(left, right)


def _latest(left: datetime | None, right: datetime | None) -> datetime | None:
    if left is None:
        return right
    if right is None:
        return left
    return max(left, right)


class JobRunRepository:
    """Persistence for job runs; a finished run is never modified again."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create_job_run(self, job_run: JobRun) -> JobRun:
        record = JobRunRecord(
            job_name=job_run.job_name,
            job_type=job_run.job_type,
            status=job_run.status.value,
            start_time=job_run.start_time or utcnow(),
            progress=job_run.progress,
            progress_message=job_run.progress_message,
            total_items=job_run.total_items,
            processed_items=job_run.processed_items,
            user_id=job_run.user_id,
            metadata_json=dict(job_run.metadata) or None,
        )
        self._session.add(record)
        await self._session.flush()
        return self._to_model(record)

    async def get(self, job_run_id: int) -> JobRun | None:
        record = await self._session.get(JobRunRecord, job_run_id)
        return self._to_model(record) if record is not None else None

    async def update_job_progress(
        self, job_run_id: int, progress: int, message: str | None
    ) -> bool:
        """Record progress; percentages never move backwards."""

        record = await self._running_record(job_run_id)
        if record is None:
            return False
        bounded = max(0, min(100, int(progress)))
        record.progress = max(record.progress or 0, bounded)
        if message is not None:
            record.progress_message = message
        await self._session.flush()
        return True

    async def set_total_items(self, job_run_id: int, total: int) -> bool:
        record = await self._running_record(job_run_id)
        if record is None:
            return False
        record.total_items = max(0, int(total))
        await self._session.flush()
        return True

    async def increment_processed_items(self, job_run_id: int, count: int) -> bool:
        record = await self._running_record(job_run_id)
        if record is None:
            return False
        record.processed_items = (record.processed_items or 0) + max(0, int(count))
        await self._session.flush()
        return True

    async def complete_job_run(
        self, job_run_id: int, status: JobStatus, error_message: str | None
    ) -> bool:
        record = await self._running_record(job_run_id)
        if record is None:
            return False
        record.status = status.value
        record.end_time = utcnow()
        record.error_message = error_message or None
        if status is JobStatus.COMPLETED:
            record.progress = 100
        await self._session.flush()
        return True

    async def _running_record(self, job_run_id: int) -> JobRunRecord | None:
        record = await self._session.get(JobRunRecord, job_run_id)
        if record is None or record.status != JobStatus.RUNNING.value:
            return None
        return record

    @staticmethod
    def _to_model(record: JobRunRecord) -> JobRun:
        return JobRun(
            id=record.id,
            job_name=record.job_name,
            job_type=record.job_type,
            status=JobStatus(record.status),
            start_time=record.start_time,
            end_time=record.end_time,
            progress=record.progress or 0,
            progress_message=record.progress_message,
            error_message=record.error_message,
            total_items=record.total_items or 0,
            processed_items=record.processed_items or 0,
            user_id=record.user_id,
            metadata=dict(record.metadata_json or {}),
        )


class ScheduleRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, entry: SyncScheduleEntry) -> SyncScheduleEntry:
        record = SyncScheduleRecord(
            user_id=entry.user_id,
            source_id=entry.source_id,
            source_type=entry.source_type,
            media_type=entry.media_type,
            frequency=entry.frequency.value,
            last_run_time=entry.last_run_time,
            enabled=entry.enabled,
        )
        self._session.add(record)
        await self._session.flush()
        return self._to_model(record)

    async def get(self, schedule_id: int) -> SyncScheduleEntry | None:
        record = await self._session.get(SyncScheduleRecord, schedule_id)
        return self._to_model(record) if record is not None else None

    async def list_all(self) -> list[SyncScheduleEntry]:
        result = await self._session.execute(
            select(SyncScheduleRecord).order_by(SyncScheduleRecord.id)
        )
        return [self._to_model(record) for record in result.scalars().all()]

    async def get_due_schedules(self, now: datetime) -> list[SyncScheduleEntry]:
        """Return enabled entries whose frequency interval has elapsed."""

        entries = await self.list_all()
        return [entry for entry in entries if entry.enabled and entry.is_due(now)]

    async def update_schedule_last_run(self, schedule_id: int, when: datetime) -> None:
        record = await self._session.get(SyncScheduleRecord, schedule_id)
        if record is None:
            return
        record.last_run_time = when
        await self._session.flush()

    @staticmethod
    def _to_model(record: SyncScheduleRecord) -> SyncScheduleEntry:
        return SyncScheduleEntry(
            id=record.id,
            user_id=record.user_id,
            source_id=record.source_id,
            source_type=record.source_type,
            media_type=record.media_type,
            frequency=Frequency.parse(record.frequency),
            last_run_time=record.last_run_time,
            enabled=bool(record.enabled),
        )


class SourceRepository:
    def __init__(self, session: AsyncSession):
        self._session = session

    async def add(self, config: SourceConfig) -> SourceConfig:
        record = MediaSourceRecord(
            user_id=config.user_id,
            source_type=config.source_type,
            name=config.name,
            base_url=config.base_url,
            api_key=config.api_key,
            remote_user_id=config.remote_user_id,
            enabled=config.enabled,
        )
        if config.id:
            record.id = config.id
        self._session.add(record)
        await self._session.flush()
        return self._to_model(record)

    async def get(
        self, source_id: int, *, source_type: str | None = None
    ) -> SourceConfig | None:
        record = await self._session.get(MediaSourceRecord, source_id)
        if record is None:
            return None
        if source_type is not None and record.source_type != source_type:
            return None
        return self._to_model(record)

    async def list_for_user(self, user_id: int) -> list[SourceConfig]:
        stmt = (
            select(MediaSourceRecord)
            .where(
                MediaSourceRecord.user_id == user_id,
                MediaSourceRecord.enabled.is_(True),
            )
            .order_by(MediaSourceRecord.id)
        )
        result = await self._session.execute(stmt)
        return [self._to_model(record) for record in result.scalars().all()]

    @staticmethod
    def _to_model(record: MediaSourceRecord) -> SourceConfig:
        return SourceConfig(
            id=record.id,
            user_id=record.user_id,
            source_type=record.source_type,
            name=record.name or "",
            base_url=record.base_url,
            api_key=record.api_key,
            remote_user_id=record.remote_user_id,
            enabled=bool(record.enabled),
        )
