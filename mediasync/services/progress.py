"""Job-run bookkeeping for sync operations."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..models import JobRun, JobStatus
from ..repository import JobRunRepository
from ..utils import utcnow

logger = logging.getLogger(__name__)


class ProgressReporter:
    """Records percentage, counters and final status of job runs.

    Every call commits on its own so progress is observable while a run is
    still writing batches. Once a run is completed, later calls are ignored.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def start(
        self,
        job_name: str,
        *,
        user_id: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> JobRun:
        async with self._session_factory() as session:
            async with session.begin():
                job_run = await JobRunRepository(session).create_job_run(
                    JobRun(
                        job_name=job_name,
                        status=JobStatus.RUNNING,
                        start_time=utcnow(),
                        user_id=user_id,
                        metadata=metadata or {},
                    )
                )
        logger.info("Started job run %s (%s)", job_run.id, job_name)
        return job_run

    async def set_progress(self, job_run_id: int, percent: int, message: str | None) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                updated = await JobRunRepository(session).update_job_progress(
                    job_run_id, percent, message
                )
        if not updated:
            logger.debug("Ignored progress update for finished job run %s", job_run_id)
        elif message:
            logger.debug("Job run %s at %s%%: %s", job_run_id, percent, message)

    async def set_total(self, job_run_id: int, total: int) -> None:
        async with self._session_factory() as session:
            async with session.begin():
                await JobRunRepository(session).set_total_items(job_run_id, total)

    async def add_processed(self, job_run_id: int, count: int) -> None:
        if count <= 0:
            return
        async with self._session_factory() as session:
            async with session.begin():
                await JobRunRepository(session).increment_processed_items(job_run_id, count)

    async def complete(
        self,
        job_run_id: int,
        status: JobStatus,
        error_message: str | None = None,
    ) -> bool:
        """Finalise the run; returns ``False`` when it was already finished."""

        async with self._session_factory() as session:
            async with session.begin():
                completed = await JobRunRepository(session).complete_job_run(
                    job_run_id, status, error_message
                )
        if not completed:
            logger.warning(
                "Job run %s already finished, ignoring %s", job_run_id, status.value
            )
        elif status is JobStatus.FAILED:
            logger.info("Job run %s failed: %s", job_run_id, error_message)
        else:
            logger.info("Job run %s %s", job_run_id, status.value)
        return completed

    async def get(self, job_run_id: int) -> JobRun | None:
        async with self._session_factory() as session:
            return await JobRunRepository(session).get(job_run_id)
