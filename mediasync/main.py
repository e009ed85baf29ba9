"""Entry point for the FastAPI-powered sync service."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import settings
from .database import Database
from .exceptions import (
    AdapterResolutionError,
    CapabilityError,
    InvalidSyncRequestError,
    SyncError,
    UnsupportedMediaTypeError,
)
from .models import JobRun
from .services.adapters import AdapterFactory
from .services.jellyfin import EmbyAdapterFactory, JellyfinAdapterFactory
from .services.orchestrator import SyncOrchestrator

logging.basicConfig(
    level=getattr(logging, settings.log_level, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app: FastAPI


class ManualSyncRequest(BaseModel):
    user_id: int
    source_id: int
    media_type: str = Field(min_length=1)


class FullSyncRequest(BaseModel):
    user_id: int = Field(gt=0)


def build_factories(database: Database) -> dict[str, AdapterFactory]:
    """Return the adapter factories keyed by source type."""

    factories: list[AdapterFactory] = [
        JellyfinAdapterFactory(database.session_factory, settings),
        EmbyAdapterFactory(database.session_factory, settings),
    ]
    return {factory.source_type: factory for factory in factories}


@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    exit_stack = AsyncExitStack()
    database = Database(settings.database_url)
    await database.create_all()
    exit_stack.push_async_callback(database.dispose)

    orchestrator = SyncOrchestrator(
        database.session_factory,
        build_factories(database),
        poll_seconds=settings.schedule_poll_seconds,
    )
    fastapi_app.state.database = database
    fastapi_app.state.orchestrator = orchestrator
    if settings.scheduler_enabled:
        await orchestrator.start()
        exit_stack.push_async_callback(orchestrator.stop)
    else:
        logger.info("Background scheduler disabled")

    try:
        yield
    finally:  # pragma: no cover - teardown path exercised at runtime
        await exit_stack.aclose()


def create_app() -> FastAPI:
    fastapi_app = FastAPI(
        title=settings.app_name,
        description="Cross-source media catalog and play history synchronization",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_routes(fastapi_app)
    return fastapi_app


def get_orchestrator(fastapi_app: FastAPI) -> SyncOrchestrator:
    orchestrator = getattr(fastapi_app.state, "orchestrator", None)
    if not isinstance(orchestrator, SyncOrchestrator):
        raise RuntimeError("Sync orchestrator not initialised")
    return orchestrator


def _error_status(exc: SyncError) -> int:
    if isinstance(exc, (InvalidSyncRequestError, UnsupportedMediaTypeError)):
        return 400
    if isinstance(exc, AdapterResolutionError):
        return 404
    if isinstance(exc, CapabilityError):
        return 422
    return 502


def _sync_failure(exc: SyncError) -> HTTPException:
    return HTTPException(
        status_code=_error_status(exc),
        detail={"message": exc.message, "job_run_id": exc.job_run_id},
    )


def _job_response(job_run: JobRun) -> dict[str, Any]:
    return job_run.model_dump(mode="json")


def register_routes(fastapi_app: FastAPI) -> None:
    @fastapi_app.get("/health")
    async def healthcheck() -> dict[str, str]:
        return {"status": "ok"}

    @fastapi_app.post("/api/sync/manual")
    async def manual_sync(request: ManualSyncRequest) -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        try:
            job_run = await orchestrator.run_manual(
                request.user_id, request.source_id, request.media_type
            )
        except SyncError as exc:
            raise _sync_failure(exc) from exc
        return _job_response(job_run)

    @fastapi_app.post("/api/sync/full")
    async def full_sync(request: FullSyncRequest) -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        try:
            job_run = await orchestrator.run_full(request.user_id)
        except SyncError as exc:
            raise _sync_failure(exc) from exc
        return _job_response(job_run)

    @fastapi_app.post("/api/sync/due")
    async def due_sync() -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        job_runs = await orchestrator.run_due_schedules()
        return {"job_runs": [_job_response(job_run) for job_run in job_runs]}

    @fastapi_app.get("/api/jobs/{job_run_id}")
    async def get_job(job_run_id: int) -> dict[str, Any]:
        orchestrator = get_orchestrator(fastapi_app)
        job_run = await orchestrator.reporter.get(job_run_id)
        if job_run is None:
            raise HTTPException(status_code=404, detail=f"Job run {job_run_id} not found")
        return _job_response(job_run)


app = create_app()
