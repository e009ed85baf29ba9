"""Errors raised by the synchronization engine."""

from __future__ import annotations


class SyncError(Exception):
    """Base class for failures that end a sync run."""

    def __init__(self, message: str, *, job_run_id: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_run_id = job_run_id


class InvalidSyncRequestError(SyncError):
    """A manual sync was requested with unusable identifiers."""


class UnsupportedMediaTypeError(SyncError):
    """The requested media type token is not recognised."""

    def __init__(self, token: str, *, job_run_id: int | None = None) -> None:
        super().__init__(f"unsupported media type: {token}", job_run_id=job_run_id)
        self.token = token


class CapabilityError(SyncError):
    """The source adapter cannot serve the requested media family."""

    def __init__(self, capability: str, *, job_run_id: int | None = None) -> None:
        super().__init__(f"source doesn't support {capability}", job_run_id=job_run_id)
        self.capability = capability


class AdapterResolutionError(SyncError):
    """No adapter could be built for the requested source."""


class SourceRequestError(SyncError):
    """An external source kept failing after the configured retries."""


class BatchPersistenceError(SyncError):
    """Committing a batch of canonical writes failed."""


class SyncCancelledError(SyncError):
    """Cancellation was requested between two batches."""

    def __init__(self, message: str = "Sync cancelled", *, job_run_id: int | None = None) -> None:
        super().__init__(message, job_run_id=job_run_id)
