"""Exception types raised by the export service."""

from __future__ import annotations


class ExportError(Exception):
    """Base class for export service errors."""


class ExportCancelled(ExportError):
    """Raised inside a pipeline once its cancellation handle has been triggered.

    Cancellation is never inferred from the text of another exception; code
    that needs to tell the two apart catches this type.
    """

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Export job {job_id} was cancelled")
        self.job_id = job_id


class JobAlreadyRunning(ExportError):
    """Raised when a second pipeline is started for an active job id."""

    def __init__(self, job_id: str) -> None:
        super().__init__(f"Export job {job_id} is already running")
        self.job_id = job_id


class ExportNotFound(ExportError):
    """The export job is unknown, or its completed file no longer exists."""


class ExportNotReady(ExportError):
    """The export job exists but has not reached ``completed``."""

    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(f"Export job {job_id} is not ready (status: {status})")
        self.job_id = job_id
        self.status = status


__all__ = [
    "ExportError",
    "ExportCancelled",
    "JobAlreadyRunning",
    "ExportNotFound",
    "ExportNotReady",
]
