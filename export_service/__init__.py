"""CSV export service package."""

from __future__ import annotations

from .config import ExportSettings
from .download import DownloadServer
from .encoder import RecordEncoder
from .errors import (
    ExportCancelled,
    ExportError,
    ExportNotFound,
    ExportNotReady,
    JobAlreadyRunning,
)
from .factory import create_app
from .models import (
    ExportFilter,
    ExportJob,
    ExportOutcome,
    ExportRequest,
    ExportStatus,
    OutcomeKind,
)
from .pipeline import ExportPipeline
from .progress import ProgressReporter
from .registry import CancellationHandle, JobRegistry
from .sink import FileSink
from .source import ExportQuery, RowSource
from .store import JobStore
from .tasks import ExportScheduler

__all__ = [
    "create_app",
    "ExportSettings",
    "ExportPipeline",
    "ExportScheduler",
    "DownloadServer",
    "RecordEncoder",
    "FileSink",
    "ProgressReporter",
    "RowSource",
    "ExportQuery",
    "JobStore",
    "JobRegistry",
    "CancellationHandle",
    "ExportFilter",
    "ExportJob",
    "ExportOutcome",
    "ExportRequest",
    "ExportStatus",
    "OutcomeKind",
    "ExportError",
    "ExportCancelled",
    "ExportNotFound",
    "ExportNotReady",
    "JobAlreadyRunning",
]
