"""Registry of cancellation handles for in-flight export jobs."""

from __future__ import annotations

import threading
from typing import Dict

from .errors import ExportCancelled, JobAlreadyRunning


class CancellationHandle:
    """Per-job cancellation token.

    ``cancel()`` only flips a flag; the owning pipeline observes it at its next
    row boundary. The flag is a ``threading.Event`` so cancellation may come
    from any thread or event loop.
    """

    def __init__(self, job_id: str) -> None:
        self.job_id = job_id
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ExportCancelled(self.job_id)


class JobRegistry:
    """Tracks cancellation handles for export pipelines that are running."""

    def __init__(self) -> None:
        self._handles: Dict[str, CancellationHandle] = {}
        self._lock = threading.Lock()

    def register(self, job_id: str) -> CancellationHandle:
        """Create the handle for a job; only one pipeline may hold a job id."""
        with self._lock:
            if job_id in self._handles:
                raise JobAlreadyRunning(job_id)
            handle = CancellationHandle(job_id)
            self._handles[job_id] = handle
            return handle

    def cancel(self, job_id: str) -> bool:
        """Signal cancellation. Returns False when the job is not running."""
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    def unregister(self, job_id: str) -> None:
        with self._lock:
            self._handles.pop(job_id, None)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._handles

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)


__all__ = ["CancellationHandle", "JobRegistry"]
