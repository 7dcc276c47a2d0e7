"""Best-effort progress checkpointing for running exports."""

from __future__ import annotations

import asyncio
from typing import Optional

from structlog.stdlib import BoundLogger

from .store import JobStore

DEFAULT_PROGRESS_INTERVAL = 1000


class ProgressReporter:
    """Persist processed-row counts every ``interval`` rows.

    Progress is advisory. Writes are fire-and-forget with at most one in
    flight; a checkpoint that comes due while the previous write is still
    pending is dropped, and a failed write is logged and forgotten. Rows are
    never lost because of this, only intermediate counts.
    """

    def __init__(
        self,
        store: JobStore,
        job_id: str,
        logger: BoundLogger,
        interval: int = DEFAULT_PROGRESS_INTERVAL,
    ) -> None:
        self._store = store
        self._job_id = job_id
        self._logger = logger
        self.interval = interval
        self.checkpoints = 0
        self.skipped = 0
        self._pending: Optional[asyncio.Task] = None

    def record(self, processed: int) -> None:
        if processed <= 0 or processed % self.interval:
            return
        if self._pending is not None and not self._pending.done():
            self.skipped += 1
            return
        self.checkpoints += 1
        self._pending = asyncio.create_task(self._persist(processed))

    async def _persist(self, processed: int) -> None:
        try:
            await self._store.set_progress(self._job_id, processed)
        except Exception as exc:
            self._logger.warning(
                "export_progress_checkpoint_failed",
                job_id=self._job_id,
                processed_rows=processed,
                error=str(exc),
            )

    async def close(self) -> None:
        """Drop any write still in flight so nothing lands after a terminal status."""
        pending, self._pending = self._pending, None
        if pending is None or pending.done():
            return
        pending.cancel()
        try:
            await pending
        except asyncio.CancelledError:
            pass


__all__ = ["DEFAULT_PROGRESS_INTERVAL", "ProgressReporter"]
