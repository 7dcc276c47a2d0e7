"""Background execution of export jobs."""

from __future__ import annotations

import asyncio
from typing import Optional

from structlog.stdlib import BoundLogger

from .errors import JobAlreadyRunning
from .models import ExportOutcome
from .pipeline import ExportPipeline
from .store import JobStore


class ExportScheduler:
    """Runs export pipelines with an explicit ceiling on concurrent jobs.

    Jobs beyond the ceiling wait for a slot and stay ``pending`` meanwhile.
    """

    def __init__(
        self,
        pipeline: ExportPipeline,
        store: JobStore,
        logger: BoundLogger,
        max_concurrent_jobs: int = 4,
    ) -> None:
        self.pipeline = pipeline
        self.store = store
        self.logger = logger
        if max_concurrent_jobs < 1:
            raise ValueError("max_concurrent_jobs must be at least 1")
        self.max_concurrent_jobs = max_concurrent_jobs
        self._slots = asyncio.Semaphore(max_concurrent_jobs)

    async def process_export_job(self, job_id: str) -> Optional[ExportOutcome]:
        """Load a job and run it once a slot is free."""
        async with self._slots:
            try:
                job = await self.store.get_job(job_id)
            except Exception as exc:
                self.logger.error("export_job_load_failed", job_id=job_id, error=str(exc))
                return None
            if job is None:
                self.logger.warning("export_job_missing", job_id=job_id)
                return None
            if job.status.is_terminal:
                self.logger.info("export_job_skipped", job_id=job_id, status=job.status.value)
                return None
            try:
                return await self.pipeline.run(job)
            except JobAlreadyRunning:
                self.logger.warning("export_job_already_running", job_id=job_id)
                return None


__all__ = ["ExportScheduler"]
