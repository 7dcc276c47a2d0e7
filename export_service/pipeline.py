"""Export pipeline: stream rows from the source into a delimited file."""

from __future__ import annotations

import asyncio
import os
from contextlib import aclosing
from pathlib import Path
from typing import Callable

from structlog.stdlib import BoundLogger

from .encoder import RecordEncoder
from .errors import ExportCancelled
from .models import ExportJob, ExportOutcome, OutcomeKind
from .progress import DEFAULT_PROGRESS_INTERVAL, ProgressReporter
from .registry import CancellationHandle, JobRegistry
from .sink import DEFAULT_HIGH_WATER_MARK, FileSink
from .source import ExportQuery, RowSource
from .store import JobStore


def part_path_for(path: Path) -> Path:
    """Where a job's file lives until it has been fully written."""
    return path.with_name(path.name + ".part")


class ExportPipeline:
    """Run export jobs end to end.

    Rows are pulled one at a time from a :class:`RowSource` cursor, encoded,
    and written to a :class:`FileSink`. When the sink reports saturation the
    pipeline awaits ``drain()`` before pulling the next row. Cancellation is
    checked before every row.

    The file is written to ``<path>.part`` and renamed into place only after
    it has been flushed and fsynced, so ``<path>`` exists only for jobs that
    completed.
    """

    def __init__(
        self,
        source: RowSource,
        store: JobStore,
        registry: JobRegistry,
        logger: BoundLogger,
        progress_interval: int = DEFAULT_PROGRESS_INTERVAL,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        sink_factory: Callable[..., FileSink] = FileSink,
    ) -> None:
        self.source = source
        self.store = store
        self.registry = registry
        self.logger = logger
        self.progress_interval = progress_interval
        self.high_water_mark = high_water_mark
        self.sink_factory = sink_factory

    async def run(self, job: ExportJob) -> ExportOutcome:
        """Export ``job`` and persist its terminal status.

        Errors never propagate out of here; they become a ``failed`` outcome.
        Raises :class:`JobAlreadyRunning` if the job id already has a pipeline.
        """
        log = self.logger.bind(job_id=job.id)
        handle = self.registry.register(job.id)
        final_path = Path(job.file_path)
        part_path = part_path_for(final_path)
        log.info("export_job_started", columns=job.selected_columns, filters=job.filters.model_dump(exclude_none=True))

        try:
            rows_written = await self._export(job, handle, part_path, final_path, log)
        except ExportCancelled:
            outcome = ExportOutcome.cancelled()
        except Exception as exc:
            # The job may have been cancelled while the failing call was in flight.
            if handle.cancelled:
                outcome = ExportOutcome.cancelled()
            else:
                log.error("export_job_failed", error=str(exc), exc_info=True)
                outcome = ExportOutcome.failed(_describe(exc))
        else:
            outcome = ExportOutcome.completed(rows_written)
        finally:
            self.registry.unregister(job.id)

        return await self._finish(job, outcome, part_path, final_path, log)

    async def _export(
        self,
        job: ExportJob,
        handle: CancellationHandle,
        part_path: Path,
        final_path: Path,
        log: BoundLogger,
    ) -> int:
        handle.raise_if_cancelled()
        query = ExportQuery(filters=job.filters, columns=job.selected_columns)
        encoder = RecordEncoder(query.columns, delimiter=job.delimiter, quote_char=job.quote_char)

        async with self.source.connect() as connection:
            total_rows = await connection.count(query)
            handle.raise_if_cancelled()
            if not await self.store.mark_processing(job.id, total_rows):
                # Closed by someone else (deleted) while this job was queued.
                raise ExportCancelled(job.id)
            log.info("export_job_counted", total_rows=total_rows)

            sink = self.sink_factory(part_path, high_water_mark=self.high_water_mark)
            progress = ProgressReporter(self.store, job.id, log, interval=self.progress_interval)
            processed = 0
            try:
                await sink.open()
                if not sink.write(encoder.header()):
                    await sink.drain()

                async with aclosing(connection.rows(query)) as rows:
                    async for row in rows:
                        handle.raise_if_cancelled()
                        if not sink.write(encoder.encode(row)):
                            await sink.drain()
                        processed += 1
                        progress.record(processed)

                handle.raise_if_cancelled()
                await progress.close()
                await sink.close()
            except BaseException:
                await progress.close()
                await sink.abort()
                raise

        if processed != total_rows:
            log.warning("export_row_count_drift", total_rows=total_rows, rows_written=processed)
        await asyncio.to_thread(os.replace, part_path, final_path)
        return processed

    async def _finish(
        self,
        job: ExportJob,
        outcome: ExportOutcome,
        part_path: Path,
        final_path: Path,
        log: BoundLogger,
    ) -> ExportOutcome:
        if outcome.kind is OutcomeKind.COMPLETED:
            try:
                accepted = await self.store.mark_completed(job.id, outcome.rows_written)
            except Exception as exc:
                log.error("export_job_status_update_failed", status="completed", error=str(exc))
                await self._discard(final_path, log)
                outcome = ExportOutcome.failed(f"Could not record completion: {_describe(exc)}")
            else:
                if accepted:
                    log.info("export_job_completed", rows_written=outcome.rows_written, file_path=str(final_path))
                    return outcome
                log.info("export_job_cancelled", reason="job closed before completion was recorded")
                await self._discard(final_path, log)
                return ExportOutcome.cancelled()

        await self._discard(part_path, log)
        try:
            if outcome.kind is OutcomeKind.CANCELLED:
                await self.store.mark_cancelled(job.id)
                log.info("export_job_cancelled")
            else:
                await self.store.mark_failed(job.id, outcome.error or "unknown error")
        except Exception as exc:
            log.error("export_job_status_update_failed", status=outcome.kind.value, error=str(exc))
        return outcome

    async def _discard(self, path: Path, log: BoundLogger) -> None:
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            log.warning("export_file_cleanup_failed", file_path=str(path), error=str(exc))


def _describe(exc: BaseException) -> str:
    message = str(exc)
    return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


__all__ = ["ExportPipeline", "part_path_for"]
