"""Persistence of export job rows."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncEngine

from .database import exports
from .models import TERMINAL_STATUSES, ExportFilter, ExportJob, ExportStatus

_TERMINAL_VALUES = [status.value for status in TERMINAL_STATUSES]
_ACTIVE_VALUES = [ExportStatus.PENDING.value, ExportStatus.PROCESSING.value]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStore:
    """Reads and writes rows of the ``exports`` table.

    Status changes are authoritative and one-directional: once a job is
    terminal every further status or progress update is refused, which the
    caller sees as a ``False`` return value.
    """

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    async def create_job(self, job: ExportJob) -> str:
        values = {
            "id": job.id,
            "status": job.status.value,
            "filters": job.filters.model_dump(exclude_none=True),
            "columns": job.columns,
            "delimiter": job.delimiter,
            "quote_char": job.quote_char,
            "file_path": job.file_path,
            "total_rows": job.total_rows,
            "processed_rows": job.processed_rows,
            "created_at": job.created_at,
        }
        async with self._engine.begin() as conn:
            await conn.execute(insert(exports).values(**values))
        return job.id

    async def get_job(self, job_id: str) -> Optional[ExportJob]:
        async with self._engine.connect() as conn:
            result = await conn.execute(select(exports).where(exports.c.id == job_id))
            row = result.mappings().first()
        if row is None:
            return None
        return ExportJob(
            id=row["id"],
            status=ExportStatus(row["status"]),
            filters=ExportFilter(**(row["filters"] or {})),
            columns=row["columns"],
            delimiter=row["delimiter"],
            quote_char=row["quote_char"],
            file_path=row["file_path"],
            total_rows=row["total_rows"] or 0,
            processed_rows=row["processed_rows"] or 0,
            error=row["error"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    async def set_status(self, job_id: str, status: ExportStatus, **fields: Any) -> bool:
        """Move a non-terminal job to ``status``, updating extra columns in the same statement."""
        values = {"status": status.value, **fields}
        if status.is_terminal and "completed_at" not in values:
            values["completed_at"] = utcnow()
        statement = (
            update(exports)
            .where(exports.c.id == job_id, exports.c.status.notin_(_TERMINAL_VALUES))
            .values(**values)
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(statement)
        return result.rowcount > 0

    async def mark_processing(self, job_id: str, total_rows: int) -> bool:
        return await self.set_status(job_id, ExportStatus.PROCESSING, total_rows=total_rows)

    async def mark_completed(self, job_id: str, rows_written: int) -> bool:
        return await self.set_status(
            job_id,
            ExportStatus.COMPLETED,
            total_rows=rows_written,
            processed_rows=rows_written,
        )

    async def mark_cancelled(self, job_id: str) -> bool:
        return await self.set_status(job_id, ExportStatus.CANCELLED)

    async def mark_failed(self, job_id: str, error: str) -> bool:
        return await self.set_status(job_id, ExportStatus.FAILED, error=error)

    async def set_progress(self, job_id: str, processed_rows: int) -> bool:
        """Advisory progress write; ignored unless the job is ``processing``."""
        statement = (
            update(exports)
            .where(exports.c.id == job_id, exports.c.status == ExportStatus.PROCESSING.value)
            .values(processed_rows=processed_rows)
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(statement)
        return result.rowcount > 0

    async def fail_interrupted(self) -> int:
        """Fail jobs a previous process left pending or processing."""
        statement = (
            update(exports)
            .where(exports.c.status.in_(_ACTIVE_VALUES))
            .values(
                status=ExportStatus.FAILED.value,
                error="interrupted by service restart",
                completed_at=utcnow(),
            )
        )
        async with self._engine.begin() as conn:
            result = await conn.execute(statement)
        return result.rowcount


__all__ = ["JobStore", "utcnow"]
