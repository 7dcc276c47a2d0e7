"""FastAPI routes for the export service."""

from __future__ import annotations

import asyncio
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request, Response
from pydantic import ValidationError

from .errors import ExportNotFound, ExportNotReady
from .models import ExportFilter, ExportJob, ExportRequest, ExportStatus
from .pipeline import part_path_for
from .store import utcnow

router = APIRouter()


def get_settings(request: Request):
    return request.app.state.settings


def get_store(request: Request):
    return request.app.state.job_store


def get_registry(request: Request):
    return request.app.state.job_registry


def get_scheduler(request: Request):
    return request.app.state.export_scheduler


def get_download_server(request: Request):
    return request.app.state.download_server


def get_logger(request: Request):
    return request.app.state.logger


async def get_job_or_404(request: Request, export_id: str) -> ExportJob:
    job = await get_store(request).get_job(export_id)
    if job is None:
        raise HTTPException(status_code=404, detail="not found")
    return job


def _blank_to_none(value: Optional[str]) -> Optional[str]:
    if value is None or not value.strip():
        return None
    return value.strip()


@router.get("/health")
async def health_check() -> Dict[str, Any]:
    """Health check endpoint."""
    return {"status": "ok", "service": "export", "timestamp": time.time()}


@router.post("/exports/csv", status_code=202)
async def create_csv_export(
    request: Request,
    background_tasks: BackgroundTasks,
    country_code: Optional[str] = Query(None),
    subscription_tier: Optional[str] = Query(None),
    min_ltv: Optional[float] = Query(None),
    columns: Optional[str] = Query(None, description="Comma separated column list"),
    delimiter: str = Query(","),
    quote_char: str = Query('"', alias="quoteChar"),
) -> Dict[str, Any]:
    """Queue a CSV export of the users matching the given filters."""
    try:
        export_request = ExportRequest(
            filters=ExportFilter(
                country_code=_blank_to_none(country_code),
                subscription_tier=_blank_to_none(subscription_tier),
                min_ltv=min_ltv,
            ),
            columns=columns.split(",") if columns else None,
            delimiter=delimiter,
            quote_char=quote_char,
        )
    except ValidationError as exc:
        messages = [error["msg"] for error in exc.errors()]
        raise HTTPException(status_code=400, detail="; ".join(messages)) from None

    export_id = str(uuid.uuid4())
    job = ExportJob(
        id=export_id,
        status=ExportStatus.PENDING,
        filters=export_request.filters,
        columns=export_request.columns,
        delimiter=export_request.delimiter,
        quote_char=export_request.quote_char,
        file_path=str(get_settings(request).export_path_for(export_id)),
        created_at=utcnow(),
    )
    await get_store(request).create_job(job)

    background_tasks.add_task(get_scheduler(request).process_export_job, export_id)

    get_logger(request).info(
        "export_job_created",
        job_id=export_id,
        columns=job.selected_columns,
        filters=job.filters.model_dump(exclude_none=True),
    )
    return {"exportId": export_id, "status": job.status.value}


@router.get("/exports/{export_id}/status")
async def get_export_status(export_id: str, request: Request) -> Dict[str, Any]:
    """Report status and progress of an export job."""
    job = await get_job_or_404(request, export_id)
    return {
        "exportId": job.id,
        "status": job.status.value,
        "progress": {
            "totalRows": job.total_rows,
            "processedRows": job.processed_rows,
            "percentage": job.percentage,
        },
        "error": job.error if job.status == ExportStatus.FAILED else None,
        "createdAt": job.created_at.isoformat(),
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.get("/exports/{export_id}/download")
async def download_export(export_id: str, request: Request) -> Response:
    """Download a completed export, honouring Range and Accept-Encoding: gzip."""
    try:
        return await get_download_server(request).respond(export_id, request.headers)
    except ExportNotReady:
        raise HTTPException(status_code=425, detail="export not ready") from None
    except ExportNotFound:
        raise HTTPException(status_code=404, detail="not found") from None


@router.delete("/exports/{export_id}", status_code=204)
async def delete_export(export_id: str, request: Request) -> Response:
    """Cancel an export if it is still running and remove its file."""
    job = await get_job_or_404(request, export_id)
    logger = get_logger(request)

    signalled = get_registry(request).cancel(export_id)
    if not job.status.is_terminal:
        await get_store(request).mark_cancelled(export_id)

    final_path = Path(job.file_path)
    for path in (final_path, part_path_for(final_path)):
        try:
            await asyncio.to_thread(path.unlink, missing_ok=True)
        except OSError as exc:
            logger.warning("export_file_cleanup_failed", job_id=export_id, file_path=str(path), error=str(exc))

    logger.info("export_job_deleted", job_id=export_id, cancel_signalled=signalled)
    return Response(status_code=204)


__all__ = ["router"]
