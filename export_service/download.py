"""Serving completed export files: full, byte-range, or gzip-compressed."""

from __future__ import annotations

import asyncio
import os
import re
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO, AsyncIterator, Mapping, Optional

from fastapi import Response
from fastapi.responses import StreamingResponse
from starlette.background import BackgroundTask

from .errors import ExportNotFound, ExportNotReady
from .models import ExportStatus
from .store import JobStore

DEFAULT_CHUNK_SIZE = 64 * 1024
CSV_MEDIA_TYPE = "text/csv"

_RANGE_RE = re.compile(r"^bytes=(\d*)-(\d*)$", re.IGNORECASE)


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte range ``[start, end]``."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_range(header: str, size: int) -> Optional[ByteRange]:
    """Parse a single ``Range`` header against a file of ``size`` bytes.

    Accepts ``bytes=start-end``, ``bytes=start-`` (to end of file) and
    ``bytes=-n`` (last n bytes). Returns None when the header is malformed,
    names several ranges, or falls outside ``[0, size)``.
    """
    match = _RANGE_RE.match(header.strip())
    if not match:
        return None
    first, last = match.groups()
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            return None
        return ByteRange(max(0, size - suffix), size - 1)

    start = int(first)
    end = int(last) if last else size - 1
    if start > end or end >= size:
        return None
    return ByteRange(start, end)


def accepts_gzip(accept_encoding: str) -> bool:
    """True when ``Accept-Encoding`` lists gzip with a non-zero quality."""
    for part in accept_encoding.split(","):
        coding, _, params = part.partition(";")
        if coding.strip().lower() not in ("gzip", "x-gzip"):
            continue
        quality = 1.0
        for param in params.split(";"):
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    quality = float(value)
                except ValueError:
                    quality = 0.0
        return quality > 0
    return False


class DownloadServer:
    """Serve the file of a completed export job."""

    def __init__(
        self,
        store: JobStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        compression_level: int = 6,
    ) -> None:
        self.store = store
        self.chunk_size = chunk_size
        self.compression_level = compression_level

    async def locate(self, job_id: str) -> Path:
        """Return the file of a completed job.

        Raises ExportNotFound for unknown jobs and for completed jobs whose file
        has disappeared, and ExportNotReady for jobs that have not completed.
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise ExportNotFound(f"Export job {job_id} not found")
        if job.status != ExportStatus.COMPLETED:
            raise ExportNotReady(job_id, job.status.value)
        path = Path(job.file_path)
        if not await asyncio.to_thread(path.is_file):
            raise ExportNotFound(f"Export file for job {job_id} is missing")
        return path

    async def respond(self, job_id: str, headers: Mapping[str, str]) -> Response:
        path = await self.locate(job_id)
        try:
            handle = await asyncio.to_thread(open, path, "rb")
        except FileNotFoundError:
            raise ExportNotFound(f"Export file for job {job_id} is missing") from None
        size = os.fstat(handle.fileno()).st_size

        response_headers = {"Content-Disposition": f'attachment; filename="export_{job_id}.csv"'}

        if accepts_gzip(headers.get("accept-encoding", "")):
            response_headers["Content-Encoding"] = "gzip"
            response_headers["Vary"] = "Accept-Encoding"
            return StreamingResponse(
                self._iter_gzip(handle, size),
                media_type=CSV_MEDIA_TYPE,
                headers=response_headers,
                background=BackgroundTask(handle.close),
            )

        response_headers["Accept-Ranges"] = "bytes"
        range_header = headers.get("range")
        if range_header is not None:
            byte_range = parse_range(range_header, size)
            if byte_range is None:
                handle.close()
                return Response(status_code=416, headers={"Content-Range": f"bytes */{size}"})
            response_headers["Content-Range"] = byte_range.content_range(size)
            response_headers["Content-Length"] = str(byte_range.length)
            return StreamingResponse(
                self._iter_file(handle, byte_range.start, byte_range.length),
                status_code=206,
                media_type=CSV_MEDIA_TYPE,
                headers=response_headers,
                background=BackgroundTask(handle.close),
            )

        response_headers["Content-Length"] = str(size)
        return StreamingResponse(
            self._iter_file(handle, 0, size),
            media_type=CSV_MEDIA_TYPE,
            headers=response_headers,
            background=BackgroundTask(handle.close),
        )

    async def _iter_file(self, handle: IO[bytes], start: int, length: int) -> AsyncIterator[bytes]:
        try:
            await asyncio.to_thread(handle.seek, start)
            remaining = length
            while remaining > 0:
                chunk = await asyncio.to_thread(handle.read, min(self.chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk
        finally:
            handle.close()

    async def _iter_gzip(self, handle: IO[bytes], size: int) -> AsyncIterator[bytes]:
        compressor = zlib.compressobj(self.compression_level, zlib.DEFLATED, 16 + zlib.MAX_WBITS)
        async for chunk in self._iter_file(handle, 0, size):
            compressed = await asyncio.to_thread(compressor.compress, chunk)
            if compressed:
                yield compressed
        yield compressor.flush()


__all__ = [
    "ByteRange",
    "DownloadServer",
    "accepts_gzip",
    "parse_range",
]
