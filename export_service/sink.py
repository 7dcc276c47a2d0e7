"""Buffered file sink with explicit backpressure."""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import IO, List, Optional

DEFAULT_HIGH_WATER_MARK = 64 * 1024

_CLOSE = object()


class FileSink:
    """Append text chunks to a file from a background writer task.

    ``write`` never blocks: it queues the chunk and returns ``False`` once the
    amount of buffered text reaches the high-water mark. Callers are expected
    to stop producing and ``await drain()`` when that happens. ``drain``
    resolves when the writer has emptied the buffer.

    Disk I/O happens in a worker thread. An error raised by the writer is
    kept and re-raised from the next ``write``, ``drain`` or ``close``.
    """

    def __init__(
        self,
        path: Path,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
        encoding: str = "utf-8",
    ) -> None:
        self.path = Path(path)
        self.high_water_mark = high_water_mark
        self.encoding = encoding
        self.bytes_written = 0

        self._file: Optional[IO[str]] = None
        self._queue: asyncio.Queue = asyncio.Queue()
        self._buffered = 0
        self._drained = asyncio.Event()
        self._drained.set()
        self._writer: Optional[asyncio.Task] = None
        self._error: Optional[BaseException] = None
        self._closing = False

    @property
    def buffered(self) -> int:
        return self._buffered

    async def open(self) -> None:
        self._file = await asyncio.to_thread(self._open_file)
        self._writer = asyncio.create_task(self._write_loop(), name=f"file-sink:{self.path.name}")

    def _open_file(self) -> IO[str]:
        return open(self.path, "w", encoding=self.encoding, newline="")

    def write(self, chunk: str) -> bool:
        """Queue a chunk. Returns False when the sink is saturated."""
        self._raise_if_failed()
        if self._writer is None or self._closing:
            raise RuntimeError("FileSink is not open")
        self._buffered += len(chunk)
        self._queue.put_nowait(chunk)
        if self._buffered >= self.high_water_mark:
            self._drained.clear()
            return False
        return True

    async def drain(self) -> None:
        await self._drained.wait()
        self._raise_if_failed()

    async def close(self) -> None:
        """Write out everything queued, then flush and fsync the file."""
        if self._writer is None:
            return
        self._closing = True
        self._queue.put_nowait(_CLOSE)
        await self._writer
        self._raise_if_failed()
        file, self._file = self._file, None
        if file is not None:
            await asyncio.to_thread(_sync_and_close, file)

    async def abort(self) -> None:
        """Stop writing immediately; whatever reached the file is left as is."""
        self._closing = True
        if self._writer is not None and not self._writer.done():
            self._writer.cancel()
            try:
                await self._writer
            except asyncio.CancelledError:
                pass
        file, self._file = self._file, None
        if file is not None:
            await asyncio.to_thread(file.close)

    async def _write_loop(self) -> None:
        while True:
            item = await self._queue.get()
            chunks: List[str] = []
            closing = item is _CLOSE
            if not closing:
                chunks.append(item)
            # Coalesce whatever else is already queued into a single write.
            while not closing and not self._queue.empty():
                item = self._queue.get_nowait()
                if item is _CLOSE:
                    closing = True
                else:
                    chunks.append(item)

            if chunks:
                data = "".join(chunks)
                try:
                    await asyncio.to_thread(self._file.write, data)
                except Exception as exc:
                    self._error = exc
                    self._drained.set()
                    return
                self.bytes_written += len(data.encode(self.encoding))
                self._buffered -= len(data)

            if self._buffered == 0:
                self._drained.set()
            if closing:
                return

    def _raise_if_failed(self) -> None:
        if self._error is not None:
            raise self._error


def _sync_and_close(file: IO[str]) -> None:
    try:
        file.flush()
        os.fsync(file.fileno())
    finally:
        file.close()


__all__ = ["DEFAULT_HIGH_WATER_MARK", "FileSink"]
