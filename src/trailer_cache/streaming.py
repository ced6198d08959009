"""
Video streaming with HTTP range request support
"""
import logging
import os
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import aiofiles
from fastapi import Request
from fastapi.responses import StreamingResponse

from .exceptions import ContentNotFoundError, RangeNotSatisfiableError

logger = logging.getLogger(__name__)

# Committed files never change under the same path
FULL_CACHE_CONTROL = "public, max-age=604800, immutable"


@dataclass(frozen=True)
class ByteRange:
    """Inclusive byte span of a file."""

    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, file_size: int) -> str:
        return f"bytes {self.start}-{self.end}/{file_size}"

    @classmethod
    def from_header(cls, range_header: str, file_size: int) -> "ByteRange":
        """
        Parse a ``Range`` header against a file size.

        Supports ``bytes=start-end``, open-ended ``bytes=start-`` and suffix
        ``bytes=-N`` forms. Only single ranges are served: for a
        comma-separated list the first range is used and the rest ignored.
        An end past EOF is clamped to the last byte.

        Raises:
            RangeNotSatisfiableError: If the header is malformed or the range
                starts beyond the end of the file
        """
        header = range_header.strip()
        if not header.lower().startswith("bytes="):
            raise RangeNotSatisfiableError(f"Invalid range unit: {range_header}", file_size)

        first = header[6:].split(",", 1)[0].strip()
        if "-" not in first:
            raise RangeNotSatisfiableError(f"Malformed Range header: {range_header}", file_size)

        start_str, end_str = (part.strip() for part in first.split("-", 1))

        try:
            if not start_str:
                # Suffix range: last N bytes
                suffix_length = int(end_str)
                if suffix_length <= 0 or file_size == 0:
                    raise RangeNotSatisfiableError(f"Unsatisfiable range: {range_header}", file_size)
                return cls(start=max(0, file_size - suffix_length), end=file_size - 1)

            start = int(start_str)
            end = int(end_str) if end_str else file_size - 1
        except ValueError as e:
            raise RangeNotSatisfiableError(f"Malformed Range header: {range_header}", file_size) from e

        if start < 0 or start >= file_size or end < start:
            raise RangeNotSatisfiableError(f"Unsatisfiable range: {range_header}", file_size)

        return cls(start=start, end=min(end, file_size - 1))


class StreamServer:
    """
    Serves stored files to HTTP clients, honoring single byte-range requests.

    Intent:
    Browsers' <video> elements seek with Range requests, so partial content
    is the normal case rather than an optimization. Streaming is decoupled
    from acquisition: it never takes a content lock and never writes to the
    catalog, so a client disconnecting mid-stream only closes its own file
    handle.

    The file is opened before the response is built. If eviction unlinks it
    while a client is still streaming, the open handle keeps the bytes
    readable until the stream ends.
    """

    def __init__(self, chunk_size: int = 64 * 1024, media_type: str = "video/mp4"):
        self.chunk_size = chunk_size
        self.media_type = media_type

    async def serve(self, request: Request, local_path: Path) -> StreamingResponse:
        """
        Build a streaming response for ``local_path``.

        Returns:
            206 with ``Content-Range`` for a range request, otherwise 200
            with a long-lived ``Cache-Control``

        Raises:
            ContentNotFoundError: If the file does not exist
            RangeNotSatisfiableError: If the requested range cannot be served
        """
        try:
            handle = await aiofiles.open(local_path, 'rb')
        except FileNotFoundError as e:
            raise ContentNotFoundError(f"Video file not found: {local_path}") from e

        try:
            file_size = os.fstat(handle.fileno()).st_size
            range_header = request.headers.get("range")

            if range_header:
                byte_range = ByteRange.from_header(range_header, file_size)
                headers = {
                    "Content-Range": byte_range.content_range(file_size),
                    "Accept-Ranges": "bytes",
                    "Content-Length": str(byte_range.length),
                }
                body = self._iter_file(handle, byte_range.start, byte_range.length)
                return StreamingResponse(body, status_code=206, headers=headers, media_type=self.media_type)

            headers = {
                "Accept-Ranges": "bytes",
                "Content-Length": str(file_size),
                "Cache-Control": FULL_CACHE_CONTROL,
            }
            body = self._iter_file(handle, 0, file_size)
            return StreamingResponse(body, status_code=200, headers=headers, media_type=self.media_type)
        except BaseException:
            await handle.close()
            raise

    async def _iter_file(self, handle: Any, start: int, length: int) -> AsyncIterator[bytes]:
        """
        Yield ``length`` bytes from ``start`` in fixed-size chunks.

        Closing the generator (client disconnect) closes the file.
        """
        remaining = length
        try:
            await handle.seek(start)
            while remaining > 0:
                chunk = await handle.read(min(self.chunk_size, remaining))
                if not chunk:
                    break
                remaining -= len(chunk)
                yield chunk
        finally:
            await handle.close()
            if remaining > 0:
                logger.debug("Stream ended with %d bytes unsent", remaining)

