"""
Fetchers that download remote videos to temp files
"""
import asyncio
import logging
import re
import shutil
import time
from pathlib import Path
from typing import Optional

import aiofiles
import httpx

from .exceptions import FetchFailedError
from .models import BYTES_PER_MB

logger = logging.getLogger(__name__)

# yt-dlp format selector for the store's single encoding profile
YTDLP_FORMAT = "bestvideo[height<=1080][ext=mp4]+bestaudio[ext=m4a]/best[height<=1080]"


def safe_filename(title: str, max_length: int = 50) -> str:
    """Reduce a title to a filesystem-safe stem."""
    cleaned = re.sub(r"[^\w\s]", "_", title or "video")
    return cleaned.strip().replace(" ", "_")[:max_length] or "video"


def _discard(*paths: Path) -> None:
    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not remove partial download %s: %s", path, e)


class YtDlpFetcher:
    """
    Downloads videos from streaming sites with the ``yt-dlp`` executable.

    Implements: IFetcher interface

    Intent:
    Runs yt-dlp as an asyncio subprocess so the event loop keeps serving
    other requests while a download is in progress. The download is bounded
    by a hard timeout; on expiry the process is killed and the partial file
    is removed.

    yt-dlp sometimes merges into ``.mkv`` even when asked for mp4; that output
    is renamed to the expected ``.mp4`` temp path.
    """

    def __init__(self, temp_dir: Path, timeout: float = 300.0, executable: Optional[str] = None):
        """
        Args:
            temp_dir: Directory for in-progress downloads
            timeout: Hard limit for a single download, in seconds
            executable: Path to yt-dlp; looked up on PATH when omitted
        """
        self.temp_dir = temp_dir
        self.timeout = timeout
        self.executable = executable

    def _resolve_executable(self) -> str:
        executable = self.executable or shutil.which("yt-dlp") or shutil.which("yt_dlp")
        if executable is None:
            raise FetchFailedError("yt-dlp executable not found on PATH")
        return executable

    def build_command(self, remote_locator: str, output_path: Path) -> list[str]:
        return [
            self._resolve_executable(),
            "-f", YTDLP_FORMAT,
            "--merge-output-format", "mp4",
            "--no-check-certificate",
            "--quiet",
            "--no-warnings",
            "-o", str(output_path),
            remote_locator,
        ]

    async def fetch(self, remote_locator: str, title_hint: str) -> Path:
        """
        Download ``remote_locator`` into the temp directory.

        Returns:
            Path of the downloaded mp4

        Raises:
            FetchFailedError: If yt-dlp is missing, exits non-zero, times out,
                or produces no output file
        """
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        temp_file = self.temp_dir / f"{safe_filename(title_hint)}_{time.time_ns()}.mp4"
        alt_file = temp_file.with_suffix(".mkv")

        logger.info("Downloading: %s", title_hint)

        try:
            process = await asyncio.create_subprocess_exec(
                *self.build_command(remote_locator, temp_file),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise FetchFailedError(f"Could not start yt-dlp: {e}", cause=e) from e

        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            _discard(temp_file, alt_file)
            raise FetchFailedError(
                f"Download timed out after {self.timeout:.0f}s: {remote_locator}", cause=e
            ) from e
        except BaseException:
            process.kill()
            await process.wait()
            _discard(temp_file, alt_file)
            raise

        if process.returncode != 0:
            _discard(temp_file, alt_file)
            message = stderr.decode(errors="replace").strip() if stderr else ""
            raise FetchFailedError(
                f"yt-dlp exited with {process.returncode} for {remote_locator}: {message}"
            )

        if not temp_file.exists():
            if alt_file.exists():
                alt_file.rename(temp_file)
            else:
                raise FetchFailedError(f"Downloaded file not found for {remote_locator}")

        size_mb = temp_file.stat().st_size / BYTES_PER_MB
        logger.info("Downloaded: %s (%.2fMB)", title_hint, size_mb)
        return temp_file


class HttpFetcher:
    """
    Downloads a directly addressable video file over HTTP.

    Implements: IFetcher interface

    Intent:
    For sources that expose plain file URLs. The body is streamed to disk in
    chunks so memory stays flat regardless of video size; the whole transfer
    is bounded by the same hard timeout as the yt-dlp fetcher.
    """

    def __init__(
        self,
        temp_dir: Path,
        timeout: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
        chunk_size: int = 1024 * 1024,
    ):
        self.temp_dir = temp_dir
        self.timeout = timeout
        self.client = client
        self.chunk_size = chunk_size

    async def fetch(self, remote_locator: str, title_hint: str) -> Path:
        self.temp_dir.mkdir(parents=True, exist_ok=True)
        temp_file = self.temp_dir / f"{safe_filename(title_hint)}_{time.time_ns()}.mp4"

        logger.info("Downloading: %s", title_hint)

        try:
            await asyncio.wait_for(self._download(remote_locator, temp_file), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            _discard(temp_file)
            raise FetchFailedError(
                f"Download timed out after {self.timeout:.0f}s: {remote_locator}", cause=e
            ) from e
        except httpx.HTTPStatusError as e:
            _discard(temp_file)
            raise FetchFailedError(
                f"Remote returned {e.response.status_code} for {remote_locator}", cause=e
            ) from e
        except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
            _discard(temp_file)
            raise FetchFailedError(f"Download failed for {remote_locator}: {e}", cause=e) from e
        except BaseException:
            _discard(temp_file)
            raise

        logger.info("Downloaded: %s (%.2fMB)", title_hint, temp_file.stat().st_size / BYTES_PER_MB)
        return temp_file

    async def _download(self, remote_locator: str, temp_file: Path) -> None:
        if self.client is not None:
            await self._stream_to(self.client, remote_locator, temp_file)
            return

        async with httpx.AsyncClient(follow_redirects=True, timeout=self.timeout) as client:
            await self._stream_to(client, remote_locator, temp_file)

    async def _stream_to(self, client: httpx.AsyncClient, remote_locator: str, temp_file: Path) -> None:
        async with client.stream("GET", remote_locator) as response:
            response.raise_for_status()
            async with aiofiles.open(temp_file, 'wb') as f:
                async for chunk in response.aiter_bytes(self.chunk_size):
                    await f.write(chunk)


def cleanup_temp_files(temp_dir: Path, max_age_seconds: float = 3600.0) -> int:
    """
    Delete stale entries from the download temp directory.

    Anything older than ``max_age_seconds`` is left over from a crashed or
    abandoned download; in-flight downloads are younger than the download
    timeout and are never touched with the default age.

    Returns:
        Number of files or directories removed
    """
    if not temp_dir.exists():
        return 0

    cleaned = 0
    now = time.time()

    for path in temp_dir.iterdir():
        try:
            if now - path.stat().st_mtime <= max_age_seconds:
                continue
            if path.is_dir():
                shutil.rmtree(path)
            else:
                path.unlink()
            cleaned += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.warning("Temp cleanup failed for %s: %s", path, e)

    if cleaned:
        logger.info("Cleaned %d temp files/dirs", cleaned)
    return cleaned
