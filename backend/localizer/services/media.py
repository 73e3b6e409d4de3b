"""
Audio extraction and duration probing.

Sources are local paths, generic http(s) URLs (downloaded first) or streaming
platform URLs (fetched with yt-dlp). Output audio is always mono 16 kHz PCM WAV,
which every speech provider accepts.
"""

import asyncio
import logging
import os
import re
import uuid
from typing import List, Optional, Sequence, Tuple

import httpx

from localizer.core.config import get_settings
from localizer.core.errors import DurationUnavailable, ExtractionFailed, UnsupportedFormat

logger = logging.getLogger(__name__)

STREAMING_HOSTS = re.compile(r"^https?://(www\.|m\.)?(youtube\.com|youtu\.be|vimeo\.com)/", re.I)
_UNSUPPORTED_MARKERS = (
    'invalid data found',
    'does not contain any stream',
    'could not find codec',
    'unknown format',
    'output file #0 does not contain',
)


def is_remote(source: str) -> bool:
    return source.lower().startswith(('http://', 'https://'))


def is_streaming_url(source: str) -> bool:
    return bool(STREAMING_HOSTS.match(source))


def remove_quietly(path: Optional[str]) -> None:
    """Delete a temporary file; failures are logged, never raised."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove temporary file %s: %s", path, e)


def parse_clock(value: str) -> float:
    """'1:02:03.5' / '02:03' / '45' -> seconds."""
    parts = value.strip().split(':')
    if not parts or len(parts) > 3:
        raise ValueError(value)
    seconds = 0.0
    for part in parts:
        seconds = seconds * 60 + float(part)
    return seconds


class AudioHandle:
    """Extracted audio file owned by the caller; release with cleanup() or ``async with``."""

    def __init__(self, path: str, temp_paths: Sequence[str] = ()):
        self.path = path
        self._temp_paths: List[str] = [path, *temp_paths]

    async def cleanup(self) -> None:
        for p in self._temp_paths:
            remove_quietly(p)
        self._temp_paths = []

    async def __aenter__(self) -> 'AudioHandle':
        return self

    async def __aexit__(self, *exc) -> None:
        await self.cleanup()


class MediaExtractor:
    def __init__(self, work_dir: Optional[str] = None):
        self.work_dir = work_dir or os.path.join(get_settings().work_dir, 'tmp')

    def _temp_path(self, suffix: str) -> str:
        os.makedirs(self.work_dir, exist_ok=True)
        return os.path.join(self.work_dir, f"{uuid.uuid4().hex}{suffix}")

    async def _run(self, *args: str) -> Tuple[int, str, str]:
        try:
            proc = await asyncio.create_subprocess_exec(
                *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            raise ExtractionFailed(f"{args[0]} is not installed")
        out, err = await proc.communicate()
        return proc.returncode, out.decode(errors='replace'), err.decode(errors='replace')

    async def _download(self, url: str) -> str:
        if is_streaming_url(url):
            dest = self._temp_path('.media')
            code, _, err = await self._run('yt-dlp', '-f', 'bestaudio/best', '--no-playlist', '-q', '-o', dest, url)
            if code != 0 or not os.path.exists(dest):
                remove_quietly(dest)
                raise ExtractionFailed("yt-dlp download failed", exit_detail=err)
            return dest
        dest = self._temp_path(os.path.splitext(url.split('?')[0])[1] or '.media')
        try:
            async with httpx.AsyncClient(timeout=get_settings().provider_http_timeout, follow_redirects=True) as client:
                async with client.stream('GET', url) as r:
                    r.raise_for_status()
                    with open(dest, 'wb') as f:
                        async for chunk in r.aiter_bytes():
                            f.write(chunk)
        except httpx.HTTPError as e:
            remove_quietly(dest)
            raise ExtractionFailed(f"Download of {url} failed", exit_detail=str(e))
        return dest

    async def extract_audio(self, source: str, max_seconds: Optional[float] = None) -> AudioHandle:
        """Decode ``source`` into mono 16 kHz PCM, optionally only its first ``max_seconds``."""
        downloaded = None
        out = self._temp_path('.wav')
        try:
            local = source
            if is_remote(source):
                downloaded = await self._download(source)
                local = downloaded
            elif not os.path.exists(source):
                raise ExtractionFailed(f"Source file not found: {source}")
            args = ['ffmpeg', '-y', '-v', 'error', '-i', local, '-vn', '-acodec', 'pcm_s16le', '-ac', '1', '-ar', '16000']
            if max_seconds:
                args += ['-t', str(max_seconds)]
            code, _, err = await self._run(*args, out)
            if code != 0:
                if any(m in err.lower() for m in _UNSUPPORTED_MARKERS):
                    raise UnsupportedFormat(f"Media could not be decoded: {err.strip()[-300:]}")
                raise ExtractionFailed(f"ffmpeg exited with {code}", exit_detail=err)
        except BaseException:
            remove_quietly(out)
            raise
        finally:
            remove_quietly(downloaded)
        logger.info("Extracted audio %s from %s", out, source)
        return AudioHandle(out)

    async def get_duration(self, source: str) -> float:
        if is_streaming_url(source):
            code, out, err = await self._run('yt-dlp', '--get-duration', '--no-warnings', '--no-playlist', source)
            if code == 0 and out.strip():
                try:
                    return parse_clock(out.strip().splitlines()[-1])
                except ValueError:
                    pass
            logger.info("yt-dlp could not report duration for %s, probing a download", source)

        downloaded = None
        try:
            local = source
            if is_remote(source):
                downloaded = await self._download(source)
                local = downloaded
            code, out, err = await self._run('ffprobe', '-v', 'error', '-show_entries', 'format=duration',
                                             '-of', 'default=noprint_wrappers=1:nokey=1', local)
        finally:
            remove_quietly(downloaded)
        if code != 0 and any(m in err.lower() for m in _UNSUPPORTED_MARKERS):
            raise UnsupportedFormat(f"Media could not be probed: {err.strip()[-300:]}")
        try:
            duration = float(out.strip())
        except ValueError:
            raise DurationUnavailable(f"No duration reported for {source}: {(err or out).strip()[-200:]}")
        if duration <= 0:
            raise DurationUnavailable(f"Non-positive duration {duration} for {source}")
        return duration
