"""Locates the yt-dlp and FFmpeg executables and installs yt-dlp when it is missing."""
import sys
import shutil
import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import aiohttp
import aiofiles

from .constants import YT_DLP_URLS, REQUEST_HEADERS, APP_PATH, SUBPROCESS_CREATION_FLAGS
from .exceptions import DependencyError, DownloadCancelledError


@dataclass(frozen=True)
class InstallProgress:
    """Bytes received so far while installing a tool; `total` is 0 when unknown."""
    tool: str
    received: int
    total: int = 0

    @property
    def percent(self) -> Optional[float]:
        return self.received / self.total * 100 if self.total > 0 else None


ProgressCallback = Callable[[InstallProgress], Awaitable[None]]


def executable_name(tool: str) -> str:
    return f'{tool}.exe' if sys.platform == 'win32' else tool


class DependencyManager:
    """
    Resolves the external tools a download needs.

    A copy in the application directory wins over one on PATH, so an installed
    release is used even when an older system yt-dlp exists.
    """
    INSTALL_ATTEMPTS = 3
    CHUNK_SIZE = 64 * 1024

    def __init__(self, on_progress: Optional[ProgressCallback] = None, app_path: Path = APP_PATH):
        """
        Initializes the DependencyManager.

        Args:
            on_progress: Optional coroutine function awaited with install progress.
            app_path: Directory searched first, and where yt-dlp is installed.
        """
        self.on_progress = on_progress
        self.app_path = app_path
        self.logger = logging.getLogger(__name__)
        self.yt_dlp_path: Optional[Path] = None
        self.ffmpeg_path: Optional[Path] = None

    async def initialize(self):
        """Looks up both tools in worker threads."""
        self.yt_dlp_path, self.ffmpeg_path = await asyncio.gather(
            asyncio.to_thread(self.locate, 'yt-dlp'),
            asyncio.to_thread(self.locate, 'ffmpeg'),
        )
        self.logger.info(f"Using yt-dlp at {self.yt_dlp_path or '(missing)'}, ffmpeg at {self.ffmpeg_path or '(missing)'}")

    def find_yt_dlp(self) -> Optional[Path]:
        self.yt_dlp_path = self.locate('yt-dlp')
        return self.yt_dlp_path

    def find_ffmpeg(self) -> Optional[Path]:
        self.ffmpeg_path = self.locate('ffmpeg')
        return self.ffmpeg_path

    def locate(self, tool: str) -> Optional[Path]:
        """Returns the app-directory copy of `tool`, else the one on PATH, else None."""
        bundled = self.app_path / executable_name(tool)
        if bundled.exists():
            return bundled
        on_path = shutil.which(tool)
        return Path(on_path) if on_path else None

    async def ensure_yt_dlp(self) -> Path:
        """
        Returns the yt-dlp path, installing the latest release first if none is found.

        Raises:
            DependencyError: If yt-dlp is missing and cannot be installed.
        """
        if self.yt_dlp_path is None:
            await asyncio.to_thread(self.find_yt_dlp)
        if self.yt_dlp_path is None:
            self.logger.warning("yt-dlp not found. Installing the latest release...")
            return await self.install_yt_dlp()
        return self.yt_dlp_path

    async def get_version(self, executable: Optional[Path]) -> str:
        """Returns the first line the tool prints for its version flag, or a short reason it could not."""
        if executable is None or not executable.exists():
            return "Not found"
        flag = '-version' if 'ffmpeg' in executable.name.lower() else '--version'
        kwargs = {'creationflags': SUBPROCESS_CREATION_FLAGS} if sys.platform == 'win32' else {}
        try:
            process = await asyncio.create_subprocess_exec(
                str(executable), flag,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
                **kwargs
            )
            output, _ = await asyncio.wait_for(process.communicate(), timeout=15)
        except asyncio.TimeoutError:
            process.kill()
            return "Version check timed out"
        except OSError as e:
            self.logger.debug(f"Could not run {executable}: {e}")
            return "Cannot execute"
        if process.returncode != 0:
            return "Cannot execute"
        lines = output.decode('utf-8', 'replace').strip().splitlines()
        return lines[0] if lines else "Unknown version"

    async def install_yt_dlp(self) -> Path:
        """
        Downloads the yt-dlp release binary for this platform into the app directory.

        The file is written next to its destination and moved into place only
        once complete, so an interrupted install never leaves a broken binary.

        Raises:
            DependencyError: On unsupported platforms, network or file errors.
            DownloadCancelledError: If the install task is cancelled.
        """
        url = YT_DLP_URLS.get(sys.platform)
        if url is None:
            raise DependencyError(f"No yt-dlp release is published for platform '{sys.platform}'")

        destination = self.app_path / executable_name('yt-dlp')
        partial = destination.with_name(destination.name + '.part')
        try:
            async with aiohttp.ClientSession(headers=REQUEST_HEADERS) as session:
                await self._fetch_with_retries(session, url, partial)
            await asyncio.to_thread(partial.replace, destination)
            if sys.platform != 'win32':
                await asyncio.to_thread(destination.chmod, 0o755)
        except asyncio.CancelledError:
            self.logger.info("yt-dlp install cancelled.")
            raise DownloadCancelledError("yt-dlp install cancelled.")
        except aiohttp.ClientError as e:
            raise DependencyError(f"Network error while downloading yt-dlp: {e}")
        except OSError as e:
            raise DependencyError(f"Could not install yt-dlp to {destination}: {e}")
        finally:
            if partial.exists():
                partial.unlink()

        self.logger.info(f"Installed yt-dlp at {destination}")
        self.yt_dlp_path = destination
        return destination

    async def _fetch_with_retries(self, session: aiohttp.ClientSession, url: str, target: Path):
        for attempt in range(1, self.INSTALL_ATTEMPTS + 1):
            try:
                await self._fetch(session, url, target)
                return
            except aiohttp.ClientError as e:
                if attempt == self.INSTALL_ATTEMPTS:
                    raise
                delay = 2 ** (attempt - 1)
                self.logger.warning(f"yt-dlp download attempt {attempt} failed ({e}); retrying in {delay}s")
                await asyncio.sleep(delay)

    async def _fetch(self, session: aiohttp.ClientSession, url: str, target: Path):
        timeout = aiohttp.ClientTimeout(total=None, sock_connect=30, sock_read=60)
        async with session.get(url, timeout=timeout) as response:
            response.raise_for_status()
            total = response.content_length or 0
            received = 0
            async with aiofiles.open(target, 'wb') as out:
                async for chunk in response.content.iter_chunked(self.CHUNK_SIZE):
                    await out.write(chunk)
                    received += len(chunk)
                    if self.on_progress is not None:
                        await self.on_progress(InstallProgress('yt-dlp', received, total))
