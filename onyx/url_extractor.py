"""
Resolves a user-supplied URL into the list of targets to download.
"""

import asyncio
import sys
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from .constants import SUBPROCESS_CREATION_FLAGS
from .exceptions import ProcessError, URLExtractionError

# Tab cannot appear in a YouTube id, so it is a safe field separator.
_PRINT_TEMPLATE = '%(id)s\t%(title)s'


@dataclass(frozen=True)
class Target:
    """
    A single downloadable item.

    Attributes:
        url: The URL passed to yt-dlp for this item.
        entry_id: The item's id as reported by yt-dlp, used as the job id.
        title: The display title.
        playlist_index: 1-based position inside the playlist, if any.
    """
    url: str
    entry_id: str
    title: str
    playlist_index: Optional[int] = None


class URLInfoExtractor:
    """
    Enumerates the entries behind a URL using `yt-dlp --flat-playlist`.

    Flat extraction only reads the listing, so a 500-entry playlist resolves in
    one request instead of 500.
    """
    def __init__(self, yt_dlp_path: Path, timeout: int = 120):
        """
        Initializes the URLInfoExtractor.

        Args:
            yt_dlp_path: The path to the yt-dlp executable.
            timeout: Seconds allowed for one listing command.
        """
        self.yt_dlp_path = yt_dlp_path
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    async def _run_command(self, command: List[str]) -> Tuple[str, str]:
        """
        Runs a listing command and returns its decoded (stdout, stderr).

        The child is killed if it overruns `self.timeout` or the calling task is
        cancelled; cancellation is re-raised after that.

        Raises:
            URLExtractionError: If the command cannot start, times out or exits non-zero.
        """
        kwargs = {'creationflags': SUBPROCESS_CREATION_FLAGS} if sys.platform == 'win32' else {}
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs
            )
        except OSError as e:
            self.logger.error(f"Could not run {command[0]}: {e}")
            raise URLExtractionError(f"Could not run yt-dlp: {e}")

        try:
            out, err = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            await self._kill(process)
            raise URLExtractionError(f"Listing {command[-1]} took longer than {self.timeout}s.")
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        stdout, stderr = out.decode('utf-8', 'replace'), err.decode('utf-8', 'replace')
        if process.returncode != 0:
            self.logger.debug(f"Listing {command[-1]} exited with {process.returncode}: {stderr.strip()}")
            raise URLExtractionError(ProcessError(process.returncode, stderr).summary())
        return stdout, stderr

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process):
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()

    async def resolve(self, url: str, playlist: bool = False) -> List[Target]:
        """
        Lists the targets behind a URL.

        A single-video URL always yields one target. With `playlist=True` every
        entry becomes its own target, addressed through `--playlist-items` so the
        playlist title stays available to the output template.

        Raises:
            URLExtractionError: If yt-dlp fails or lists nothing.
        """
        command = [str(self.yt_dlp_path), '--flat-playlist', '--print', _PRINT_TEMPLATE, '--no-warnings']
        command.append('--yes-playlist' if playlist else '--no-playlist')
        command.append(url)
        stdout, _ = await self._run_command(command)

        entries = [self._parse_entry(line) for line in stdout.splitlines() if line.strip()]
        if not entries:
            raise URLExtractionError(f"No downloadable items found at {url}")

        if not playlist:
            entry_id, title = entries[0]
            return [Target(url, entry_id, title)]

        self.logger.info(f"Playlist {url} has {len(entries)} item(s).")
        return [
            Target(url, entry_id, title, playlist_index=index)
            for index, (entry_id, title) in enumerate(entries, start=1)
        ]

    @staticmethod
    def _parse_entry(line: str) -> Tuple[str, str]:
        entry_id, _, title = line.strip().partition('\t')
        return entry_id, title.strip() or entry_id
