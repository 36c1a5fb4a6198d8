"""Launches yt-dlp processes and streams their output as typed events."""
import asyncio
import os
import sys
import signal
import logging
import subprocess
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Deque, Dict, List, Optional, Protocol, Sequence, Union

from .constants import (
    DEFAULT_OUTPUT_TEMPLATE, DIAGNOSTIC_LINES, PROCESS_TERMINATE_GRACE, SUBPROCESS_CREATION_FLAGS
)
from .exceptions import LaunchError, ProcessError

OUTPUT_FLAGS = ('-o', '--output')
# yt-dlp can print very long lines (e.g. JSON dumps); the asyncio default is 64 KiB.
STREAM_LIMIT = 1024 * 1024


@dataclass(frozen=True)
class OutputLine:
    """One non-empty line of the process's standard output."""
    text: str


@dataclass(frozen=True)
class ProcessExited:
    """The single terminal event of a launched process."""
    exit_code: int
    diagnostics: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def raise_for_status(self):
        """Raises ProcessError if the process exited with a non-zero status."""
        if not self.ok:
            raise ProcessError(self.exit_code, self.diagnostics)


RawEvent = Union[OutputLine, ProcessExited]


class Runner(Protocol):
    """Anything that can turn an argument list into a stream of RawEvents."""

    def run(self, args: Sequence[str]) -> AsyncIterator[RawEvent]:
        ...


class ProcessRunner:
    """
    Runs one yt-dlp invocation per `run()` call.

    The runner has no concurrency policy of its own; it only guarantees that a
    launched process yields exactly one `ProcessExited` event, and that a process
    whose stream is abandoned (cancellation, early `aclose()`) is terminated.
    """

    def __init__(self, executable: Path, ffmpeg_location: Optional[Path] = None,
                 download_dir: Optional[Path] = None, terminate_grace: float = PROCESS_TERMINATE_GRACE,
                 show_debug_command: bool = False):
        """
        Initializes the ProcessRunner.

        Args:
            executable: The path to the yt-dlp executable.
            ffmpeg_location: ffmpeg binary or its directory, passed to yt-dlp if set.
            download_dir: Directory every output template is rooted under.
            terminate_grace: Seconds to wait after an interrupt before killing the process.
            show_debug_command: Log each full command line at INFO instead of DEBUG.
        """
        self.executable = Path(executable)
        self.ffmpeg_location = ffmpeg_location
        self.download_dir = download_dir
        self.terminate_grace = terminate_grace
        self.show_debug_command = show_debug_command
        self.logger = logging.getLogger(__name__)

    def build_command(self, args: Sequence[str]) -> List[str]:
        """
        Finalizes a yt-dlp argument list.

        Appends `--newline` so progress arrives one line per update, the
        `--ffmpeg-location` flag, and roots the output template under the
        download directory (adding a default template when none is given).

        Args:
            args: The job's own arguments (URL, format selection, output template).

        Returns:
            The argument list to pass after the executable.
        """
        command = list(args)
        output_index = next((i for i, arg in enumerate(command) if arg in OUTPUT_FLAGS), None)

        if output_index is not None and output_index + 1 < len(command):
            command[output_index + 1] = self._root_template(command[output_index + 1])
        elif output_index is not None:
            command.append(self._root_template(DEFAULT_OUTPUT_TEMPLATE))
        else:
            command.extend(['-o', self._root_template(DEFAULT_OUTPUT_TEMPLATE)])

        if '--newline' not in command:
            command.append('--newline')
        if self.ffmpeg_location:
            command.extend(['--ffmpeg-location', str(self.ffmpeg_location)])
        return command

    def _root_template(self, template: str) -> str:
        if self.download_dir is None or Path(template).is_absolute():
            return template
        return str(self.download_dir / template)

    async def run(self, args: Sequence[str]) -> AsyncIterator[RawEvent]:
        """
        Launches yt-dlp and yields its output lines, then one ProcessExited.

        Raises:
            LaunchError: If the executable is missing or cannot be spawned. No
                event is yielded in that case.
        """
        command = [str(self.executable), *self.build_command(args)]
        log_level = logging.INFO if self.show_debug_command else logging.DEBUG
        self.logger.log(log_level, f"Running: {subprocess.list2cmdline(command)}")

        kwargs: Dict[str, Any] = {}
        if sys.platform == 'win32':
            kwargs['creationflags'] = SUBPROCESS_CREATION_FLAGS | subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs['start_new_session'] = True

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
                **kwargs
            )
        except FileNotFoundError:
            raise LaunchError(f"yt-dlp executable not found at: {self.executable}")
        except OSError as e:
            raise LaunchError(f"Could not start yt-dlp: {e}")

        diagnostics: Deque[str] = deque(maxlen=DIAGNOSTIC_LINES)
        stderr_task = asyncio.create_task(self._drain_stderr(process, diagnostics))
        try:
            assert process.stdout is not None
            while True:
                line_bytes = await process.stdout.readline()
                if not line_bytes: break
                clean_line = line_bytes.decode('utf-8', 'replace').strip()
                if clean_line:
                    yield OutputLine(clean_line)

            exit_code = await process.wait()
            await stderr_task
            yield ProcessExited(exit_code, '\n'.join(diagnostics))
        finally:
            if process.returncode is None:
                await self.terminate(process)
            if not stderr_task.done():
                stderr_task.cancel()
                await asyncio.gather(stderr_task, return_exceptions=True)

    async def _drain_stderr(self, process: asyncio.subprocess.Process, diagnostics: Deque[str]):
        """Reads stderr concurrently so a chatty process can never block on a full pipe."""
        assert process.stderr is not None
        while True:
            line_bytes = await process.stderr.readline()
            if not line_bytes: break
            clean_line = line_bytes.decode('utf-8', 'replace').strip()
            if clean_line:
                self.logger.debug(f"[pid {process.pid}] stderr: {clean_line}")
                diagnostics.append(clean_line)

    async def terminate(self, process: asyncio.subprocess.Process):
        """Interrupts the process group, escalating to a kill after the grace period."""
        if process.returncode is not None:
            return
        self.logger.info(f"Terminating yt-dlp process (PID: {process.pid})...")
        try:
            if sys.platform == 'win32':
                process.send_signal(signal.CTRL_C_EVENT)
            else:
                os.killpg(os.getpgid(process.pid), signal.SIGINT)
            await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
        except (asyncio.TimeoutError, ProcessLookupError, OSError) as e:
            self.logger.warning(f"Graceful shutdown of PID {process.pid} failed: {e!r}. Forcing termination...")
            try: process.kill()
            except (ProcessLookupError, OSError): pass # Already gone
            await process.wait()
