"""Tests for ProcessRunner command building and real subprocess handling."""

import os
import sys
from contextlib import aclosing
from pathlib import Path

import pytest

from onyx.exceptions import LaunchError, ProcessError
from onyx.runner import OutputLine, ProcessExited, ProcessRunner

# The test "executable" is the Python interpreter; the job arguments are `-c <script>`,
# and whatever the runner appends ends up in the script's sys.argv.
FAILING_SCRIPT = """
import sys
print('[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:01', flush=True)
print('', flush=True)
print('[download] 100.0% of 1.00MiB', flush=True)
sys.stderr.write('WARNING: something odd\\n')
sys.stderr.write('ERROR: Video unavailable\\n')
sys.exit(3)
"""

HANGING_SCRIPT = """
import os, time
print(os.getpid(), flush=True)
time.sleep(60)
"""


async def collect(runner: ProcessRunner, args):
    events = []
    async with aclosing(runner.run(args)) as stream:
        async for event in stream:
            events.append(event)
    return events


class TestBuildCommand:

    def test_roots_output_template_under_download_dir(self, tmp_path: Path) -> None:
        runner = ProcessRunner(Path("yt-dlp"), download_dir=tmp_path)
        command = runner.build_command(['https://youtu.be/x', '-o', 'playlist/%(title)s.%(ext)s'])

        assert command[:2] == ['https://youtu.be/x', '-o']
        assert command[2] == str(tmp_path / 'playlist/%(title)s.%(ext)s')
        assert command[-1] == '--newline'

    def test_adds_default_template(self, tmp_path: Path) -> None:
        runner = ProcessRunner(Path("yt-dlp"), download_dir=tmp_path)
        command = runner.build_command(['https://youtu.be/x'])
        assert command == ['https://youtu.be/x', '-o', str(tmp_path / '%(title)s.%(ext)s'), '--newline']

    def test_keeps_absolute_template(self, tmp_path: Path) -> None:
        absolute = str(tmp_path / 'elsewhere' / '%(id)s.%(ext)s')
        runner = ProcessRunner(Path("yt-dlp"), download_dir=tmp_path / 'downloads')
        command = runner.build_command(['url', '--output', absolute])
        assert command[2] == absolute

    def test_ffmpeg_location_and_single_newline_flag(self, tmp_path: Path) -> None:
        runner = ProcessRunner(Path("yt-dlp"), ffmpeg_location=tmp_path / 'ffmpeg')
        command = runner.build_command(['url', '--newline'])
        assert command.count('--newline') == 1
        assert command[-2:] == ['--ffmpeg-location', str(tmp_path / 'ffmpeg')]

    def test_does_not_modify_caller_args(self) -> None:
        args = ('url', '-o', '%(title)s.%(ext)s')
        ProcessRunner(Path("yt-dlp"), download_dir=Path("/downloads")).build_command(args)
        assert args == ('url', '-o', '%(title)s.%(ext)s')


class TestProcessExited:

    def test_success_does_not_raise(self) -> None:
        ProcessExited(0).raise_for_status()

    def test_failure_summary_prefers_error_line(self) -> None:
        with pytest.raises(ProcessError) as exc_info:
            ProcessExited(1, "WARNING: slow\nERROR: Private video").raise_for_status()
        assert str(exc_info.value) == "Private video"
        assert exc_info.value.exit_code == 1

    def test_failure_summary_without_diagnostics(self) -> None:
        assert str(ProcessError(2)) == "yt-dlp exited with code 2"

    def test_failure_summary_falls_back_to_last_line(self) -> None:
        assert str(ProcessError(2, "first\nlast line\n\n")) == "last line"


class TestRun:

    async def test_streams_lines_then_exit_event(self) -> None:
        runner = ProcessRunner(Path(sys.executable))
        events = await collect(runner, ['-c', FAILING_SCRIPT])

        assert events[:-1] == [
            OutputLine('[download]  10.0% of 1.00MiB at 1.00MiB/s ETA 00:01'),
            OutputLine('[download] 100.0% of 1.00MiB'),
        ]
        exit_event = events[-1]
        assert isinstance(exit_event, ProcessExited)
        assert exit_event.exit_code == 3
        assert "ERROR: Video unavailable" in exit_event.diagnostics
        with pytest.raises(ProcessError, match="Video unavailable"):
            exit_event.raise_for_status()

    async def test_missing_executable_raises_launch_error(self, tmp_path: Path) -> None:
        runner = ProcessRunner(tmp_path / 'no-such-yt-dlp')
        with pytest.raises(LaunchError):
            await collect(runner, ['url'])

    @pytest.mark.skipif(sys.platform == 'win32', reason="uses POSIX process groups")
    async def test_closing_the_stream_terminates_the_process(self) -> None:
        runner = ProcessRunner(Path(sys.executable), terminate_grace=5)
        async with aclosing(runner.run(['-c', HANGING_SCRIPT])) as stream:
            first = await stream.__anext__()
        pid = int(first.text)

        with pytest.raises(ProcessLookupError):
            os.kill(pid, 0)
