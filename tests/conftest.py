"""Pytest fixtures and fakes for Onyx DL tests."""

import asyncio
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import pytest

from onyx.config import Settings
from onyx.exceptions import LaunchError
from onyx.jobs import JobSpec, ProgressUpdate
from onyx.runner import OutputLine, ProcessExited
from onyx.service import DownloadService
from onyx.url_extractor import Target

PROGRESS_LINES = (
    "[youtube] abc: Downloading webpage",
    "[download]  25.0% of 10.00MiB at 1.00MiB/s ETA 00:08",
    "[download]  75.0% of 10.00MiB at 2.00MiB/s ETA 00:02",
    "[download] 100.0% of 10.00MiB in 00:05",
)


@dataclass
class Script:
    """What a fake process prints and how it ends."""
    lines: Sequence[str] = PROGRESS_LINES
    exit_code: int = 0
    diagnostics: str = ""
    delay: float = 0.001
    launch_error: bool = False
    hang: bool = False


class FakeRunner:
    """
    Stands in for ProcessRunner. The script is chosen by the first argument.

    Tracks how many fake processes run at once and which ones were stopped
    before they produced their exit event.
    """

    def __init__(self, scripts: Optional[Dict[str, Script]] = None, default: Optional[Script] = None):
        self.scripts = scripts or {}
        self.default = default or Script()
        self.running = 0
        self.max_running = 0
        self.started: List[str] = []
        self.calls: List[Tuple[str, ...]] = []
        self.terminated: List[str] = []

    async def run(self, args):
        key = args[0]
        script = self.scripts.get(key, self.default)
        self.calls.append(tuple(args))
        if script.launch_error:
            raise LaunchError("yt-dlp executable not found at: /missing/yt-dlp")

        self.running += 1
        self.max_running = max(self.max_running, self.running)
        self.started.append(key)
        exited = False
        try:
            for line in script.lines:
                await asyncio.sleep(script.delay)
                yield OutputLine(line)
            if script.hang:
                await asyncio.Event().wait()
            await asyncio.sleep(script.delay)
            exited = True
            yield ProcessExited(script.exit_code, script.diagnostics)
        finally:
            self.running -= 1
            if not exited:
                self.terminated.append(key)


class RecordingSink:
    """A ProgressSink that records every call in order."""

    def __init__(self):
        self.events: List[Tuple[str, str, object]] = []

    async def on_start(self, job_id: str) -> None:
        self.events.append(('start', job_id, None))

    async def on_progress(self, job_id: str, update: ProgressUpdate) -> None:
        self.events.append(('progress', job_id, update))

    async def on_complete(self, job_id: str) -> None:
        self.events.append(('complete', job_id, None))

    async def on_fail(self, job_id: str, error: str) -> None:
        self.events.append(('fail', job_id, error))

    def of_kind(self, kind: str) -> List[Tuple[str, str, object]]:
        return [event for event in self.events if event[0] == kind]

    def terminal_ids(self) -> List[str]:
        return [job_id for kind, job_id, _ in self.events if kind in ('complete', 'fail')]


class RecordingObserver:
    """A SnapshotObserver that keeps every published pair."""

    def __init__(self):
        self.published = []

    async def publish(self, event, snapshot) -> None:
        self.published.append((event, snapshot))


class FakeResolver:
    def __init__(self, targets: List[Target]):
        self.targets = targets
        self.calls: List[Tuple[str, bool]] = []

    async def resolve(self, url: str, playlist: bool = False) -> List[Target]:
        self.calls.append((url, playlist))
        return self.targets


def make_specs(count: int) -> List[JobSpec]:
    return [
        JobSpec(job_id=f"job-{i}", title=f"Video {i}", args=(f"job-{i}",), output_template="%(title)s.%(ext)s")
        for i in range(1, count + 1)
    ]


async def wait_until(predicate, timeout: float = 5.0):
    """Polls `predicate` until it is true or the timeout expires."""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.fixture
def download_dir(tmp_path: Path) -> Path:
    path = tmp_path / "downloads"
    path.mkdir()
    return path


@pytest.fixture
def settings(download_dir: Path) -> Settings:
    return Settings(download_path=download_dir, max_concurrent_downloads=2)


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def playlist_targets() -> List[Target]:
    url = "https://www.youtube.com/playlist?list=PL123"
    return [
        Target(url, f"vid{i}", f"Entry {i}", playlist_index=i)
        for i in range(1, 5)
    ]


@pytest.fixture
def service(settings: Settings, fake_runner: FakeRunner, playlist_targets: List[Target]) -> DownloadService:
    return DownloadService(settings, fake_runner, FakeResolver(playlist_targets))
