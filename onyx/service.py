"""
Defines the DownloadService, the boundary that both the CLI and the HTTP server call.

A request is turned into job specs, registered with a fresh ProgressAggregator and
run by the shared JobScheduler. Observers (terminal view, WebSocket hub) receive
every snapshot the aggregator publishes.
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Set

from .aggregator import ProgressAggregator, SnapshotObserver
from .config import Settings
from .dependencies import DependencyManager
from .exceptions import OnyxError, OutputDirectoryError
from .formats import DownloadRequest, build_download_args
from .jobs import AggregateSnapshot, BatchResult, JobSpec
from .runner import ProcessRunner, Runner
from .scheduler import JobScheduler
from .url_extractor import Target, URLInfoExtractor


class TargetResolver(Protocol):
    """Lists the downloadable targets behind a URL."""

    async def resolve(self, url: str, playlist: bool = False) -> List[Target]: ...


class DownloadService:
    """Turns download requests into scheduled batches of yt-dlp jobs."""

    def __init__(self, settings: Settings, runner: Runner, resolver: TargetResolver,
                 observers: Iterable[SnapshotObserver] = ()):
        """
        Initializes the DownloadService.

        Args:
            settings: The application settings (download path, concurrency).
            runner: Launches yt-dlp processes; injected so tests can fake it.
            resolver: Enumerates playlist entries.
            observers: Receive the snapshots of every batch this service runs.
        """
        self.settings = settings
        self.runner = runner
        self.resolver = resolver
        self.observers: List[SnapshotObserver] = list(observers)
        self.scheduler = JobScheduler(runner)
        self.logger = logging.getLogger(__name__)
        self.latest_aggregator: Optional[ProgressAggregator] = None
        self._background_tasks: Set[asyncio.Task] = set()
        self._cancel_events: Dict[asyncio.Task, asyncio.Event] = {}

    @classmethod
    async def create(cls, settings: Settings, dep_manager: DependencyManager,
                     observers: Iterable[SnapshotObserver] = ()) -> "DownloadService":
        """
        Builds a service backed by the real yt-dlp executable.

        Raises:
            DependencyError: If yt-dlp cannot be found or installed.
        """
        await dep_manager.initialize()
        yt_dlp_path = await dep_manager.ensure_yt_dlp()
        runner = ProcessRunner(
            yt_dlp_path,
            ffmpeg_location=dep_manager.ffmpeg_path,
            download_dir=settings.download_path,
            show_debug_command=settings.show_debug_command,
        )
        return cls(settings, runner, URLInfoExtractor(yt_dlp_path), observers)

    def prepare_output_dir(self) -> Path:
        """
        Creates the download directory and checks that it is writable.

        Raises:
            OutputDirectoryError: If the directory cannot be created or written to.
        """
        output_path = Path(self.settings.download_path)
        try:
            output_path.mkdir(parents=True, exist_ok=True)
            test_file = output_path / f".writetest_{os.getpid()}"
            test_file.touch()
            test_file.unlink()
        except OSError as e:
            raise OutputDirectoryError(f"Cannot write to directory {output_path}: {e}")
        return output_path

    def build_job_specs(self, request: DownloadRequest, targets: List[Target]) -> List[JobSpec]:
        """Builds one JobSpec per target; ids are made unique within the batch."""
        type_args, template = build_download_args(request)
        specs: List[JobSpec] = []
        seen: Set[str] = set()
        for target in targets:
            job_id = target.entry_id or target.url
            if job_id in seen:
                job_id = f"{job_id}#{target.playlist_index or len(specs) + 1}"
            seen.add(job_id)

            if target.playlist_index is not None:
                selection = ['--yes-playlist', '--playlist-items', str(target.playlist_index)]
            else:
                selection = ['--no-playlist']
            args = (target.url, *selection, *type_args, '-o', template)
            specs.append(JobSpec(job_id=job_id, title=target.title, args=args, output_template=template))
        return specs

    async def resolve_targets(self, request: DownloadRequest) -> List[Target]:
        """A playlist is enumerated by the resolver; any other request is a single target."""
        if request.is_playlist:
            return await self.resolver.resolve(request.url, playlist=True)
        return [Target(url=request.url, entry_id=request.url, title=request.url)]

    async def download(self, request: DownloadRequest, concurrency: Optional[int] = None,
                       observers: Iterable[SnapshotObserver] = (),
                       cancel_event: Optional[asyncio.Event] = None,
                       targets: Optional[List[Target]] = None) -> BatchResult:
        """
        Runs one request to completion.

        Single downloads are a one-job batch with one slot. Playlists use
        `concurrency` (or the configured default) slots. Returns only after every
        observer has handled the final snapshot.

        Args:
            request: What to download.
            concurrency: Playlist concurrency limit; ignored for single downloads.
            observers: Extra observers for this batch only (e.g. a terminal view).
            cancel_event: Set to stop the batch.
            targets: Pre-resolved targets; resolved from the request when omitted.

        Returns:
            The scheduler's BatchResult. Job failures are reported there, not raised.

        Raises:
            OutputDirectoryError: If the download directory is unusable.
            URLExtractionError: If the playlist cannot be listed.
        """
        await asyncio.to_thread(self.prepare_output_dir)
        if targets is None:
            targets = await self.resolve_targets(request)
        specs = self.build_job_specs(request, targets)

        aggregator = ProgressAggregator([*self.observers, *observers])
        aggregator.register(specs)
        self.latest_aggregator = aggregator

        limit = (concurrency or self.settings.max_concurrent_downloads) if request.is_playlist else 1
        self.logger.info(f"--- Downloading {len(specs)} item(s) from {request.url} ({request.type.value}) ---")
        try:
            return await self.scheduler.run_all(specs, limit, aggregator, cancel_event=cancel_event)
        finally:
            await aggregator.flush()

    def start_download(self, request: DownloadRequest, concurrency: Optional[int] = None,
                       on_error: Optional[Callable[[OnyxError], Awaitable[None]]] = None) -> asyncio.Task:
        """
        Starts `download()` in the background and returns its task.

        Args:
            request: What to download.
            concurrency: Playlist concurrency limit.
            on_error: Awaited with the error if the batch cannot start at all.
        """
        cancel_event = asyncio.Event()
        task = asyncio.create_task(
            self._download_in_background(request, concurrency, cancel_event, on_error),
            name=f"download:{request.url}",
        )
        self._background_tasks.add(task)
        self._cancel_events[task] = cancel_event
        task.add_done_callback(self._handle_task_done)
        return task

    async def _download_in_background(self, request: DownloadRequest, concurrency: Optional[int],
                                      cancel_event: asyncio.Event,
                                      on_error: Optional[Callable[[OnyxError], Awaitable[None]]]) -> Optional[BatchResult]:
        try:
            return await self.download(request, concurrency, cancel_event=cancel_event)
        except OnyxError as e:
            self.logger.error(f"Download of {request.url} could not start: {e}")
            if on_error is not None:
                await on_error(e)
            return None

    def _handle_task_done(self, task: asyncio.Task) -> None:
        """Callback to log exceptions from fire-and-forget tasks."""
        self._background_tasks.discard(task)
        self._cancel_events.pop(task, None)
        try:
            task.result()
        except asyncio.CancelledError:
            pass  # Expected
        except Exception:
            self.logger.exception(f"Background download failed: {task.get_name()}")

    async def stop_all(self):
        """Cancels every background batch and waits for their processes to exit."""
        tasks = list(self._background_tasks)
        if not tasks:
            return
        self.logger.info(f"Stopping {len(tasks)} background download(s)...")
        for task in tasks:
            if (cancel_event := self._cancel_events.get(task)) is not None:
                cancel_event.set()
        await asyncio.gather(*tasks, return_exceptions=True)

    def snapshot(self) -> Optional[AggregateSnapshot]:
        """Snapshot of the most recently started batch, if any."""
        return self.latest_aggregator.snapshot() if self.latest_aggregator else None
