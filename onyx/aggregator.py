"""
Aggregates job lifecycle events into consistent snapshots for observers.

The aggregator is the scheduler's sink. It is the only owner of job state for a
batch and the only writer of its counters; every mutation happens under one lock
and queues exactly one publication for every observer. Each observer is fed from
its own queue by its own task, so a slow observer only delays itself.
"""

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .exceptions import InvalidTransitionError
from .jobs import AggregateSnapshot, JobEvent, JobSpec, JobState, JobStatus, ProgressUpdate


class SnapshotObserver(Protocol):
    """Receives every published (event, snapshot) pair, in publication order."""

    async def publish(self, event: JobEvent, snapshot: AggregateSnapshot) -> None: ...


class _ObserverChannel:
    """Delivers queued pairs to one observer, in order, on a task of its own."""

    def __init__(self, observer: SnapshotObserver, logger: logging.Logger):
        self.observer = observer
        self.logger = logger
        self.queue: "asyncio.Queue[Tuple[JobEvent, AggregateSnapshot]]" = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None

    def put(self, event: JobEvent, snapshot: AggregateSnapshot):
        self.queue.put_nowait((event, snapshot))
        if self.task is None or self.task.done():
            self.task = asyncio.create_task(self._deliver(), name=f"observer:{type(self.observer).__name__}")

    async def _deliver(self):
        # Returns as soon as the queue is empty; `put` starts a new task for the next item.
        while not self.queue.empty():
            event, snapshot = self.queue.get_nowait()
            try:
                await self.observer.publish(event, snapshot)
            except Exception:
                self.logger.exception(f"Observer {self.observer!r} failed to handle '{event.kind}' event.")


class ProgressAggregator:
    """Holds the state of every job in a batch and publishes it on each change."""

    def __init__(self, observers: Iterable[SnapshotObserver] = ()):
        """
        Initializes the ProgressAggregator.

        Args:
            observers: Receivers of each published snapshot.
        """
        self.logger = logging.getLogger(__name__)
        self._channels: List[_ObserverChannel] = [_ObserverChannel(o, self.logger) for o in observers]
        self._lock = asyncio.Lock()
        self._jobs: Dict[str, JobState] = {}
        self._pending: Dict[str, JobState] = {}
        self._active: Dict[str, JobState] = {}
        self._completed_count = 0
        self._failed_count = 0

    def register(self, specs: Iterable[JobSpec]):
        """
        Adds specs to the batch as PENDING jobs.

        Must be called before the scheduler starts reporting events for them.
        Re-registering a known id is ignored.
        """
        for spec in specs:
            if spec.job_id in self._jobs:
                self.logger.warning(f"Job '{spec.job_id}' is already registered; ignoring duplicate.")
                continue
            state = JobState(spec)
            self._jobs[spec.job_id] = state
            self._pending[spec.job_id] = state

    def get_job(self, job_id: str) -> Optional[JobState]:
        state = self._jobs.get(job_id)
        return state.copy() if state else None

    def snapshot(self) -> AggregateSnapshot:
        """Returns a consistent read of the aggregate state."""
        # Mutations never await between state changes, so a synchronous read can
        # not observe a half-applied update.
        return AggregateSnapshot(
            total=len(self._jobs),
            pending_count=len(self._pending),
            completed_count=self._completed_count,
            failed_count=self._failed_count,
            active_jobs={job_id: state.copy() for job_id, state in self._active.items()},
        )

    async def on_start(self, job_id: str) -> None:
        async with self._lock:
            state = self._lookup(job_id)
            if state is None or not self._apply(state, JobStatus.RUNNING):
                return
            del self._pending[job_id]
            self._active[job_id] = state
            self._publish(JobEvent('start', job_id))

    async def on_progress(self, job_id: str, update: ProgressUpdate) -> None:
        async with self._lock:
            state = self._active.get(job_id)
            if state is None:
                self.logger.debug(f"Ignoring progress for job '{job_id}' which is not running.")
                return
            state.last_progress = update
            self._publish(JobEvent('progress', job_id, progress=update))

    async def on_complete(self, job_id: str) -> None:
        async with self._lock:
            state = self._lookup(job_id)
            if state is None or not self._apply(state, JobStatus.COMPLETED):
                return
            del self._active[job_id]
            self._completed_count += 1
            self._publish(JobEvent('complete', job_id))

    async def on_fail(self, job_id: str, error: str) -> None:
        async with self._lock:
            state = self._lookup(job_id)
            if state is None:
                return
            # A job that failed before it could start (never admitted) goes straight to FAILED.
            if state.status is JobStatus.PENDING:
                state.transition(JobStatus.RUNNING)
                del self._pending[job_id]
                self._active[job_id] = state
            if not self._apply(state, JobStatus.FAILED):
                return
            state.error = error
            del self._active[job_id]
            self._failed_count += 1
            self._publish(JobEvent('fail', job_id, error=error))

    def _lookup(self, job_id: str) -> Optional[JobState]:
        state = self._jobs.get(job_id)
        if state is None:
            self.logger.warning(f"Received event for unknown job '{job_id}'.")
        return state

    def _apply(self, state: JobState, new_status: JobStatus) -> bool:
        try:
            state.transition(new_status)
        except InvalidTransitionError as e:
            self.logger.warning(str(e))
            return False
        return True

    def _publish(self, event: JobEvent):
        """Queues one snapshot for every observer; called with the lock held."""
        snapshot = self.snapshot()
        for channel in self._channels:
            channel.put(event, snapshot)

    async def flush(self):
        """Waits until every observer has handled everything published so far."""
        while True:
            busy = [channel.task for channel in self._channels if channel.task is not None and not channel.task.done()]
            if not busy:
                return
            await asyncio.wait(busy)
