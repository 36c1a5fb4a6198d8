"""Runs batches of download jobs on a bounded pool of worker tasks."""
import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

from .exceptions import JobTimeoutError, LaunchError, ProcessError
from .jobs import BatchResult, JobSpec, ProgressUpdate
from .progress_parser import parse_progress_line
from .runner import OutputLine, ProcessExited, Runner

CANCELLED_MESSAGE = "Cancelled"


class ProgressSink(Protocol):
    """Receives the lifecycle events of every job the scheduler runs."""

    async def on_start(self, job_id: str) -> None: ...

    async def on_progress(self, job_id: str, update: ProgressUpdate) -> None: ...

    async def on_complete(self, job_id: str) -> None: ...

    async def on_fail(self, job_id: str, error: str) -> None: ...


@dataclass
class _Batch:
    """Per-call state shared by the workers of one `run_all`."""
    job_queue: "asyncio.Queue[JobSpec]"
    sink: ProgressSink
    cancel_event: asyncio.Event
    job_timeout: Optional[float]
    result: BatchResult = field(default_factory=BatchResult)
    running: int = 0


class JobScheduler:
    """
    Runs job specs through a runner with at most N jobs in flight.

    Admission is FIFO: `min(N, len(specs))` worker tasks pull specs from a queue
    in input order, so a freed slot always goes to the oldest job not yet started.
    Every admitted job produces exactly one terminal sink call (`on_complete` or
    `on_fail`); a failing job never affects its siblings. One scheduler may run
    several batches at the same time.
    """

    def __init__(self, runner: Runner, parser: Callable[[str], Optional[ProgressUpdate]] = parse_progress_line):
        """
        Initializes the JobScheduler.

        Args:
            runner: Launches one job's process and streams its events.
            parser: Turns an output line into a progress update, or None.
        """
        self.runner = runner
        self.parser = parser
        self.logger = logging.getLogger(__name__)

    async def run_all(self, specs: Sequence[JobSpec], concurrency_limit: int, sink: ProgressSink,
                      cancel_event: Optional[asyncio.Event] = None,
                      job_timeout: Optional[float] = None) -> BatchResult:
        """
        Runs every spec and returns once all admitted jobs are terminal.

        Individual failures are reported through `sink.on_fail` and recorded in the
        result; they never make this call raise. When `cancel_event` is set, no
        further job is admitted, running jobs are terminated and reported as failed
        with "Cancelled", and the remaining specs are listed as not started.

        Args:
            specs: Jobs to run, in admission order.
            concurrency_limit: Maximum number of jobs running at once (>= 1).
            sink: Receives start/progress/complete/fail events.
            cancel_event: When set, stops admission and terminates running jobs.
            job_timeout: Optional per-job limit in seconds.

        Returns:
            A BatchResult describing completed, failed and never-started jobs.

        Raises:
            ValueError: If `concurrency_limit` is below 1.
        """
        if concurrency_limit < 1:
            raise ValueError(f"concurrency_limit must be at least 1, got {concurrency_limit}")

        batch = _Batch(asyncio.Queue(), sink, cancel_event or asyncio.Event(), job_timeout)
        for spec in specs:
            batch.job_queue.put_nowait(spec)
        if not specs:
            return batch.result

        num_workers = min(concurrency_limit, len(specs))
        self.logger.info(f"Starting batch of {len(specs)} job(s) with {num_workers} worker(s).")
        worker_tasks = [
            asyncio.create_task(self._worker_task(batch), name=f"download-worker-{i}")
            for i in range(num_workers)
        ]
        cancel_waiter = asyncio.create_task(batch.cancel_event.wait())

        try:
            await asyncio.wait([*worker_tasks, cancel_waiter], return_when=asyncio.FIRST_COMPLETED)
            while not all(task.done() for task in worker_tasks):
                if batch.cancel_event.is_set():
                    self.logger.info("Cancel signal received. Terminating running downloads...")
                    batch.result.cancelled = True
                    await self._stop_workers(worker_tasks)
                    break
                await asyncio.wait([*worker_tasks, cancel_waiter], return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            self.logger.info("Batch task cancelled. Terminating running downloads...")
            batch.result.cancelled = True
            await self._stop_workers(worker_tasks)
            raise
        finally:
            cancel_waiter.cancel()
            while not batch.job_queue.empty():
                batch.result.not_started.append(batch.job_queue.get_nowait().job_id)
            if batch.result.not_started:
                batch.result.cancelled = True

        # Anything other than a job failure escaping a worker is a bug; surface it.
        for task in worker_tasks:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()

        result = batch.result
        self.logger.info(
            f"Batch finished: {len(result.completed)} completed, {len(result.failed)} failed, "
            f"{len(result.not_started)} not started."
        )
        return result

    async def _stop_workers(self, worker_tasks: List[asyncio.Task]):
        """Cancels the workers and waits until each one has cleaned up its job."""
        for task in worker_tasks:
            task.cancel()
        await asyncio.gather(*worker_tasks, return_exceptions=True)

    async def _worker_task(self, batch: _Batch):
        """Main loop for a download worker task."""
        while not batch.cancel_event.is_set():
            try:
                spec = batch.job_queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._run_job(spec, batch)
            finally:
                batch.job_queue.task_done()

    async def _run_job(self, spec: JobSpec, batch: _Batch):
        """Runs a single job and reports exactly one terminal event for it."""
        batch.running += 1
        batch.result.peak_running = max(batch.result.peak_running, batch.running)
        error: Optional[str] = None
        try:
            await batch.sink.on_start(spec.job_id)
            if batch.job_timeout is None:
                await self._execute(spec, batch.sink)
            else:
                try:
                    await asyncio.wait_for(self._execute(spec, batch.sink), timeout=batch.job_timeout)
                except asyncio.TimeoutError:
                    raise JobTimeoutError(batch.job_timeout, spec.job_id)
        except asyncio.CancelledError:
            error = CANCELLED_MESSAGE
            raise
        except (LaunchError, ProcessError, JobTimeoutError) as e:
            error = str(e)
            self.logger.warning(f"Job '{spec.job_id}' failed: {error}")
        except OSError as e:
            error = f"OS error: {e}"
            self.logger.warning(f"Job '{spec.job_id}' failed: {error}")
        except Exception:
            self.logger.exception(f"Unexpected error during download for job {spec.job_id}")
            error = "An unexpected error occurred"
        finally:
            batch.running -= 1
            if error is None:
                batch.result.completed.append(spec.job_id)
                await self._report_terminal(batch.sink.on_complete(spec.job_id))
            else:
                batch.result.failed[spec.job_id] = error
                await self._report_terminal(batch.sink.on_fail(spec.job_id, error))

    async def _report_terminal(self, call: Awaitable[None]):
        """
        Awaits a terminal sink call to the end, even if the worker is cancelled meanwhile.

        A cancellation that arrives during the call is re-raised once the sink has
        recorded the terminal state.
        """
        report = asyncio.ensure_future(call)
        cancelled = False
        while not report.done():
            try:
                await asyncio.shield(report)
            except asyncio.CancelledError:
                cancelled = True
        if cancelled:
            raise asyncio.CancelledError
        report.result()

    async def _execute(self, spec: JobSpec, sink: ProgressSink):
        """Streams one job's process events through the parser into the sink."""
        exit_event: Optional[ProcessExited] = None
        async with aclosing(self.runner.run(spec.args)) as events:
            async for event in events:
                if isinstance(event, OutputLine):
                    self.logger.debug(f"[{spec.job_id}] {event.text}")
                    update = self.parser(event.text)
                    if update is not None:
                        await sink.on_progress(spec.job_id, update)
                elif isinstance(event, ProcessExited):
                    exit_event = event
        if exit_event is None:
            raise ProcessError(-1, "yt-dlp produced no exit status")
        exit_event.raise_for_status()
