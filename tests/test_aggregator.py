"""Tests for the progress aggregator and its published snapshots."""

import asyncio
from typing import List, Tuple

from hypothesis import given, settings, strategies as st

from onyx.aggregator import ProgressAggregator
from onyx.jobs import JobStatus, ProgressUpdate
from onyx.scheduler import JobScheduler

from tests.conftest import PROGRESS_LINES, FakeRunner, RecordingObserver, Script, make_specs


class SlowObserver(RecordingObserver):
    """Takes `delay` seconds to handle each snapshot."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def publish(self, event, snapshot) -> None:
        await asyncio.sleep(self.delay)
        await super().publish(event, snapshot)


def make_aggregator(count: int = 3) -> Tuple[ProgressAggregator, RecordingObserver]:
    observer = RecordingObserver()
    aggregator = ProgressAggregator([observer])
    aggregator.register(make_specs(count))
    return aggregator, observer


class TestLifecycle:

    async def test_each_mutation_publishes_once(self) -> None:
        aggregator, observer = make_aggregator(2)

        await aggregator.on_start('job-1')
        await aggregator.on_progress('job-1', ProgressUpdate(40.0, "1MiB/s", "00:03"))
        await aggregator.on_complete('job-1')
        await aggregator.flush()

        assert [event.kind for event, _ in observer.published] == ['start', 'progress', 'complete']
        final = observer.published[-1][1]
        assert final.counters() == {'total': 2, 'pending': 1, 'active': 0, 'completed': 1, 'failed': 0}

    async def test_progress_is_visible_in_active_jobs(self) -> None:
        aggregator, observer = make_aggregator(1)
        await aggregator.on_start('job-1')
        await aggregator.on_progress('job-1', ProgressUpdate(40.0))
        await aggregator.flush()

        event, snapshot = observer.published[-1]
        assert event.progress == ProgressUpdate(40.0)
        assert snapshot.active_jobs['job-1'].last_progress.percent == 40.0
        assert snapshot.active_jobs['job-1'].status is JobStatus.RUNNING
        assert snapshot.overall_percent == 40.0

    async def test_failure_keeps_error(self) -> None:
        aggregator, observer = make_aggregator(1)
        await aggregator.on_start('job-1')
        await aggregator.on_fail('job-1', "Video unavailable")
        await aggregator.flush()

        event, snapshot = observer.published[-1]
        assert event.error == "Video unavailable"
        assert snapshot.failed_count == 1
        assert aggregator.get_job('job-1').error == "Video unavailable"
        assert aggregator.get_job('job-1').status is JobStatus.FAILED

    async def test_pending_job_can_fail_directly(self) -> None:
        aggregator, observer = make_aggregator(2)
        await aggregator.on_fail('job-2', "Cancelled")

        snapshot = aggregator.snapshot()
        assert snapshot.pending_count == 1
        assert snapshot.failed_count == 1
        assert snapshot.is_consistent

    async def test_unknown_job_is_ignored(self) -> None:
        aggregator, observer = make_aggregator(1)
        await aggregator.on_start('nope')
        await aggregator.on_progress('nope', ProgressUpdate(10.0))
        await aggregator.on_complete('nope')
        await aggregator.on_fail('nope', "boom")
        await aggregator.flush()

        assert observer.published == []
        assert aggregator.snapshot().counters() == {'total': 1, 'pending': 1, 'active': 0, 'completed': 0, 'failed': 0}

    async def test_progress_before_start_is_ignored(self) -> None:
        aggregator, observer = make_aggregator(1)
        await aggregator.on_progress('job-1', ProgressUpdate(10.0))
        assert observer.published == []

    async def test_second_terminal_event_is_ignored(self) -> None:
        aggregator, observer = make_aggregator(1)
        await aggregator.on_start('job-1')
        await aggregator.on_complete('job-1')
        await aggregator.on_fail('job-1', "late")
        await aggregator.flush()

        assert len(observer.published) == 2
        assert aggregator.snapshot().completed_count == 1
        assert aggregator.snapshot().failed_count == 0

    def test_duplicate_registration_is_ignored(self) -> None:
        aggregator, _ = make_aggregator(2)
        aggregator.register(make_specs(3))
        assert aggregator.snapshot().total == 3

    def test_snapshot_copies_job_state(self) -> None:
        aggregator, _ = make_aggregator(1)
        state = aggregator.get_job('job-1')
        state.status = JobStatus.COMPLETED
        assert aggregator.get_job('job-1').status is JobStatus.PENDING


class TestObservers:

    async def test_failing_observer_does_not_block_others(self) -> None:
        class BrokenObserver:
            async def publish(self, event, snapshot) -> None:
                raise RuntimeError("render failed")

        observer = RecordingObserver()
        aggregator = ProgressAggregator([BrokenObserver(), observer])
        aggregator.register(make_specs(1))

        await aggregator.on_start('job-1')
        await aggregator.on_complete('job-1')
        await aggregator.flush()

        assert [event.kind for event, _ in observer.published] == ['start', 'complete']

    async def test_slow_observer_does_not_hold_up_other_jobs(self) -> None:
        slow = SlowObserver(delay=0.3)
        fast = RecordingObserver()
        aggregator = ProgressAggregator([slow, fast])
        specs = make_specs(2)
        aggregator.register(specs)
        runner = FakeRunner(scripts={
            'job-1': Script(lines=(), delay=0.02),
            'job-2': Script(lines=PROGRESS_LINES[1:], delay=0.05),
        })

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await JobScheduler(runner).run_all(specs, 2, aggregator)
        elapsed = loop.time() - started

        assert sorted(result.completed) == ['job-1', 'job-2']
        assert elapsed < 1.0
        assert aggregator.snapshot().is_finished
        await aggregator.flush()
        assert [event.kind for event, _ in slow.published] == [event.kind for event, _ in fast.published]

    async def test_each_observer_sees_publication_order(self) -> None:
        slow = SlowObserver(delay=0.01)
        aggregator = ProgressAggregator([slow])
        aggregator.register(make_specs(1))

        await aggregator.on_start('job-1')
        for percent in (10.0, 20.0, 30.0):
            await aggregator.on_progress('job-1', ProgressUpdate(percent))
        await aggregator.on_complete('job-1')
        await aggregator.flush()

        assert [event.kind for event, _ in slow.published] == ['start', 'progress', 'progress', 'progress', 'complete']
        assert [event.progress.percent for event, _ in slow.published if event.progress] == [10.0, 20.0, 30.0]


operations = st.lists(
    st.tuples(
        st.sampled_from(['start', 'progress', 'complete', 'fail']),
        st.integers(min_value=1, max_value=5),
    ),
    max_size=40,
)


class TestSnapshotInvariant:

    @given(ops=operations)
    @settings(max_examples=100, deadline=None)
    def test_counters_always_add_up(self, ops: List[Tuple[str, int]]) -> None:
        """Any event sequence, including invalid ones and unknown ids, keeps every snapshot consistent."""
        async def scenario():
            aggregator, observer = make_aggregator(4)
            for kind, index in ops:
                job_id = f"job-{index}"
                if kind == 'start':
                    await aggregator.on_start(job_id)
                elif kind == 'progress':
                    await aggregator.on_progress(job_id, ProgressUpdate(float(index * 10)))
                elif kind == 'complete':
                    await aggregator.on_complete(job_id)
                else:
                    await aggregator.on_fail(job_id, "boom")
            await aggregator.flush()
            return aggregator, observer

        aggregator, observer = asyncio.run(scenario())
        assert all(snapshot.is_consistent for _, snapshot in observer.published)
        assert aggregator.snapshot().is_consistent
        assert aggregator.snapshot().total == 4

    @given(
        num_jobs=st.integers(min_value=1, max_value=8),
        limit=st.integers(min_value=1, max_value=4),
        failing=st.sets(st.integers(min_value=1, max_value=8)),
    )
    @settings(max_examples=25, deadline=None)
    def test_scheduled_batch_ends_finished(self, num_jobs: int, limit: int, failing) -> None:
        specs = make_specs(num_jobs)
        runner = FakeRunner(scripts={f"job-{i}": Script(exit_code=1) for i in failing})
        observer = RecordingObserver()
        aggregator = ProgressAggregator([observer])
        aggregator.register(specs)

        async def scenario():
            await JobScheduler(runner).run_all(specs, limit, aggregator)
            await aggregator.flush()

        asyncio.run(scenario())

        final = aggregator.snapshot()
        assert final.is_finished
        assert final.failed_count == len([i for i in failing if i <= num_jobs])
        assert all(snapshot.is_consistent for _, snapshot in observer.published)
        assert all(snapshot.active_count <= limit for _, snapshot in observer.published)

    @given(
        reported=st.lists(
            st.lists(st.floats(min_value=0, max_value=100, allow_nan=False), min_size=1, max_size=6).map(sorted),
            min_size=1,
            max_size=4,
        ),
        limit=st.integers(min_value=1, max_value=3),
    )
    @settings(max_examples=25, deadline=None)
    def test_percent_never_goes_backwards_while_running(self, reported: List[List[float]], limit: int) -> None:
        """Rising percentages in a job's output stay rising in every snapshot taken while it runs."""
        specs = make_specs(len(reported))
        runner = FakeRunner(scripts={
            f"job-{i}": Script(lines=tuple(f"[download] {percent:5.1f}% of 1.00MiB" for percent in percents))
            for i, percents in enumerate(reported, start=1)
        })
        observer = RecordingObserver()
        aggregator = ProgressAggregator([observer])
        aggregator.register(specs)

        async def scenario():
            await JobScheduler(runner).run_all(specs, limit, aggregator)
            await aggregator.flush()

        asyncio.run(scenario())

        for spec, percents in zip(specs, reported):
            seen = [
                snapshot.active_jobs[spec.job_id].last_progress.percent
                for _, snapshot in observer.published
                if spec.job_id in snapshot.active_jobs
            ]
            assert seen == sorted(seen)
            assert seen[-1] == float(f"{percents[-1]:.1f}")
