"""
Defines the data classes for download jobs and their aggregate view.
"""

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, List, Optional, Tuple

from .exceptions import InvalidTransitionError

UNKNOWN = "unknown"


class JobStatus(str, Enum):
    """Lifecycle of a job: PENDING -> RUNNING -> COMPLETED | FAILED."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass(frozen=True)
class JobSpec:
    """
    Represents a single download task, fixed before scheduling.

    Attributes:
        job_id: A stable unique key (video id or URL).
        title: The display title.
        args: Arguments passed to yt-dlp, in order.
        output_template: The yt-dlp output template, relative to the download directory.
    """
    job_id: str
    title: str
    args: Tuple[str, ...]
    output_template: str


@dataclass(frozen=True)
class ProgressUpdate:
    """One parsed progress line: percent plus speed/eta strings (or UNKNOWN)."""
    percent: float
    speed: str = UNKNOWN
    eta: str = UNKNOWN

    def to_dict(self) -> Dict[str, object]:
        return {'percent': self.percent, 'speed': self.speed, 'eta': self.eta}


@dataclass
class JobState:
    """
    Mutable state of one job, owned by whoever drives its lifecycle.

    Attributes:
        spec: The immutable job specification.
        status: The current lifecycle status.
        last_progress: The most recent progress update seen for this job.
        started_at: Monotonic time at which the job started running.
        ended_at: Monotonic time at which the job reached a terminal status.
        error: The failure description for FAILED jobs.
    """
    spec: JobSpec
    status: JobStatus = JobStatus.PENDING
    last_progress: ProgressUpdate = field(default_factory=lambda: ProgressUpdate(0.0))
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    error: Optional[str] = None

    @property
    def job_id(self) -> str:
        return self.spec.job_id

    def transition(self, new_status: JobStatus):
        """Moves the job to `new_status`, rejecting anything but the forward lifecycle."""
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Job '{self.job_id}' cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        if new_status is JobStatus.RUNNING:
            self.started_at = time.monotonic()
        elif new_status.is_terminal:
            self.ended_at = time.monotonic()

    def copy(self) -> "JobState":
        return replace(self)


@dataclass(frozen=True)
class AggregateSnapshot:
    """
    A consistent point-in-time view over every job of a batch.

    `completed_count + failed_count + len(active_jobs) + pending_count == total`
    holds for every snapshot the aggregator publishes.
    """
    total: int
    pending_count: int
    completed_count: int
    failed_count: int
    active_jobs: Dict[str, JobState]

    @property
    def active_count(self) -> int:
        return len(self.active_jobs)

    @property
    def is_consistent(self) -> bool:
        return self.completed_count + self.failed_count + self.active_count + self.pending_count == self.total

    @property
    def is_finished(self) -> bool:
        return self.completed_count + self.failed_count == self.total

    @property
    def overall_percent(self) -> float:
        """Finished jobs count as 100%, running jobs by their last reported percent."""
        if self.total == 0:
            return 100.0
        running = sum(min(max(job.last_progress.percent, 0.0), 100.0) for job in self.active_jobs.values())
        done = (self.completed_count + self.failed_count) * 100.0
        return (done + running) / self.total

    def counters(self) -> Dict[str, int]:
        return {
            'total': self.total,
            'pending': self.pending_count,
            'active': self.active_count,
            'completed': self.completed_count,
            'failed': self.failed_count,
        }


@dataclass(frozen=True)
class JobEvent:
    """The lifecycle event that caused a snapshot to be published."""
    kind: str  # 'start', 'progress', 'complete' or 'fail'
    job_id: str
    progress: Optional[ProgressUpdate] = None
    error: Optional[str] = None


@dataclass
class BatchResult:
    """
    Outcome of one scheduler run.

    Attributes:
        completed: Ids of jobs that finished successfully, in completion order.
        failed: Failure description per failed job id.
        not_started: Ids of jobs never admitted because the batch was cancelled.
        cancelled: Whether the batch was cancelled before every job ran.
        peak_running: The largest number of jobs observed running at once.
    """
    completed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    not_started: List[str] = field(default_factory=list)
    cancelled: bool = False
    peak_running: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed and not self.not_started and not self.cancelled
