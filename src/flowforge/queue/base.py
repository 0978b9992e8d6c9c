"""Execution queue interface and job models."""
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Iterable

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from flowforge.errors import QueueDeliveryError

EXECUTE_WORKFLOW = "execute-workflow"
EXECUTE_SCHEDULED_WORKFLOW = "execute-scheduled-workflow"
EXECUTE_NODE = "execute-node"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    """Queue job state."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


PENDING_STATES = frozenset({JobState.WAITING, JobState.DELAYED})
FINISHED_STATES = frozenset({JobState.COMPLETED, JobState.FAILED})


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BackoffPolicy(_CamelModel):
    """Retry delay policy."""

    type: str = Field(default="exponential", pattern="^(exponential|fixed)$")
    delay_ms: int = Field(default=5000, ge=0)

    def delay_for(self, attempts_made: int) -> int:
        """Delay in ms before the retry following attempt ``attempts_made``."""
        if self.type == "fixed":
            return self.delay_ms
        return self.delay_ms * 2 ** max(attempts_made - 1, 0)


class JobOptions(_CamelModel):
    """Options accepted by ExecutionQueue.enqueue."""

    delay_ms: int = Field(default=0, ge=0, description="Delay before the job is ready")
    job_id: str | None = Field(default=None, description="Caller-chosen id; re-adding replaces a pending job")
    priority: int = Field(default=0, description="Higher runs first")
    attempts: int = Field(default=1, ge=1, description="Total delivery attempts")
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    replace_finished: bool = Field(
        default=False,
        description="Re-adding the id of a finished job starts a new job instead of returning it",
    )


class QueueJob(_CamelModel):
    """A job record."""

    id: str
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    options: JobOptions = Field(default_factory=JobOptions)
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    progress: float = 0
    sequence: int = 0
    ready_at: datetime
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    failed_reason: str | None = None
    result: Any = None

    @property
    def is_pending(self) -> bool:
        return self.state in PENDING_STATES

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    @property
    def priority(self) -> int:
        return self.options.priority

    def sort_key(self) -> tuple:
        """Claim order: highest priority, then earliest readyAt, then insertion."""
        return (-self.options.priority, self.ready_at, self.sequence)


class ExecutionQueue(ABC):
    """
    Durable at-least-once job queue.

    Re-adding an existing job id whose job is still pending replaces it;
    re-adding one that is active returns the existing job, and so does
    re-adding a finished one unless the options set ``replace_finished``.
    """

    def __init__(
        self,
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        clock: Clock | None = None,
    ):
        self.remove_on_complete = remove_on_complete
        self.remove_on_fail = remove_on_fail
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    @staticmethod
    def _keeps_existing(existing: QueueJob | None, options: JobOptions) -> bool:
        if existing is None or existing.is_pending:
            return False
        return existing.state == JobState.ACTIVE or not options.replace_finished

    def _new_job(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: JobOptions,
        sequence: int,
    ) -> QueueJob:
        now = self.now()
        return QueueJob(
            id=options.job_id or str(uuid.uuid4()),
            job_type=job_type,
            payload=dict(payload),
            options=options,
            state=JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING,
            sequence=sequence,
            ready_at=now + timedelta(milliseconds=options.delay_ms),
            created_at=now,
        )

    def _apply_failure(self, job: QueueJob, error: str, now: datetime) -> QueueJob:
        """Schedule a retry or fail the job permanently."""
        if job.attempts_made < job.options.attempts:
            job.state = JobState.DELAYED
            job.ready_at = now + timedelta(milliseconds=job.options.backoff.delay_for(job.attempts_made))
            job.failed_reason = error
            return job

        job.state = JobState.FAILED
        job.finished_at = now
        job.failed_reason = QueueDeliveryError(job.id, job.attempts_made, error).message
        return job

    @abstractmethod
    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> QueueJob:
        """Add a job (at-least-once delivery)."""

    @abstractmethod
    def remove(self, job_id: str) -> bool:
        """Cancel a pending job; False when it started, finished or is unknown."""

    @abstractmethod
    def get_job(self, job_id: str) -> QueueJob | None:
        """Job by id."""

    @abstractmethod
    def list_jobs(self, states: Iterable[JobState] | None = None) -> list[QueueJob]:
        """Jobs in claim order, optionally filtered by state."""

    @abstractmethod
    def claim_due(self, now: datetime | None = None, limit: int | None = None) -> list[QueueJob]:
        """Move due pending jobs to active and return them in claim order."""

    @abstractmethod
    def complete(self, job_id: str, result: Any = None) -> QueueJob:
        """Mark an active job completed."""

    @abstractmethod
    def fail(self, job_id: str, error: str, now: datetime | None = None) -> QueueJob:
        """Record a failed attempt; retries with backoff until attempts run out."""

    @abstractmethod
    def update_progress(self, job_id: str, progress: float) -> None:
        """Report progress (0-100) of an active job."""

    def counts(self) -> dict[str, int]:
        """Number of jobs per state."""
        result = {state.value: 0 for state in JobState}
        for job in self.list_jobs():
            result[job.state.value] += 1
        return result
