"""Thread-safe in-memory execution queue."""
import itertools
import threading
from datetime import datetime
from typing import Any, Iterable

from flowforge.errors import ConflictError, NotFoundError
from flowforge.observability import get_logger
from flowforge.queue.base import (
    Clock,
    ExecutionQueue,
    JobOptions,
    JobState,
    QueueJob,
)

logger = get_logger(__name__)


class InMemoryExecutionQueue(ExecutionQueue):
    """Single-process queue used in tests and local development."""

    def __init__(
        self,
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        clock: Clock | None = None,
    ):
        super().__init__(remove_on_complete, remove_on_fail, clock)
        self._lock = threading.RLock()
        self._jobs: dict[str, QueueJob] = {}
        self._sequence = itertools.count(1)

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> QueueJob:
        options = options or JobOptions()
        with self._lock:
            existing = self._jobs.get(options.job_id) if options.job_id else None
            if self._keeps_existing(existing, options):
                logger.info(
                    "Job already exists",
                    extra={"job_id": existing.id, "state": existing.state.value},
                )
                return existing.model_copy(deep=True)

            job = self._new_job(job_type, payload, options, next(self._sequence))
            self._jobs[job.id] = job
            logger.info(
                "Job replaced" if existing is not None else "Job enqueued",
                extra={"job_id": job.id, "job_type": job_type, "delay_ms": options.delay_ms},
            )
            return job.model_copy(deep=True)

    def remove(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_pending:
                return False
            del self._jobs[job_id]
        logger.info("Job removed", extra={"job_id": job_id})
        return True

    def get_job(self, job_id: str) -> QueueJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    def list_jobs(self, states: Iterable[JobState] | None = None) -> list[QueueJob]:
        wanted = set(states) if states is not None else None
        with self._lock:
            jobs = [
                job.model_copy(deep=True)
                for job in self._jobs.values()
                if wanted is None or job.state in wanted
            ]
        return sorted(jobs, key=QueueJob.sort_key)

    def claim_due(self, now: datetime | None = None, limit: int | None = None) -> list[QueueJob]:
        now = now or self.now()
        with self._lock:
            due = sorted(
                (job for job in self._jobs.values() if job.is_pending and job.ready_at <= now),
                key=QueueJob.sort_key,
            )
            if limit is not None:
                due = due[:limit]
            for job in due:
                job.state = JobState.ACTIVE
                job.attempts_made += 1
                job.started_at = now
            return [job.model_copy(deep=True) for job in due]

    def _active(self, job_id: str) -> QueueJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", {"job_id": job_id})
        if job.state != JobState.ACTIVE:
            raise ConflictError(
                f"Job {job_id} is {job.state.value}, not active",
                {"job_id": job_id, "state": job.state.value},
            )
        return job

    def complete(self, job_id: str, result: Any = None) -> QueueJob:
        with self._lock:
            job = self._active(job_id)
            job.state = JobState.COMPLETED
            job.finished_at = self.now()
            job.result = result
            job.progress = 100
            self._trim(JobState.COMPLETED, self.remove_on_complete)
            return job.model_copy(deep=True)

    def fail(self, job_id: str, error: str, now: datetime | None = None) -> QueueJob:
        with self._lock:
            job = self._apply_failure(self._active(job_id), error, now or self.now())
            if job.state == JobState.FAILED:
                logger.error(
                    "Job failed permanently",
                    extra={"job_id": job_id, "attempts": job.attempts_made, "error": error},
                )
                self._trim(JobState.FAILED, self.remove_on_fail)
            else:
                logger.warning(
                    "Job attempt failed, retrying",
                    extra={"job_id": job_id, "attempts": job.attempts_made, "error": error},
                )
            return job.model_copy(deep=True)

    def update_progress(self, job_id: str, progress: float) -> None:
        with self._lock:
            self._active(job_id).progress = progress

    def _trim(self, state: JobState, keep: int) -> None:
        finished = sorted(
            (job for job in self._jobs.values() if job.state == state),
            key=lambda job: job.finished_at,
        )
        for job in finished[: max(len(finished) - keep, 0)]:
            del self._jobs[job.id]
