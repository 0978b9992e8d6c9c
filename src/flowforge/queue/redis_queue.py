"""Redis-backed execution queue."""
from datetime import datetime
from typing import Any, Iterable

import redis

from flowforge.config import get_settings
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


def _score(moment: datetime) -> float:
    return moment.timestamp() * 1000


class RedisExecutionQueue(ExecutionQueue):
    """
    Queue shared by every scheduler and worker process.

    Layout (all keys under ``{key_prefix}:queue``):
    - ``job:{id}``: job record as JSON
    - ``pending``: sorted set of pending job ids scored by readyAt (ms)
    - ``completed`` / ``failed``: lists of finished job ids, newest first
    - ``seq``: insertion counter
    """

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        key_prefix: str | None = None,
        remove_on_complete: int = 100,
        remove_on_fail: int = 50,
        clock: Clock | None = None,
    ):
        """
        Initialize Redis queue.

        Args:
            redis_client: Optional Redis client (will create one if not provided)
            key_prefix: Key namespace (defaults to settings.key_prefix)
            remove_on_complete: Completed jobs kept
            remove_on_fail: Failed jobs kept
            clock: Time source
        """
        super().__init__(remove_on_complete, remove_on_fail, clock)
        settings = get_settings()
        if redis_client is None:
            self.redis_client = redis.from_url(settings.redis_url, decode_responses=True)
        else:
            self.redis_client = redis_client

        prefix = f"{key_prefix or settings.key_prefix}:queue"
        self._job_prefix = f"{prefix}:job:"
        self._pending_key = f"{prefix}:pending"
        self._seq_key = f"{prefix}:seq"
        self._finished_keys = {
            JobState.COMPLETED: f"{prefix}:completed",
            JobState.FAILED: f"{prefix}:failed",
        }

    def _job_key(self, job_id: str) -> str:
        """Get Redis key for job."""
        return f"{self._job_prefix}{job_id}"

    def _load(self, job_id: str) -> QueueJob | None:
        raw = self.redis_client.get(self._job_key(job_id))
        if raw is None:
            return None
        return QueueJob.model_validate_json(raw)

    def _save(self, job: QueueJob) -> None:
        self.redis_client.set(self._job_key(job.id), job.model_dump_json(by_alias=True))

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        options: JobOptions | None = None,
    ) -> QueueJob:
        options = options or JobOptions()
        job = self._new_job(job_type, payload, options, int(self.redis_client.incr(self._seq_key)))
        key = self._job_key(job.id)

        with self.redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is not None:
                        existing = QueueJob.model_validate_json(raw)
                        if self._keeps_existing(existing, options):
                            pipe.unwatch()
                            logger.info(
                                "Job already exists",
                                extra={"job_id": existing.id, "state": existing.state.value},
                            )
                            return existing
                    pipe.multi()
                    pipe.set(key, job.model_dump_json(by_alias=True))
                    pipe.zadd(self._pending_key, {job.id: _score(job.ready_at)})
                    for list_key in self._finished_keys.values():
                        pipe.lrem(list_key, 0, job.id)
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue

        logger.info(
            "Job enqueued",
            extra={"job_id": job.id, "job_type": job_type, "delay_ms": options.delay_ms},
        )
        return job

    def remove(self, job_id: str) -> bool:
        key = self._job_key(job_id)
        with self.redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None or not QueueJob.model_validate_json(raw).is_pending:
                        pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.zrem(self._pending_key, job_id)
                    pipe.delete(key)
                    pipe.execute()
                    break
                except redis.WatchError:
                    continue

        logger.info("Job removed", extra={"job_id": job_id})
        return True

    def get_job(self, job_id: str) -> QueueJob | None:
        return self._load(job_id)

    def list_jobs(self, states: Iterable[JobState] | None = None) -> list[QueueJob]:
        wanted = set(states) if states is not None else None
        jobs = []
        for key in self.redis_client.scan_iter(match=f"{self._job_prefix}*"):
            raw = self.redis_client.get(key)
            if raw is None:
                continue
            job = QueueJob.model_validate_json(raw)
            if wanted is None or job.state in wanted:
                jobs.append(job)
        return sorted(jobs, key=QueueJob.sort_key)

    def claim_due(self, now: datetime | None = None, limit: int | None = None) -> list[QueueJob]:
        now = now or self.now()
        candidates = []
        for job_id in self.redis_client.zrangebyscore(self._pending_key, "-inf", _score(now)):
            job = self._load(job_id)
            if job is not None:
                candidates.append(job)

        claimed = []
        for candidate in sorted(candidates, key=QueueJob.sort_key):
            if limit is not None and len(claimed) >= limit:
                break
            job = self._claim(candidate.id, now)
            if job is not None:
                claimed.append(job)
        return claimed

    def _claim(self, job_id: str, now: datetime) -> QueueJob | None:
        """Move one due job to active, unless it changed since it was listed."""
        key = self._job_key(job_id)
        with self.redis_client.pipeline() as pipe:
            while True:
                try:
                    pipe.watch(key)
                    raw = pipe.get(key)
                    if raw is None:
                        pipe.unwatch()
                        return None
                    job = QueueJob.model_validate_json(raw)
                    # Claimed elsewhere, or replaced by a job that is not due yet
                    if not job.is_pending or job.ready_at > now:
                        pipe.unwatch()
                        return None
                    job.state = JobState.ACTIVE
                    job.attempts_made += 1
                    job.started_at = now
                    pipe.multi()
                    pipe.zrem(self._pending_key, job_id)
                    pipe.set(key, job.model_dump_json(by_alias=True))
                    pipe.execute()
                    return job
                except redis.WatchError:
                    continue

    def _active(self, job_id: str) -> QueueJob:
        job = self._load(job_id)
        if job is None:
            raise NotFoundError(f"Job not found: {job_id}", {"job_id": job_id})
        if job.state != JobState.ACTIVE:
            raise ConflictError(
                f"Job {job_id} is {job.state.value}, not active",
                {"job_id": job_id, "state": job.state.value},
            )
        return job

    def complete(self, job_id: str, result: Any = None) -> QueueJob:
        job = self._active(job_id)
        job.state = JobState.COMPLETED
        job.finished_at = self.now()
        job.result = result
        job.progress = 100
        self._save(job)
        self._record_finished(job, self.remove_on_complete)
        return job

    def fail(self, job_id: str, error: str, now: datetime | None = None) -> QueueJob:
        job = self._apply_failure(self._active(job_id), error, now or self.now())
        self._save(job)
        if job.state == JobState.FAILED:
            logger.error(
                "Job failed permanently",
                extra={"job_id": job_id, "attempts": job.attempts_made, "error": error},
            )
            self._record_finished(job, self.remove_on_fail)
        else:
            logger.warning(
                "Job attempt failed, retrying",
                extra={"job_id": job_id, "attempts": job.attempts_made, "error": error},
            )
            self.redis_client.zadd(self._pending_key, {job.id: _score(job.ready_at)})
        return job

    def update_progress(self, job_id: str, progress: float) -> None:
        job = self._active(job_id)
        job.progress = progress
        self._save(job)

    def _record_finished(self, job: QueueJob, keep: int) -> None:
        list_key = self._finished_keys[job.state]
        self.redis_client.lpush(list_key, job.id)
        expired = self.redis_client.lrange(list_key, keep, -1)
        if expired:
            self.redis_client.delete(*[self._job_key(job_id) for job_id in expired])
            self.redis_client.ltrim(list_key, 0, keep - 1)
