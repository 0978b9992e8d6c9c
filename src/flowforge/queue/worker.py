"""Queue worker dispatching claimed jobs to handlers."""
import threading
from datetime import datetime
from typing import Any, Callable

from flowforge.observability import get_logger, with_execution_context
from flowforge.queue.base import ExecutionQueue, JobState, QueueJob

logger = get_logger(__name__)

JobHandler = Callable[[QueueJob], Any]
FailureHook = Callable[[QueueJob, Exception], None]


class QueueWorker:
    """
    Claims due jobs and runs the handler registered for their type.

    A handler's return value becomes the job result; an exception is
    recorded as a failed attempt. After the last attempt the per-type
    failure hook is invoked.
    """

    def __init__(self, queue: ExecutionQueue, batch_size: int | None = None):
        self.queue = queue
        self.batch_size = batch_size
        self._handlers: dict[str, JobHandler] = {}
        self._failure_hooks: dict[str, FailureHook] = {}
        self._stop_event = threading.Event()

    def register(
        self,
        job_type: str,
        handler: JobHandler,
        on_permanent_failure: FailureHook | None = None,
    ) -> None:
        """Register the handler for a job type."""
        self._handlers[job_type] = handler
        if on_permanent_failure is not None:
            self._failure_hooks[job_type] = on_permanent_failure

    @property
    def job_types(self) -> list[str]:
        return list(self._handlers)

    def run_once(self, now: datetime | None = None) -> int:
        """
        Process every job due at ``now``.

        Returns:
            Number of jobs processed
        """
        jobs = self.queue.claim_due(now, self.batch_size)
        for job in jobs:
            self._process(job, now)
        return len(jobs)

    def _process(self, job: QueueJob, now: datetime | None) -> None:
        context = with_execution_context(
            job_id=job.id,
            execution_id=job.payload.get("executionId"),
            workflow_id=job.payload.get("workflowId"),
            schedule_id=job.payload.get("scheduleId"),
        )
        handler = self._handlers.get(job.job_type)
        if handler is None:
            logger.error(f"No handler for job type: {job.job_type}", extra=context)
            self.queue.fail(job.id, f"No handler for job type: {job.job_type}", now)
            return

        logger.info(
            "Processing job",
            extra={**context, "job_type": job.job_type, "attempt": job.attempts_made},
        )
        try:
            result = handler(job)
        except Exception as e:
            logger.error(
                "Job handler failed",
                extra={**context, "error": str(e)},
                exc_info=True,
            )
            failed = self.queue.fail(job.id, str(e), now)
            if failed.state == JobState.FAILED:
                self._on_permanent_failure(failed, e, context)
            return

        self.queue.complete(job.id, result)
        logger.info("Job completed", extra=context)

    def _on_permanent_failure(self, job: QueueJob, error: Exception, context: dict[str, Any]) -> None:
        hook = self._failure_hooks.get(job.job_type)
        if hook is None:
            return
        try:
            hook(job, error)
        except Exception:
            logger.exception("Permanent failure hook raised", extra=context)

    def run_forever(self, poll_interval: float = 1.0) -> None:
        """Poll the queue until stop() is called."""
        self._stop_event.clear()
        logger.info(f"Queue worker started for job types: {', '.join(self.job_types)}")
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Queue poll failed")
            self._stop_event.wait(poll_interval)
        logger.info("Queue worker stopped")

    def stop(self) -> None:
        self._stop_event.set()
