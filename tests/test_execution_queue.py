"""Tests for the in-memory execution queue."""
from datetime import timedelta

import pytest

from flowforge.errors import ConflictError, NotFoundError
from flowforge.queue import (
    BackoffPolicy,
    InMemoryExecutionQueue,
    JobOptions,
    JobState,
)


class TestEnqueue:
    def test_immediate_job_is_waiting(self, queue, fixed_now):
        job = queue.enqueue("execute-workflow", {"workflowId": "wf-1"})

        assert job.state == JobState.WAITING
        assert job.ready_at == fixed_now
        assert job.attempts_made == 0

    def test_delayed_job(self, queue, fixed_now):
        job = queue.enqueue("execute-workflow", {}, JobOptions(delay_ms=60_000))

        assert job.state == JobState.DELAYED
        assert job.ready_at == fixed_now + timedelta(minutes=1)

    def test_readding_pending_id_replaces(self, queue):
        queue.enqueue("execute-workflow", {"v": 1}, JobOptions(job_id="job-1", delay_ms=1000))
        queue.enqueue("execute-workflow", {"v": 2}, JobOptions(job_id="job-1", delay_ms=5000))

        jobs = queue.list_jobs()
        assert len(jobs) == 1
        assert jobs[0].payload == {"v": 2}
        assert jobs[0].options.delay_ms == 5000

    def test_readding_active_id_returns_existing(self, queue):
        queue.enqueue("execute-workflow", {"v": 1}, JobOptions(job_id="job-1"))
        queue.claim_due()

        again = queue.enqueue("execute-workflow", {"v": 2}, JobOptions(job_id="job-1"))

        assert again.state == JobState.ACTIVE
        assert again.payload == {"v": 1}

    def test_readding_finished_id_returns_existing(self, queue):
        queue.enqueue("execute-workflow", {"v": 1}, JobOptions(job_id="job-1"))
        queue.claim_due()
        queue.complete("job-1", {"ok": True})

        again = queue.enqueue("execute-workflow", {"v": 2}, JobOptions(job_id="job-1"))

        assert again.state == JobState.COMPLETED
        assert again.result == {"ok": True}

    def test_replace_finished_starts_new_job(self, queue):
        queue.enqueue("execute-workflow", {"v": 1}, JobOptions(job_id="job-1"))
        queue.claim_due()
        queue.complete("job-1")

        again = queue.enqueue("execute-workflow", {"v": 2}, JobOptions(job_id="job-1", replace_finished=True))

        assert again.state == JobState.WAITING
        assert again.payload == {"v": 2}


class TestClaim:
    def test_delayed_job_not_claimed_early(self, queue, clock):
        queue.enqueue("execute-workflow", {}, JobOptions(delay_ms=60_000))

        assert queue.claim_due() == []
        clock.advance(minutes=1)
        assert len(queue.claim_due()) == 1

    def test_claim_order_priority_then_ready_time(self, queue, clock):
        queue.enqueue("t", {}, JobOptions(job_id="low"))
        queue.enqueue("t", {}, JobOptions(job_id="high-late", priority=1, delay_ms=1000))
        queue.enqueue("t", {}, JobOptions(job_id="high", priority=1))
        queue.enqueue("t", {}, JobOptions(job_id="low-2"))
        clock.advance(seconds=1)

        claimed = queue.claim_due()

        assert [job.id for job in claimed] == ["high", "high-late", "low", "low-2"]

    def test_claim_marks_active_and_counts_attempt(self, queue, fixed_now):
        queue.enqueue("t", {}, JobOptions(job_id="job-1"))

        (job,) = queue.claim_due()

        assert job.state == JobState.ACTIVE
        assert job.attempts_made == 1
        assert job.started_at == fixed_now
        assert queue.claim_due() == []

    def test_claim_limit(self, queue):
        for n in range(5):
            queue.enqueue("t", {}, JobOptions(job_id=f"job-{n}"))

        assert len(queue.claim_due(limit=2)) == 2
        assert len(queue.list_jobs([JobState.WAITING])) == 3


class TestRemove:
    def test_remove_pending(self, queue):
        queue.enqueue("t", {}, JobOptions(job_id="job-1", delay_ms=1000))

        assert queue.remove("job-1") is True
        assert queue.get_job("job-1") is None

    def test_remove_active_refused(self, queue):
        queue.enqueue("t", {}, JobOptions(job_id="job-1"))
        queue.claim_due()

        assert queue.remove("job-1") is False
        assert queue.get_job("job-1").state == JobState.ACTIVE

    def test_remove_unknown(self, queue):
        assert queue.remove("nope") is False


class TestRetry:
    def test_retry_with_exponential_backoff(self, queue, clock, fixed_now):
        options = JobOptions(job_id="job-1", attempts=3, backoff=BackoffPolicy(delay_ms=1000))
        queue.enqueue("t", {}, options)

        queue.claim_due()
        first = queue.fail("job-1", "boom")
        assert first.state == JobState.DELAYED
        assert first.ready_at == fixed_now + timedelta(seconds=1)
        assert first.failed_reason == "boom"

        clock.advance(seconds=1)
        queue.claim_due()
        second = queue.fail("job-1", "boom")
        assert second.ready_at == clock() + timedelta(seconds=2)

    def test_permanent_failure_after_attempts(self, queue, clock):
        queue.enqueue("t", {}, JobOptions(job_id="job-1", attempts=2, backoff=BackoffPolicy(delay_ms=100)))

        queue.claim_due()
        queue.fail("job-1", "boom")
        clock.advance(seconds=1)
        queue.claim_due()
        failed = queue.fail("job-1", "boom again")

        assert failed.state == JobState.FAILED
        assert failed.attempts_made == 2
        assert "failed permanently after 2 attempt(s): boom again" in failed.failed_reason
        clock.advance(hours=1)
        assert queue.claim_due() == []

    def test_fixed_backoff(self):
        policy = BackoffPolicy(type="fixed", delay_ms=500)

        assert policy.delay_for(1) == policy.delay_for(4) == 500

    def test_exponential_backoff(self):
        policy = BackoffPolicy(delay_ms=5000)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5000, 10000, 20000]


class TestCompletion:
    def test_complete_requires_active(self, queue):
        queue.enqueue("t", {}, JobOptions(job_id="job-1"))

        with pytest.raises(ConflictError):
            queue.complete("job-1")
        with pytest.raises(NotFoundError):
            queue.complete("missing")

    def test_progress(self, queue):
        queue.enqueue("t", {}, JobOptions(job_id="job-1"))
        queue.claim_due()

        queue.update_progress("job-1", 40)

        assert queue.get_job("job-1").progress == 40

    def test_finished_jobs_are_trimmed(self, clock):
        queue = InMemoryExecutionQueue(remove_on_complete=2, clock=clock)
        for n in range(4):
            queue.enqueue("t", {}, JobOptions(job_id=f"job-{n}"))
        for job in queue.claim_due():
            clock.advance(seconds=1)
            queue.complete(job.id)

        remaining = [job.id for job in queue.list_jobs([JobState.COMPLETED])]
        assert sorted(remaining) == ["job-2", "job-3"]

    def test_counts(self, queue):
        queue.enqueue("t", {}, JobOptions(job_id="a"))
        queue.enqueue("t", {}, JobOptions(job_id="b", delay_ms=1000))
        queue.claim_due()

        counts = queue.counts()

        assert counts["active"] == 1
        assert counts["delayed"] == 1
        assert counts["waiting"] == 0
