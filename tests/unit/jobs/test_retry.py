"""Tests for the exhaustion retry policy."""

import pytest

from extracts.errors import AuthenticationFailed, UnansweredAnomalyQuestion
from extracts.jobs.retry import ExhaustionDisposition, RetryPolicy
from extracts.jobs.types import JobStatus, JobType


async def _claimed(queue, attempt, **kwargs):
    job = await queue.enqueue(JobType.PLACE_ORDER, {"order_id": 1}, **kwargs)
    for _ in range(attempt):
        await queue.claim("w1", [JobType.PLACE_ORDER])
        if job.attempt < attempt:
            await queue.fail(job.id, "boom")
    return job


class TestShouldRedeliver:
    @pytest.mark.asyncio
    async def test_redeliver_while_attempts_remain(self, queue):
        job = await _claimed(queue, attempt=2)
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL)
        assert policy.should_redeliver(job, RuntimeError("x"))

    @pytest.mark.asyncio
    async def test_no_redelivery_on_last_attempt(self, queue):
        job = await _claimed(queue, attempt=3)
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL)
        assert not policy.should_redeliver(job, AuthenticationFailed("bad password"))

    @pytest.mark.asyncio
    async def test_operator_action_skips_backoff(self, queue):
        job = await _claimed(queue, attempt=1)
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL)
        assert not policy.should_redeliver(job, UnansweredAnomalyQuestion("Pet name?"))


class TestRequeue:
    @pytest.mark.asyncio
    async def test_tail_requeue_creates_fresh_job(self, queue):
        job = await _claimed(queue, attempt=3)
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL)

        new_job = await policy.requeue(queue, job, RuntimeError("boom"))

        assert new_job.id != job.id
        assert new_job.attempt == 0
        assert new_job.priority == 100
        assert new_job.payload == job.payload
        assert new_job.status == JobStatus.PENDING

    @pytest.mark.asyncio
    async def test_tail_requeue_runs_after_existing_work(self, queue):
        job = await _claimed(queue, attempt=3)
        waiting = await queue.enqueue(JobType.PLACE_ORDER, {"order_id": 2})
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL)

        await policy.requeue(queue, job, RuntimeError("boom"))

        assert (await queue.claim("w1", [JobType.PLACE_ORDER])).id == waiting.id

    @pytest.mark.asyncio
    async def test_head_requeue_jumps_the_queue(self, queue):
        job = await queue.enqueue(JobType.CHECK_AND_DOWNLOAD, {"order_id": 1})
        await queue.claim("w1", [JobType.CHECK_AND_DOWNLOAD])
        await queue.enqueue(JobType.CHECK_AND_DOWNLOAD, {"order_id": 2})
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_HEAD, head_priority=1)

        new_job = await policy.requeue(queue, job, RuntimeError("boom"))

        assert new_job.priority == 1
        assert (await queue.claim("w1", [JobType.CHECK_AND_DOWNLOAD])).id == new_job.id

    @pytest.mark.asyncio
    async def test_operator_action_requeue_is_parked(self, queue):
        job = await _claimed(queue, attempt=1)
        policy = RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL, operator_action_delay_s=900)

        new_job = await policy.requeue(queue, job, UnansweredAnomalyQuestion("Pet name?"))

        assert (new_job.run_after - new_job.created_at).total_seconds() == pytest.approx(900)
        assert await queue.claim("w1", [JobType.PLACE_ORDER]) is None
