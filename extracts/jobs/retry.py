"""Exhaustion policy for jobs that keep failing.

While a job has attempts left, a failure is re-raised and the queue redelivers
it after backoff. Once attempts are used up the processor, not the queue,
decides what happens next:

- REQUEUE_AT_TAIL: enqueue a brand-new job with default priority and a fresh
  attempt counter. Used for place-order jobs so a failing order does not block
  the others.
- REQUEUE_AT_HEAD: enqueue a brand-new job with elevated priority so it runs
  before newer work. Used for check-and-download jobs so a registered order
  keeps its place.

Operator-action errors skip backoff retries and go straight to the
exhaustion disposition with a parking delay.
"""

from dataclasses import dataclass
from enum import Enum

import structlog

from extracts.errors import ErrorDisposition, QueueExhausted, classify_error
from extracts.jobs.models import Job
from extracts.jobs.queue import WorkQueue
from extracts.routers.metrics import record_requeue

logger = structlog.get_logger(__name__)


class ExhaustionDisposition(str, Enum):
    REQUEUE_AT_TAIL = "requeue_at_tail"
    REQUEUE_AT_HEAD = "requeue_at_head"


@dataclass
class RetryPolicy:
    """Decides between queue redelivery and an exhaustion disposition."""

    disposition: ExhaustionDisposition
    head_priority: int = 1
    operator_action_delay_s: float = 900.0

    def should_redeliver(self, job: Job, error: BaseException) -> bool:
        """True if the error should go back to the queue for a backoff retry."""
        if classify_error(error) == ErrorDisposition.OPERATOR_ACTION:
            return False
        return job.has_retries_left

    async def requeue(self, queue: WorkQueue, job: Job, error: BaseException) -> Job:
        """Re-enqueue an exhausted job as new work. Returns the new job."""
        exhausted = QueueExhausted(job.id, job.attempt)
        delay_s = 0.0
        if classify_error(error) == ErrorDisposition.OPERATOR_ACTION:
            delay_s = self.operator_action_delay_s

        if self.disposition == ExhaustionDisposition.REQUEUE_AT_HEAD:
            new_job = await queue.enqueue(
                job.type, job.payload, delay_s=delay_s, priority=self.head_priority
            )
        else:
            new_job = await queue.enqueue(job.type, job.payload, delay_s=delay_s)

        record_requeue(job.type.value, self.disposition.value)
        logger.warning(
            "job_requeued",
            job_id=str(job.id),
            new_job_id=str(new_job.id),
            job_type=job.type.value,
            disposition=self.disposition.value,
            reason=str(exhausted),
            error=str(error),
            delay_s=delay_s,
        )
        return new_job
