"""Failure bookkeeping shared by the order job processors."""

from typing import Any, Optional

import structlog

from extracts.jobs.models import Job
from extracts.jobs.queue import WorkQueue
from extracts.jobs.retry import RetryPolicy
from extracts.repositories.orders import OrderRepository
from extracts.schemas import OrderStatus

logger = structlog.get_logger(__name__)


def error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


async def settle_failure(
    job: Job,
    error: BaseException,
    order_id: int,
    orders: OrderRepository,
    queue: WorkQueue,
    policy: RetryPolicy,
    exhausted_status: str,
) -> Optional[dict[str, Any]]:
    """Record a failed attempt on the order and apply the retry policy.

    Returns None when the caller should re-raise so the queue redelivers the
    job. Otherwise the job was requeued as new work and the returned dict is
    the finished job's result.

    The order status always reflects this attempt: an error status while
    redeliveries remain, ``exhausted_status`` once the job is requeued.
    """
    message = error_message(error)
    log = logger.bind(job_id=str(job.id), order_id=order_id, attempt=job.attempt)

    if policy.should_redeliver(job, error):
        await orders.update(order_id, status=OrderStatus.error(message), last_error=message)
        log.warning("order_attempt_failed", error=message, retries_left=True)
        return None

    await orders.update(order_id, status=exhausted_status, last_error=message)
    new_job = await policy.requeue(queue, job, error)
    log.warning("order_attempts_exhausted", error=message, new_job_id=str(new_job.id))
    return {
        "order_id": order_id,
        "requeued": True,
        "new_job_id": str(new_job.id),
        "error": message,
    }


async def settle_infrastructure_failure(
    job: Job,
    error: BaseException,
    order_id: int,
    orders: OrderRepository,
    queue: WorkQueue,
    policy: RetryPolicy,
    exhausted_status: str,
) -> Optional[dict[str, Any]]:
    """Apply the exhaustion disposition to a database or initialization failure.

    Returns None while the job has attempts left, or when the requeue itself
    fails; the caller then re-raises the original error. The order status is
    updated best-effort since the database may be the thing that is down.
    """
    if job.has_retries_left:
        return None

    message = error_message(error)
    log = logger.bind(job_id=str(job.id), order_id=order_id, attempt=job.attempt)

    try:
        new_job = await policy.requeue(queue, job, error)
    except Exception as requeue_error:
        log.error(
            "order_requeue_failed",
            error=message,
            requeue_error=error_message(requeue_error),
        )
        return None

    try:
        await orders.update(order_id, status=exhausted_status, last_error=message)
    except Exception as update_error:
        log.warning("order_status_update_failed", error=error_message(update_error))

    log.warning(
        "order_attempts_exhausted",
        error=message,
        error_type=type(error).__name__,
        new_job_id=str(new_job.id),
    )
    return {
        "order_id": order_id,
        "requeued": True,
        "new_job_id": str(new_job.id),
        "error": message,
    }
