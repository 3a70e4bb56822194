"""PLACE_ORDER handler: register an extract order on the portal.

1. Ensure the worker is initialized (operator resolved, browser up)
2. Open an authenticated session (may wait for SMS/CAPTCHA codes)
3. Place the order through the portal API
4. Store the result on the order
5. Enqueue a delayed CHECK_AND_DOWNLOAD job for a registered order

Exhausted jobs are requeued at the tail so one failing order does not hold
up the rest.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from extracts.errors import OrderNotFound, RepositoryUnavailable, is_infrastructure_error
from extracts.jobs.handlers.failures import settle_failure, settle_infrastructure_failure
from extracts.jobs.models import Job, OrderJobData, StatusCheckJobData
from extracts.jobs.queue import WorkQueue
from extracts.jobs.retry import ExhaustionDisposition, RetryPolicy
from extracts.jobs.types import JobType
from extracts.repositories.orders import OrderRepository
from extracts.schemas import OrderStatus
from extracts.services.initializer import WorkerInitializer
from extracts.services.portal.auth import AuthSessionManager
from extracts.services.portal.base import PortalCapability

logger = structlog.get_logger(__name__)

Screenshot = Callable[[str], Awaitable[Optional[str]]]


class OrderJobProcessor:
    """Job handler for PLACE_ORDER. Collaborators are injected."""

    def __init__(
        self,
        orders: OrderRepository,
        queue: WorkQueue,
        portal: PortalCapability,
        auth: AuthSessionManager,
        initializer: WorkerInitializer,
        retry_policy: Optional[RetryPolicy] = None,
        status_check_delay_s: float = 60.0,
        screenshot: Optional[Screenshot] = None,
    ):
        self._orders = orders
        self._queue = queue
        self._portal = portal
        self._auth = auth
        self._initializer = initializer
        self._retry_policy = retry_policy or RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL)
        self._status_check_delay_s = status_check_delay_s
        self._screenshot = screenshot

    async def __call__(self, job: Job, ctx: dict[str, Any]) -> dict[str, Any]:
        data = OrderJobData.from_payload(job.payload)
        log = logger.bind(
            job_id=str(job.id),
            order_id=data.order_id,
            cadastral_number=data.cadastral_number,
            attempt=job.attempt,
        )

        try:
            return await self._place(job, data, log)
        except Exception as e:
            if not is_infrastructure_error(e):
                raise
            outcome = await settle_infrastructure_failure(
                job,
                e,
                data.order_id,
                self._orders,
                self._queue,
                self._retry_policy,
                exhausted_status=OrderStatus.QUEUED,
            )
            if outcome is None:
                raise
            return outcome

    async def _place(self, job: Job, data: OrderJobData, log) -> dict[str, Any]:
        operator = await self._initializer.ensure_ready()

        try:
            order = await self._orders.find_by_id(data.order_id)
        except OrderNotFound:
            log.warning("place_order_skipped_missing_order")
            return {"order_id": data.order_id, "skipped": "order_not_found"}

        if order.is_complete or order.external_order_number:
            log.info("place_order_skipped_already_placed", status=order.status)
            return {"order_id": order.id, "skipped": "already_placed"}

        log.info("place_order_started")
        await self._orders.update(
            order.id,
            status=OrderStatus.PROCESSING,
            operator_id=operator.id,
            registration_started_at=datetime.now(timezone.utc),
        )

        try:
            async with self._auth.session(operator.credentials) as session:
                result = await self._portal.place_order(session, data.cadastral_number)
        except Exception as e:
            if is_infrastructure_error(e):
                raise
            if self._screenshot is not None:
                await self._screenshot(f"place_order_{order.id}")
            outcome = await settle_failure(
                job,
                e,
                order.id,
                self._orders,
                self._queue,
                self._retry_policy,
                exhausted_status=OrderStatus.QUEUED,
            )
            if outcome is None:
                raise
            return outcome

        now = datetime.now(timezone.utc)
        fields: dict[str, Any] = {"status": result.status, "last_error": None}
        if result.external_order_number:
            fields.update(external_order_number=result.external_order_number, registered_at=now)
        if result.is_complete:
            fields.update(is_complete=True, completed_at=now)
        await self._orders.update(order.id, **fields)

        response: dict[str, Any] = {
            "order_id": order.id,
            "status": result.status,
            "external_order_number": result.external_order_number,
        }
        if result.external_order_number and not result.is_complete:
            check = StatusCheckJobData(
                order_id=order.id, external_order_number=result.external_order_number
            )
            try:
                check_job = await self._queue.enqueue(
                    JobType.CHECK_AND_DOWNLOAD,
                    check.to_payload(),
                    delay_s=self._status_check_delay_s,
                )
            except RepositoryUnavailable as e:
                # The order is registered; the status sweep will pick it up.
                log.warning("status_check_enqueue_failed", error=str(e))
            else:
                response["status_check_job_id"] = str(check_job.id)

        log.info(
            "place_order_finished",
            status=result.status,
            external_order_number=result.external_order_number,
        )
        return response
