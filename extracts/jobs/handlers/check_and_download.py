"""CHECK_AND_DOWNLOAD handler: poll a registered order and fetch its extract.

A ready order has its archive downloaded, validated and recorded; a not-ready
order only gets ``last_checked_at`` bumped. Exhausted jobs are requeued at the
head with elevated priority so a registered order keeps its place.
"""

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import structlog

from extracts.errors import OrderNotFound, is_infrastructure_error
from extracts.jobs.handlers.failures import settle_failure, settle_infrastructure_failure
from extracts.jobs.models import Job, StatusCheckJobData
from extracts.jobs.queue import WorkQueue
from extracts.jobs.retry import ExhaustionDisposition, RetryPolicy
from extracts.repositories.operators import Operator
from extracts.repositories.orders import Order, OrderRepository
from extracts.routers.metrics import record_download
from extracts.schemas import OrderStatus
from extracts.services.initializer import WorkerInitializer
from extracts.services.portal.artifacts import validate_zip_archive
from extracts.services.portal.auth import AuthSessionManager
from extracts.services.portal.base import PortalCapability

logger = structlog.get_logger(__name__)


class StatusCheckJobProcessor:
    """Job handler for CHECK_AND_DOWNLOAD. Also used by the status sweep."""

    def __init__(
        self,
        orders: OrderRepository,
        queue: WorkQueue,
        portal: PortalCapability,
        auth: AuthSessionManager,
        initializer: WorkerInitializer,
        retry_policy: Optional[RetryPolicy] = None,
        screenshot: Optional[Callable[[str], Awaitable[Optional[str]]]] = None,
    ):
        self._orders = orders
        self._queue = queue
        self._portal = portal
        self._auth = auth
        self._initializer = initializer
        self._retry_policy = retry_policy or RetryPolicy(ExhaustionDisposition.REQUEUE_AT_HEAD)
        self._screenshot = screenshot

    async def __call__(self, job: Job, ctx: dict[str, Any]) -> dict[str, Any]:
        data = StatusCheckJobData.from_payload(job.payload)
        log = logger.bind(
            job_id=str(job.id),
            order_id=data.order_id,
            external_order_number=data.external_order_number,
            attempt=job.attempt,
        )

        try:
            return await self._check(job, data, log)
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
                exhausted_status=OrderStatus.REGISTERED,
            )
            if outcome is None:
                raise
            return outcome

    async def _check(self, job: Job, data: StatusCheckJobData, log) -> dict[str, Any]:
        operator = await self._initializer.ensure_ready()

        try:
            order = await self._orders.find_by_id(data.order_id)
        except OrderNotFound:
            log.warning("status_check_skipped_missing_order")
            return {"order_id": data.order_id, "skipped": "order_not_found"}

        if order.is_complete:
            log.info("status_check_skipped_complete")
            return {"order_id": order.id, "skipped": "already_complete"}

        try:
            return await self.check_order(order, operator, data.external_order_number)
        except Exception as e:
            if is_infrastructure_error(e):
                raise
            if self._screenshot is not None:
                await self._screenshot(f"status_check_{order.id}")
            outcome = await settle_failure(
                job,
                e,
                order.id,
                self._orders,
                self._queue,
                self._retry_policy,
                exhausted_status=OrderStatus.REGISTERED,
            )
            if outcome is None:
                raise
            return outcome

    async def check_order(
        self,
        order: Order,
        operator: Operator,
        external_order_number: Optional[str] = None,
    ) -> dict[str, Any]:
        """Check one order and download its archive if ready.

        Raises whatever the session, portal or validation raised.
        """
        number = external_order_number or order.external_order_number
        if not number:
            raise ValueError(f"Order {order.id} has no portal order number")

        async with self._auth.session(operator.credentials) as session:
            status = await self._portal.check_status(session, number)
            if not status.ready:
                await self._orders.update(order.id, last_checked_at=datetime.now(timezone.utc))
                return {"order_id": order.id, "ready": False, "portal_status": status.status_text}
            path = await self._portal.download_artifact(session, number, order.id, status)

        entries = validate_zip_archive(path)

        now = datetime.now(timezone.utc)
        await self._orders.update(
            order.id,
            status=OrderStatus.DOWNLOADED,
            is_complete=True,
            completed_at=now,
            last_checked_at=now,
            artifact_path=path,
            last_error=None,
        )
        record_download()
        logger.info("order_downloaded", order_id=order.id, path=path, entries=entries)
        return {"order_id": order.id, "ready": True, "artifact_path": path, "entries": entries}
