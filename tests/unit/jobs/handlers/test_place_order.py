"""Tests for the PLACE_ORDER job processor."""

from datetime import datetime, timedelta, timezone
from uuid import UUID

import pytest

from extracts.errors import AuthenticationFailed, RepositoryUnavailable, TransientPortalError
from extracts.jobs.handlers import OrderJobProcessor
from extracts.jobs.models import OrderJobData
from extracts.jobs.registry import JobRegistry
from extracts.jobs.retry import ExhaustionDisposition, RetryPolicy
from extracts.jobs.types import JobStatus, JobType
from extracts.jobs.worker import WorkerRunner
from extracts.schemas import OrderStatus
from extracts.services.codes.broker import CodeKind
from extracts.services.initializer import WorkerInitializer
from extracts.services.portal.auth import AuthSessionManager
from extracts.services.portal.base import PlaceOrderResult

CAD_NUM = "77:01:0001001:1234"


@pytest.fixture
def build(orders, queue, portal, browser, broker, answers, operator, make_operators):
    def _build(page) -> OrderJobProcessor:
        auth = AuthSessionManager(
            browser=browser,
            login_page_factory=lambda _page: page,
            broker=broker,
            answers=answers,
            code_timeout_s=2.0,
        )
        initializer = WorkerInitializer(make_operators(operator), browser, operator.username)
        return OrderJobProcessor(
            orders,
            queue,
            portal,
            auth,
            initializer,
            retry_policy=RetryPolicy(ExhaustionDisposition.REQUEUE_AT_TAIL),
            status_check_delay_s=60.0,
            screenshot=browser.screenshot,
        )

    return _build


async def enqueue_order(queue, order):
    data = OrderJobData(
        order_id=order.id, cadastral_number=order.cadastral_number, owner_id=order.owner_id
    )
    return await queue.enqueue(JobType.PLACE_ORDER, data.to_payload())


class TestPlaceOrderSuccess:
    @pytest.mark.asyncio
    async def test_sms_login_then_registered_order(
        self, build, make_login_page, orders, queue, portal, broker, operator
    ):
        """SMS published right after submit reaches the waiting login flow."""
        order = orders.add(CAD_NUM, owner_id=7)
        page = make_login_page(
            sms=True,
            on_submit=lambda: broker.publish(operator.username, CodeKind.SMS, "482913"),
        )
        portal.place_outcomes = [
            PlaceOrderResult(status=OrderStatus.REGISTERED, external_order_number="80-12345678")
        ]
        processor = build(page)
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        before = datetime.now(timezone.utc)
        result = await processor(job, {})

        assert ("enter_sms_code", "482913") in page.calls
        assert portal.placed == [CAD_NUM]
        assert order.status == OrderStatus.REGISTERED
        assert order.external_order_number == "80-12345678"
        assert order.operator_id == operator.id
        assert order.registered_at is not None
        assert order.last_error is None
        assert broker.pending_count() == 0

        (check_job,) = queue.list_jobs(job_type=JobType.CHECK_AND_DOWNLOAD)
        assert result["status_check_job_id"] == str(check_job.id)
        assert check_job.payload == {"order_id": order.id, "external_order_number": "80-12345678"}
        assert check_job.run_after >= before + timedelta(seconds=59)

    @pytest.mark.asyncio
    async def test_sets_processing_before_portal_call(
        self, build, make_login_page, orders, queue, portal, operator
    ):
        order = orders.add(CAD_NUM)
        portal.place_outcomes = [
            PlaceOrderResult(status=OrderStatus.REGISTERED, external_order_number="80-1")
        ]
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        await processor(job, {})

        first_update = orders.updates[0][1]
        assert first_update["status"] == OrderStatus.PROCESSING
        assert first_update["operator_id"] == operator.id
        assert first_update["registration_started_at"] is not None

    @pytest.mark.asyncio
    async def test_not_found_number_completes_without_status_check(
        self, build, make_login_page, orders, queue, portal
    ):
        order = orders.add(CAD_NUM)
        portal.place_outcomes = [
            PlaceOrderResult(status=OrderStatus.CAD_NUM_NOT_FOUND, is_complete=True)
        ]
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        result = await processor(job, {})

        assert order.is_complete is True
        assert order.completed_at is not None
        assert order.status == OrderStatus.CAD_NUM_NOT_FOUND
        assert "status_check_job_id" not in result
        assert queue.list_jobs(job_type=JobType.CHECK_AND_DOWNLOAD) == []

    @pytest.mark.asyncio
    async def test_insufficient_balance_is_stored(
        self, build, make_login_page, orders, queue, portal
    ):
        order = orders.add(CAD_NUM)
        portal.place_outcomes = [PlaceOrderResult(status=OrderStatus.INSUFFICIENT_BALANCE)]
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        await processor(job, {})

        assert order.status == OrderStatus.INSUFFICIENT_BALANCE
        assert order.is_complete is False
        assert queue.list_jobs(job_type=JobType.CHECK_AND_DOWNLOAD) == []


class TestPlaceOrderSkips:
    @pytest.mark.asyncio
    async def test_missing_order_is_skipped(self, build, make_login_page, queue, portal):
        processor = build(make_login_page(authenticated=True))
        job = await queue.enqueue(
            JobType.PLACE_ORDER,
            OrderJobData(order_id=404, cadastral_number=CAD_NUM, owner_id=1).to_payload(),
        )
        await queue.claim("w1", [JobType.PLACE_ORDER])

        result = await processor(job, {})

        assert result == {"order_id": 404, "skipped": "order_not_found"}
        assert portal.placed == []

    @pytest.mark.asyncio
    async def test_already_placed_order_is_not_placed_twice(
        self, build, make_login_page, orders, queue, portal
    ):
        order = orders.add(CAD_NUM, status=OrderStatus.REGISTERED, external_order_number="80-1")
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        result = await processor(job, {})

        assert result["skipped"] == "already_placed"
        assert portal.placed == []


class TestPlaceOrderFailures:
    @pytest.mark.asyncio
    async def test_failure_with_retries_left_reraises(
        self, build, make_login_page, orders, queue, portal, browser
    ):
        order = orders.add(CAD_NUM)
        portal.place_outcomes = [TransientPortalError("Portal returned 503", status_code=503)]
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        with pytest.raises(TransientPortalError):
            await processor(job, {})

        assert order.status == OrderStatus.error("Portal returned 503")
        assert order.last_error == "Portal returned 503"
        assert browser.screenshots == [f"place_order_{order.id}"]

    @pytest.mark.asyncio
    async def test_three_failures_requeue_at_tail(
        self, build, make_login_page, orders, queue, portal
    ):
        failing = orders.add(CAD_NUM)
        other = orders.add("77:01:0001001:9999")
        portal.place_outcomes = [TransientPortalError("Portal returned 503")] * 3 + [
            PlaceOrderResult(status=OrderStatus.REGISTERED, external_order_number="80-2"),
            PlaceOrderResult(status=OrderStatus.REGISTERED, external_order_number="80-3"),
        ]
        processor = build(make_login_page(authenticated=True))
        first_job = await enqueue_order(queue, failing)
        other_job = await enqueue_order(queue, other)

        runner = WorkerRunner(queue, JobRegistry(), worker_id="w1")
        runner.consume(JobType.PLACE_ORDER, processor)
        (consumer,) = runner._registry.consumers()

        # redelivered jobs keep their place, so the failing job is claimed three times
        for _ in range(3):
            assert (await runner.run_once(consumer)).id == first_job.id

        assert first_job.status == JobStatus.SUCCEEDED
        assert first_job.attempt == 3
        assert first_job.result["requeued"] is True
        assert failing.status == OrderStatus.QUEUED
        assert failing.last_error == "Portal returned 503"

        requeued = await queue.get(UUID(first_job.result["new_job_id"]))
        assert requeued.attempt == 0
        assert requeued.payload == first_job.payload

        # the requeued job now waits behind the order added earlier
        assert (await runner.run_once(consumer)).id == other_job.id
        assert other.external_order_number == "80-2"
        assert (await runner.run_once(consumer)).id == requeued.id
        assert failing.status == OrderStatus.REGISTERED
        assert failing.external_order_number == "80-3"

    @pytest.mark.asyncio
    async def test_outage_on_last_attempt_requeues_at_tail(
        self, build, make_login_page, orders, queue, portal
    ):
        order = orders.add(CAD_NUM)
        portal.place_outcomes = [TransientPortalError("Portal returned 503")] * 2 + [
            RepositoryUnavailable("db down")
        ]
        processor = build(make_login_page(authenticated=True))
        first_job = await enqueue_order(queue, order)

        runner = WorkerRunner(queue, JobRegistry(), worker_id="w1")
        runner.consume(JobType.PLACE_ORDER, processor)
        (consumer,) = runner._registry.consumers()

        for _ in range(3):
            assert (await runner.run_once(consumer)).id == first_job.id

        assert first_job.status == JobStatus.SUCCEEDED
        assert first_job.result["requeued"] is True
        assert order.status == OrderStatus.QUEUED
        assert order.last_error == "db down"

        requeued = await queue.get(UUID(first_job.result["new_job_id"]))
        assert requeued.status == JobStatus.PENDING
        assert requeued.attempt == 0
        assert requeued.payload == first_job.payload

    @pytest.mark.asyncio
    async def test_last_attempt_requeued_when_status_update_fails(
        self, build, make_login_page, orders, queue
    ):
        order = orders.add(CAD_NUM)
        processor = build(make_login_page(authenticated=True))
        data = OrderJobData(order_id=order.id, cadastral_number=CAD_NUM, owner_id=order.owner_id)
        await queue.enqueue(JobType.PLACE_ORDER, data.to_payload(), max_attempts=1)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        async def unavailable(order_id, **fields):
            raise RepositoryUnavailable("db down")

        orders.find_by_id = unavailable
        orders.update = unavailable

        result = await processor(job, {})

        assert result["requeued"] is True
        assert result["error"] == "db down"
        requeued = await queue.get(UUID(result["new_job_id"]))
        assert requeued.status == JobStatus.PENDING
        assert orders.updates == []

    @pytest.mark.asyncio
    async def test_last_attempt_error_raised_when_requeue_fails(
        self, build, make_login_page, orders, queue
    ):
        order = orders.add(CAD_NUM)
        processor = build(make_login_page(authenticated=True))
        data = OrderJobData(order_id=order.id, cadastral_number=CAD_NUM, owner_id=order.owner_id)
        await queue.enqueue(JobType.PLACE_ORDER, data.to_payload(), max_attempts=1)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        async def unavailable(*args, **kwargs):
            raise RepositoryUnavailable("db down")

        orders.find_by_id = unavailable
        queue.enqueue = unavailable

        with pytest.raises(RepositoryUnavailable, match="db down"):
            await processor(job, {})
        assert orders.updates == []

    @pytest.mark.asyncio
    async def test_unanswered_question_parks_without_backoff_retries(
        self, build, make_login_page, orders, queue, portal, answers, operator
    ):
        order = orders.add(CAD_NUM)
        processor = build(make_login_page(question="Name of your first pet"))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        result = await processor(job, {})

        assert job.attempt == 1
        assert result["requeued"] is True
        assert order.status == OrderStatus.QUEUED
        assert answers.unanswered == [("Name of your first pet", operator.username)]
        (parked,) = queue.list_jobs(job_type=JobType.PLACE_ORDER, status=JobStatus.PENDING)
        assert parked.run_after > datetime.now(timezone.utc) + timedelta(minutes=10)
        assert portal.placed == []

    @pytest.mark.asyncio
    async def test_authentication_failure_invalidates_session(
        self, build, make_login_page, orders, queue, portal
    ):
        order = orders.add(CAD_NUM)
        portal.place_outcomes = [AuthenticationFailed("Portal rejected the session (401)")]
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        with pytest.raises(AuthenticationFailed):
            await processor(job, {})

        assert processor._auth.current_session is None

    @pytest.mark.asyncio
    async def test_repository_outage_with_retries_left_bubbles_up(
        self, build, make_login_page, orders, queue
    ):
        order = orders.add(CAD_NUM)
        processor = build(make_login_page(authenticated=True))
        await enqueue_order(queue, order)
        job = await queue.claim("w1", [JobType.PLACE_ORDER])

        async def unavailable(order_id):
            raise RepositoryUnavailable("db down")

        orders.find_by_id = unavailable
        with pytest.raises(RepositoryUnavailable):
            await processor(job, {})
        assert orders.updates == []
