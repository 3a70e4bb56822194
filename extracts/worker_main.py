"""Worker process: composition root for the order pipeline.

Builds every component in dependency order, starts the job consumers and the
status sweep, and shuts them down in reverse on SIGINT/SIGTERM.
"""

import asyncio
import signal
from dataclasses import dataclass
from functools import partial
from typing import Optional

import asyncpg
import structlog
from prometheus_client import start_http_server

from extracts import __version__
from extracts.config import Settings, get_settings
from extracts.core.lifespan import create_db_pool
from extracts.core.logging import configure_logging
from extracts.core.sentry import init_sentry
from extracts.errors import WorkerInitializationError
from extracts.jobs.handlers import OrderJobProcessor, StatusCheckJobProcessor
from extracts.jobs.queue import WorkQueue, create_work_queue
from extracts.jobs.registry import JobRegistry
from extracts.jobs.retry import ExhaustionDisposition, RetryPolicy
from extracts.jobs.types import JobType
from extracts.jobs.worker import WorkerRunner
from extracts.repositories.anomaly_questions import AnomalyQuestionRepository
from extracts.repositories.operators import OperatorRepository
from extracts.repositories.orders import OrderRepository
from extracts.repositories.worker_schedules import WorkerScheduleRepository
from extracts.services.codes.broker import CodeBroker, create_code_broker
from extracts.services.initializer import WorkerInitializer
from extracts.services.portal.auth import AuthSessionManager
from extracts.services.portal.browser import BrowserService
from extracts.services.portal.client import RosreestrPortalClient
from extracts.services.portal.login_page import PlaywrightLoginPage
from extracts.services.schedule.gate import ScheduleGate
from extracts.services.schedule.status_sweep import StatusSweep

logger = structlog.get_logger(__name__)


@dataclass
class WorkerComponents:
    pool: asyncpg.Pool
    queue: WorkQueue
    broker: CodeBroker
    browser: BrowserService
    portal: RosreestrPortalClient
    initializer: WorkerInitializer
    runner: WorkerRunner
    sweep: Optional[StatusSweep]


def build_components(settings: Settings, pool: asyncpg.Pool) -> WorkerComponents:
    """Wire the worker. Nothing is started here."""
    queue = create_work_queue(settings, pool)
    broker = create_code_broker(settings)

    orders = OrderRepository(pool)
    operators = OperatorRepository(pool)
    answers = AnomalyQuestionRepository(pool)
    schedules = WorkerScheduleRepository(pool)

    browser = BrowserService(
        headless=settings.browser_headless,
        screenshots_dir=settings.screenshots_dir,
        navigation_timeout_s=settings.navigation_timeout_s,
        element_timeout_s=settings.element_timeout_s,
    )
    initializer = WorkerInitializer(operators, browser, settings.operator_username)

    auth = AuthSessionManager(
        browser=browser,
        login_page_factory=partial(
            PlaywrightLoginPage,
            portal_base_url=settings.portal_base_url,
            element_timeout_s=settings.element_timeout_s,
            navigation_timeout_s=settings.navigation_timeout_s,
        ),
        broker=broker,
        answers=answers,
        code_timeout_s=settings.code_timeout_s,
        redirect_timeout_s=settings.login_redirect_timeout_s,
        captcha_dir=settings.captcha_dir,
        on_failure=browser.screenshot,
    )
    portal = RosreestrPortalClient(
        base_url=settings.portal_base_url,
        timeout_s=settings.portal_timeout_s,
        downloads_dir=settings.downloads_dir,
        pause_range_s=settings.portal_pause_s,
    )

    place_order = OrderJobProcessor(
        orders,
        queue,
        portal,
        auth,
        initializer,
        retry_policy=RetryPolicy(
            ExhaustionDisposition.REQUEUE_AT_TAIL,
            operator_action_delay_s=settings.operator_action_delay_s,
        ),
        status_check_delay_s=settings.status_check_delay_s,
        screenshot=browser.screenshot,
    )
    check_and_download = StatusCheckJobProcessor(
        orders,
        queue,
        portal,
        auth,
        initializer,
        retry_policy=RetryPolicy(
            ExhaustionDisposition.REQUEUE_AT_HEAD,
            head_priority=settings.requeue_head_priority,
            operator_action_delay_s=settings.operator_action_delay_s,
        ),
        screenshot=browser.screenshot,
    )

    runner = WorkerRunner(
        queue,
        JobRegistry(),
        worker_id=settings.worker_id,
        poll_interval_s=settings.job_poll_interval_s,
        stale_timeout_minutes=settings.job_stale_timeout_minutes,
    )
    runner.consume(JobType.PLACE_ORDER, place_order, settings.place_order_concurrency)
    runner.consume(
        JobType.CHECK_AND_DOWNLOAD, check_and_download, settings.status_check_concurrency
    )

    sweep = None
    if settings.status_sweep_enabled:
        sweep = StatusSweep(
            ScheduleGate(schedules, settings.status_sweep_task_name, settings.schedule_timezone),
            orders,
            check_and_download,
            initializer,
            tick_s=settings.status_sweep_tick_s,
            pause_range_s=settings.status_sweep_pause_s,
        )

    return WorkerComponents(
        pool=pool,
        queue=queue,
        broker=broker,
        browser=browser,
        portal=portal,
        initializer=initializer,
        runner=runner,
        sweep=sweep,
    )


async def _warm_up(initializer: WorkerInitializer) -> None:
    """Initialize eagerly; a failure here is retried by the first job."""
    try:
        await initializer.ensure_ready()
    except WorkerInitializationError as e:
        logger.error("worker_initialization_failed", error=str(e))


async def shutdown(components: WorkerComponents) -> None:
    """Stop in reverse dependency order."""
    if components.sweep is not None:
        await components.sweep.stop()
    # Releases jobs blocked on a code so the runner can drain
    released = await components.broker.cancel_all()
    if released:
        logger.info("code_waits_released", count=released)
    await components.runner.stop()
    await components.portal.aclose()
    await components.browser.close()
    await components.broker.close()
    await components.pool.close()


async def run_worker(settings: Settings) -> None:
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, partial(_request_stop, stop_event, sig))

    pool = await create_db_pool(settings)
    components = build_components(settings, pool)

    logger.info(
        "worker_process_starting",
        version=__version__,
        worker_id=components.runner.worker_id,
        operator=settings.operator_username,
    )
    warm_up = asyncio.create_task(_warm_up(components.initializer), name="worker-warm-up")
    await components.runner.start()
    if components.sweep is not None:
        await components.sweep.start()

    try:
        await stop_event.wait()
    finally:
        logger.info("worker_process_stopping")
        warm_up.cancel()
        await asyncio.gather(warm_up, return_exceptions=True)
        await shutdown(components)
        logger.info("worker_process_stopped")


def _request_stop(stop_event: asyncio.Event, sig: signal.Signals) -> None:
    logger.info("worker_stop_requested", signal=sig.name)
    stop_event.set()


def main() -> None:
    """Console entry point (extracts-worker)."""
    settings = get_settings()
    configure_logging(settings.log_level)
    init_sentry(settings, component="worker")
    if settings.worker_metrics_port:
        start_http_server(settings.worker_metrics_port)
        logger.info("worker_metrics_listening", port=settings.worker_metrics_port)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
