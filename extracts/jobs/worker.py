"""Job worker - claims and executes jobs from the queue."""

import asyncio
import os
import socket
import time
import traceback
from typing import Any, Optional

import structlog

from extracts import __version__
from extracts.errors import is_infrastructure_error
from extracts.jobs.models import Job
from extracts.jobs.queue import WorkQueue
from extracts.jobs.registry import Consumer, JobHandler, JobRegistry
from extracts.jobs.types import JobType
from extracts.routers.metrics import record_job

logger = structlog.get_logger(__name__)


def generate_worker_id() -> str:
    """Generate a unique worker ID: hostname:pid."""
    return f"{socket.gethostname()}:{os.getpid()}"


class WorkerRunner:
    """Runs one consume loop per registered job type and concurrency slot.

    Each loop claims a job of its own type, runs the handler and then either
    completes the job or hands the error back to the queue for redelivery.
    """

    def __init__(
        self,
        queue: WorkQueue,
        registry: JobRegistry,
        worker_id: Optional[str] = None,
        poll_interval_s: float = 2.0,
        stale_timeout_minutes: int = 30,
        reap_interval_s: float = 60.0,
        context: Optional[dict[str, Any]] = None,
    ):
        self._queue = queue
        self._registry = registry
        self._worker_id = worker_id or generate_worker_id()
        self._poll_interval_s = poll_interval_s
        self._stale_timeout_minutes = stale_timeout_minutes
        self._reap_interval_s = reap_interval_s
        self._context = context or {}
        self._stop_event = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def worker_id(self) -> str:
        return self._worker_id

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not self._stop_event.is_set()

    def consume(self, job_type: JobType, handler: JobHandler, concurrency: int = 1) -> None:
        """Register a handler; loops start with start()."""
        if self._tasks:
            raise RuntimeError("Cannot add consumers to a running worker")
        self._registry.register(job_type, handler, concurrency)

    async def start(self) -> None:
        """Spawn the consume loops and the stale-lease reaper."""
        if self._tasks:
            logger.warning("worker_already_running", worker_id=self._worker_id)
            return

        self._stop_event.clear()
        consumers = self._registry.consumers()
        for consumer in consumers:
            for slot in range(consumer.concurrency):
                task = asyncio.create_task(
                    self._consume_loop(consumer, slot),
                    name=f"consume:{consumer.job_type.value}:{slot}",
                )
                self._tasks.append(task)
        self._tasks.append(asyncio.create_task(self._reap_loop(), name="reaper"))

        logger.info(
            "worker_started",
            worker_id=self._worker_id,
            version=__version__,
            consumers={c.job_type.value: c.concurrency for c in consumers},
        )

    async def stop(self, timeout: float = 30.0) -> None:
        """Stop the loops. Jobs in flight get ``timeout`` seconds to finish."""
        self._stop_event.set()
        if not self._tasks:
            return

        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("worker_stop_cancelled_jobs", count=len(pending))
        self._tasks = []
        logger.info("worker_stopped", worker_id=self._worker_id)

    async def run_once(self, consumer: Consumer) -> Optional[Job]:
        """Claim and execute at most one job of the consumer's type."""
        job = await self._queue.claim(self._worker_id, [consumer.job_type])
        if job:
            await self._execute_job(job, consumer)
        return job

    async def _consume_loop(self, consumer: Consumer, slot: int) -> None:
        log = logger.bind(job_type=consumer.job_type.value, slot=slot)
        while not self._stop_event.is_set():
            try:
                job = await self.run_once(consumer)
                if job is None:
                    await self._sleep(self._poll_interval_s)
            except asyncio.CancelledError:
                log.info("consume_loop_cancelled")
                raise
            except Exception as e:
                log.error(
                    "worker_loop_error", error=str(e), traceback=traceback.format_exc()
                )
                await self._sleep(self._poll_interval_s)

    async def _reap_loop(self) -> None:
        while not self._stop_event.is_set():
            await self._sleep(self._reap_interval_s)
            if self._stop_event.is_set():
                break
            try:
                await self._queue.reap_stale(self._stale_timeout_minutes)
            except Exception as e:
                logger.warning("reap_stale_failed", error=str(e))

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _execute_job(self, job: Job, consumer: Consumer) -> None:
        """Execute a single job."""
        log = logger.bind(job_id=str(job.id), job_type=job.type.value, attempt=job.attempt)
        log.info("job_executing")
        started = time.monotonic()

        context = {"worker_id": self._worker_id, "queue": self._queue, **self._context}
        try:
            result = await consumer.handler(job, context)
        except asyncio.CancelledError:
            await self._queue.fail(job.id, "worker shutdown", should_retry=True)
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            if is_infrastructure_error(e):
                log.error("job_infrastructure_error", error=error, error_type=type(e).__name__)
            else:
                log.error(
                    "job_handler_failed",
                    error=error,
                    error_type=type(e).__name__,
                    traceback=traceback.format_exc(),
                )
            await self._queue.fail(job.id, error, should_retry=True)
            record_job(job.type.value, "failed", time.monotonic() - started)
            return

        await self._queue.complete(job.id, result)
        record_job(job.type.value, "succeeded", time.monotonic() - started)
        log.info("job_succeeded")
