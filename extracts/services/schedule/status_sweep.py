"""Periodic re-check of registered orders.

Every tick the sweep asks its ScheduleGate whether it may run; inside the
active interval and with no run in flight it checks each registered, not yet
downloaded order in turn. The gate records completion even if the sweep
fails, so a crashed sweep never blocks the next one.
"""

import asyncio
import random
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from extracts.errors import is_infrastructure_error
from extracts.jobs.handlers.check_and_download import StatusCheckJobProcessor
from extracts.repositories.orders import OrderRepository
from extracts.routers.metrics import record_sweep
from extracts.services.initializer import WorkerInitializer
from extracts.services.schedule.gate import ScheduleGate

logger = structlog.get_logger(__name__)


@dataclass
class SweepResult:
    """Result of a single sweep tick."""

    ran: bool = False
    checked: int = 0
    downloaded: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)
    duration_ms: int = 0


class StatusSweep:
    """Background task driving ``StatusCheckJobProcessor.check_order``."""

    def __init__(
        self,
        gate: ScheduleGate,
        orders: OrderRepository,
        checker: StatusCheckJobProcessor,
        initializer: WorkerInitializer,
        tick_s: float = 1800.0,
        pause_range_s: tuple[float, float] = (1.0, 3.0),
        batch_size: int = 500,
    ):
        self._gate = gate
        self._orders = orders
        self._checker = checker
        self._initializer = initializer
        self._tick_s = tick_s
        self._pause_range_s = pause_range_s
        self._batch_size = batch_size
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()
        self._last_result: Optional[SweepResult] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_result(self) -> Optional[SweepResult]:
        return self._last_result

    async def start(self) -> None:
        if self.is_running:
            logger.warning("status_sweep_already_running")
            return
        logger.info(
            "status_sweep_starting", task_name=self._gate.task_name, tick_s=self._tick_s
        )
        self._stop_event.clear()
        self._task = asyncio.create_task(self._loop(), name="status-sweep")

    async def stop(self, timeout: float = 30.0) -> None:
        if self._task is None:
            return
        self._stop_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("status_sweep_stop_timeout")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("status_sweep_stopped")

    async def run_once(self, now: Optional[datetime] = None) -> SweepResult:
        """One gated tick. ``ran`` is False when the gate said no."""
        started = time.monotonic()
        result = SweepResult()
        async with self._gate.run(now) as allowed:
            if not allowed:
                record_sweep("skipped")
                return result
            result.ran = True
            await self._sweep(result)

        result.duration_ms = int((time.monotonic() - started) * 1000)
        record_sweep("ran" if not result.errors else "partial")
        logger.info(
            "status_sweep_finished",
            checked=result.checked,
            downloaded=result.downloaded,
            failed=result.failed,
            duration_ms=result.duration_ms,
        )
        return result

    async def _sweep(self, result: SweepResult) -> None:
        operator = await self._initializer.ensure_ready()
        orders = await self._orders.list_registered(limit=self._batch_size)
        logger.info("status_sweep_started", orders=len(orders))

        for index, order in enumerate(orders):
            if self._stop_event.is_set():
                break
            if index:
                await self._pause()
            result.checked += 1
            try:
                outcome = await self._checker.check_order(order, operator)
            except Exception as e:
                if is_infrastructure_error(e):
                    raise
                result.failed += 1
                result.errors.append(f"{order.id}: {e}")
                logger.warning(
                    "status_sweep_order_failed",
                    order_id=order.id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue
            if outcome.get("ready"):
                result.downloaded += 1

    async def _pause(self) -> None:
        low, high = self._pause_range_s
        if high > 0:
            await asyncio.sleep(random.uniform(low, high))

    async def _loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self._last_result = await self.run_once()
            except Exception as e:
                record_sweep("failed")
                logger.exception("status_sweep_failed", error=str(e))

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._tick_s)
                break
            except asyncio.TimeoutError:
                pass
