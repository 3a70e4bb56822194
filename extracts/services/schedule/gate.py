"""Time-windowed, single-flight gate for a named recurring task.

A run may start only when all of these hold:

1. the schedule row is active
2. the local wall-clock time is inside the active interval, which may wrap
   past midnight (20:00-07:00)
3. no run is in flight: ``last_run_completed_at >= last_run_at`` or the task
   never ran

The persisted timestamps are authoritative across restarts. An in-process
flag is checked first so the same process does not even ask the database
while it is mid-run.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Optional, Protocol
from zoneinfo import ZoneInfo

import structlog

from extracts.repositories.worker_schedules import WorkerSchedule

logger = structlog.get_logger(__name__)


class ScheduleStore(Protocol):
    async def get(self, task_name: str) -> Optional[WorkerSchedule]: ...

    async def try_mark_run_start(self, task_name: str) -> Optional[datetime]: ...

    async def mark_run_complete(self, task_name: str) -> Optional[datetime]: ...


def parse_hhmm(value: str) -> int:
    """'HH:MM' to minutes after midnight."""
    hours, _, minutes = value.strip().partition(":")
    total = int(hours) * 60 + int(minutes or 0)
    if not 0 <= total < 24 * 60:
        raise ValueError(f"Invalid time of day: {value!r}")
    return total


def is_within_interval(now_minutes: int, start: str, end: str) -> bool:
    """Whether a minute-of-day falls in [start, end], wrapping if start > end."""
    start_m = parse_hhmm(start)
    end_m = parse_hhmm(end)
    if start_m > end_m:
        return now_minutes >= start_m or now_minutes <= end_m
    return start_m <= now_minutes <= end_m


class InMemoryScheduleStore:
    """Process-local schedule rows."""

    def __init__(self, schedules: Optional[list[WorkerSchedule]] = None):
        self._schedules = {s.task_name: s for s in schedules or []}

    def add(self, schedule: WorkerSchedule) -> None:
        self._schedules[schedule.task_name] = schedule

    async def get(self, task_name: str) -> Optional[WorkerSchedule]:
        return self._schedules.get(task_name)

    async def try_mark_run_start(self, task_name: str) -> Optional[datetime]:
        schedule = self._schedules.get(task_name)
        if schedule is None or schedule.run_in_flight:
            return None
        now = datetime.now(timezone.utc)
        completed = schedule.last_run_completed_at
        # A start must sort after the last completion or it reads as finished
        if completed is not None and now <= completed:
            now = completed + timedelta(microseconds=1)
        schedule.last_run_at = now
        return now

    async def mark_run_complete(self, task_name: str) -> Optional[datetime]:
        schedule = self._schedules.get(task_name)
        if schedule is None:
            return None
        now = datetime.now(timezone.utc)
        if schedule.last_run_at is not None and now < schedule.last_run_at:
            now = schedule.last_run_at
        schedule.last_run_completed_at = now
        return now


class ScheduleGate:
    """Fences one recurring task. Only the owning task calls the mark methods."""

    def __init__(self, store: ScheduleStore, task_name: str, timezone_name: str = "UTC"):
        self._store = store
        self._task_name = task_name
        self._tz = ZoneInfo(timezone_name)
        self._running = False

    @property
    def task_name(self) -> str:
        return self._task_name

    @property
    def is_running(self) -> bool:
        return self._running

    def _local_minutes(self, now: Optional[datetime]) -> int:
        if now is None:
            now = datetime.now(timezone.utc)
        if now.tzinfo is not None:
            now = now.astimezone(self._tz)
        return now.hour * 60 + now.minute

    async def should_run(self, now: Optional[datetime] = None) -> bool:
        """Evaluate the three checks. Naive ``now`` is taken as local time."""
        log = logger.bind(task_name=self._task_name)

        if self._running:
            log.debug("schedule_skip_running_locally")
            return False

        schedule = await self._store.get(self._task_name)
        if schedule is None:
            log.warning("schedule_not_found")
            return False

        if not schedule.is_active:
            log.debug("schedule_skip_inactive")
            return False

        if not is_within_interval(
            self._local_minutes(now),
            schedule.active_interval_start,
            schedule.active_interval_end,
        ):
            log.debug(
                "schedule_skip_outside_interval",
                start=schedule.active_interval_start,
                end=schedule.active_interval_end,
            )
            return False

        if schedule.run_in_flight:
            log.info("schedule_skip_in_flight", last_run_at=schedule.last_run_at)
            return False

        return True

    async def mark_run_start(self) -> bool:
        """Record the start. False if another process got there first."""
        self._running = True
        try:
            started_at = await self._store.try_mark_run_start(self._task_name)
        except Exception:
            self._running = False
            raise
        if started_at is None:
            self._running = False
            return False
        logger.info("schedule_run_started", task_name=self._task_name, started_at=started_at)
        return True

    async def mark_run_complete(self) -> None:
        try:
            completed_at = await self._store.mark_run_complete(self._task_name)
            logger.info(
                "schedule_run_completed", task_name=self._task_name, completed_at=completed_at
            )
        finally:
            self._running = False

    @asynccontextmanager
    async def run(self, now: Optional[datetime] = None) -> AsyncIterator[bool]:
        """
        Gate a run. Yields True if the body should do its work.

        Usage:
            async with gate.run() as allowed:
                if allowed:
                    await do_work()

        Completion is recorded even when the body raises.
        """
        if not await self.should_run(now) or not await self.mark_run_start():
            yield False
            return
        try:
            yield True
        finally:
            await self.mark_run_complete()
