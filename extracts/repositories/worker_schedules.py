"""Repository for persisted recurring-task state."""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import structlog

from extracts.core.resilience import with_db_retry

logger = structlog.get_logger(__name__)


@dataclass
class WorkerSchedule:
    """Run state of one named recurring task."""

    task_name: str
    active_interval_start: str  # HH:MM
    active_interval_end: str  # HH:MM
    is_active: bool = True
    cron_expression: Optional[str] = None
    last_run_at: Optional[datetime] = None
    last_run_completed_at: Optional[datetime] = None
    id: Optional[int] = None
    updated_at: Optional[datetime] = None

    @property
    def run_in_flight(self) -> bool:
        """A run started and has not been marked complete."""
        if self.last_run_at is None:
            return False
        if self.last_run_completed_at is None:
            return True
        return self.last_run_completed_at < self.last_run_at


class WorkerScheduleRepository:
    """Repository for worker_schedules rows."""

    def __init__(self, pool):
        self._pool = pool

    def _row_to_schedule(self, row) -> WorkerSchedule:
        return WorkerSchedule(
            id=row["id"],
            task_name=row["task_name"],
            active_interval_start=row["active_interval_start"],
            active_interval_end=row["active_interval_end"],
            is_active=row["is_active"],
            cron_expression=row["cron_expression"],
            last_run_at=row["last_run_at"],
            last_run_completed_at=row["last_run_completed_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, task_name: str) -> Optional[WorkerSchedule]:
        query = "SELECT * FROM worker_schedules WHERE task_name = $1"
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, task_name))
        return self._row_to_schedule(row) if row else None

    async def try_mark_run_start(self, task_name: str) -> Optional[datetime]:
        """
        Set last_run_at to now, strictly after the last completion, only if
        no run is in flight.

        The check and the write are one statement, so two processes can never
        both start a run.

        Returns:
            The new last_run_at, or None if a run is already in flight
        """
        query = """
            UPDATE worker_schedules SET
                last_run_at = GREATEST(
                    now(), last_run_completed_at + interval '1 microsecond'
                ),
                updated_at = now()
            WHERE task_name = $1
              AND (
                last_run_at IS NULL
                OR (last_run_completed_at IS NOT NULL
                    AND last_run_completed_at >= last_run_at)
              )
            RETURNING last_run_at
        """
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, task_name))
        if not row:
            logger.info("schedule_run_already_in_flight", task_name=task_name)
            return None
        return row["last_run_at"]

    async def mark_run_complete(self, task_name: str) -> Optional[datetime]:
        # clock_timestamp() so completion is never equal to a start made
        # in the same transaction
        query = """
            UPDATE worker_schedules SET
                last_run_completed_at = clock_timestamp(),
                updated_at = now()
            WHERE task_name = $1
            RETURNING last_run_completed_at
        """
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, task_name))
        return row["last_run_completed_at"] if row else None

    async def upsert(
        self,
        task_name: str,
        active_interval_start: str,
        active_interval_end: str,
        is_active: bool = True,
        cron_expression: Optional[str] = None,
    ) -> WorkerSchedule:
        """Create or reconfigure a schedule. Run timestamps are kept."""
        query = """
            INSERT INTO worker_schedules
                (task_name, active_interval_start, active_interval_end, is_active, cron_expression)
            VALUES ($1, $2, $3, $4, $5)
            ON CONFLICT (task_name) DO UPDATE SET
                active_interval_start = EXCLUDED.active_interval_start,
                active_interval_end = EXCLUDED.active_interval_end,
                is_active = EXCLUDED.is_active,
                cron_expression = EXCLUDED.cron_expression,
                updated_at = now()
            RETURNING *
        """
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(
                query,
                task_name,
                active_interval_start,
                active_interval_end,
                is_active,
                cron_expression,
            ),
        )
        return self._row_to_schedule(row)
