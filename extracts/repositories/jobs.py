"""PostgreSQL-backed work queue."""

import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID

import structlog

from extracts.core.resilience import RetryConfig, calculate_backoff, with_db_retry
from extracts.jobs.models import Job
from extracts.jobs.queue import STALE_FINAL_ATTEMPT_ERROR, WorkQueue
from extracts.jobs.types import JobStatus, JobType

logger = structlog.get_logger(__name__)


def _decode_json(value) -> Optional[dict[str, Any]]:
    if value is None:
        return None
    if isinstance(value, str):
        return json.loads(value)
    return dict(value)


class JobRepository(WorkQueue):
    """Repository for job queue operations.

    Leasing uses ``FOR UPDATE SKIP LOCKED`` so concurrent workers never claim
    the same row.
    """

    def __init__(
        self,
        pool,
        default_max_attempts: int = 3,
        default_backoff_s: float = 10.0,
        max_backoff_s: float = 300.0,
        default_priority: int = 100,
        jitter_s: float = 0.0,
    ):
        self._pool = pool
        self._default_max_attempts = default_max_attempts
        self._default_backoff_s = default_backoff_s
        self._max_backoff_s = max_backoff_s
        self._default_priority = default_priority
        self._jitter_s = jitter_s

    def _calculate_backoff(self, attempts_made: int, backoff_s: float) -> float:
        config = RetryConfig(
            base_delay_seconds=backoff_s,
            max_delay_seconds=self._max_backoff_s,
            jitter_seconds=self._jitter_s,
        )
        return calculate_backoff(attempts_made, config)

    async def enqueue(
        self,
        job_type: JobType,
        payload: dict[str, Any],
        *,
        delay_s: float = 0,
        priority: Optional[int] = None,
        max_attempts: Optional[int] = None,
        backoff_s: Optional[float] = None,
    ) -> Job:
        query = """
            INSERT INTO jobs (type, payload, priority, max_attempts, backoff_s, run_after)
            VALUES ($1, $2::jsonb, $3, $4, $5, now() + make_interval(secs => $6))
            RETURNING *
        """
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(
                query,
                job_type.value,
                json.dumps(payload),
                priority if priority is not None else self._default_priority,
                max_attempts or self._default_max_attempts,
                backoff_s if backoff_s is not None else self._default_backoff_s,
                float(delay_s),
            ),
        )
        job = self._row_to_job(row)
        logger.info(
            "job_enqueued",
            job_id=str(job.id),
            job_type=job_type.value,
            delay_s=delay_s,
            priority=job.priority,
        )
        return job

    async def claim(self, worker_id: str, job_types: list[JobType]) -> Optional[Job]:
        """Claim the next available job using FOR UPDATE SKIP LOCKED.

        Returns None if no jobs available.
        """
        query = """
            WITH cte AS (
                SELECT id FROM jobs
                WHERE status = 'pending' AND run_after <= now()
                  AND type = ANY($2)
                ORDER BY priority, created_at
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            UPDATE jobs j SET
                status = 'running',
                locked_at = now(),
                locked_by = $1,
                started_at = now(),
                attempt = j.attempt + 1
            FROM cte
            WHERE j.id = cte.id
            RETURNING j.*
        """
        type_values = [jt.value for jt in job_types]
        row = await with_db_retry(
            self._pool, lambda conn: conn.fetchrow(query, worker_id, type_values)
        )

        if row:
            logger.info(
                "job_claimed",
                job_id=str(row["id"]),
                job_type=row["type"],
                worker_id=worker_id,
                attempt=row["attempt"],
            )
            return self._row_to_job(row)
        return None

    async def complete(self, job_id: UUID, result: Optional[dict[str, Any]] = None) -> Job:
        """Mark a job as succeeded."""
        query = """
            UPDATE jobs SET
                status = 'succeeded',
                result = $2::jsonb,
                locked_at = NULL,
                locked_by = NULL,
                completed_at = now()
            WHERE id = $1
            RETURNING *
        """
        row = await with_db_retry(
            self._pool,
            lambda conn: conn.fetchrow(query, job_id, json.dumps(result or {})),
        )
        logger.info("job_completed", job_id=str(job_id))
        return self._row_to_job(row)

    async def fail(self, job_id: UUID, error: str, should_retry: bool = True) -> Job:
        """Mark a job as failed, optionally scheduling retry."""

        async def _fail(conn):
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT * FROM jobs WHERE id = $1 FOR UPDATE", job_id
                )
                if not row:
                    raise ValueError(f"Job {job_id} not found")

                attempt = row["attempt"]
                if should_retry and attempt < row["max_attempts"]:
                    backoff = self._calculate_backoff(attempt - 1, row["backoff_s"])
                    run_after = datetime.now(timezone.utc) + timedelta(seconds=backoff)
                    query = """
                        UPDATE jobs SET
                            status = 'pending',
                            locked_at = NULL,
                            locked_by = NULL,
                            run_after = $2,
                            result = jsonb_build_object('last_error', $3::text)
                        WHERE id = $1
                        RETURNING *
                    """
                    updated = await conn.fetchrow(query, job_id, run_after, error)
                    logger.info(
                        "job_retry_scheduled",
                        job_id=str(job_id),
                        attempt=attempt,
                        backoff=backoff,
                    )
                    return updated

                query = """
                    UPDATE jobs SET
                        status = 'failed',
                        locked_at = NULL,
                        locked_by = NULL,
                        completed_at = now(),
                        result = jsonb_build_object('error', $2::text)
                    WHERE id = $1
                    RETURNING *
                """
                updated = await conn.fetchrow(query, job_id, error)
                logger.warning("job_failed", job_id=str(job_id), error=error)
                return updated

        row = await with_db_retry(self._pool, _fail)
        return self._row_to_job(row)

    async def reap_stale(self, stale_minutes: int = 30) -> int:
        """Release stale running jobs (stuck workers).

        Jobs with attempts left go back to pending. A job whose final attempt
        was leased is marked failed and replaced by a fresh job in the same
        transaction.
        """
        release_query = """
            UPDATE jobs SET
                status = 'pending',
                locked_at = NULL,
                locked_by = NULL
            WHERE status = 'running'
              AND locked_at < now() - make_interval(mins => $1)
              AND attempt < max_attempts
            RETURNING id
        """
        final_query = """
            SELECT * FROM jobs
            WHERE status = 'running'
              AND locked_at < now() - make_interval(mins => $1)
              AND attempt >= max_attempts
            FOR UPDATE SKIP LOCKED
        """
        replace_query = """
            INSERT INTO jobs (type, payload, max_attempts, backoff_s, priority)
            VALUES ($1, $2::jsonb, $3, $4, $5)
            RETURNING id
        """
        fail_query = """
            UPDATE jobs SET
                status = 'failed',
                locked_at = NULL,
                locked_by = NULL,
                completed_at = now(),
                result = $2::jsonb
            WHERE id = $1
        """

        async def _reap(conn):
            async with conn.transaction():
                released = await conn.fetch(release_query, stale_minutes)
                finals = await conn.fetch(final_query, stale_minutes)
                for row in finals:
                    new_id = await conn.fetchval(
                        replace_query,
                        row["type"],
                        json.dumps(_decode_json(row["payload"]) or {}),
                        row["max_attempts"],
                        row["backoff_s"],
                        row["priority"],
                    )
                    result = {
                        "error": STALE_FINAL_ATTEMPT_ERROR,
                        "requeued": True,
                        "new_job_id": str(new_id),
                    }
                    await conn.execute(fail_query, row["id"], json.dumps(result))
                    logger.warning(
                        "stale_final_attempt_replaced",
                        job_id=str(row["id"]),
                        new_job_id=str(new_id),
                        job_type=row["type"],
                    )
                return len(released) + len(finals)

        count = await with_db_retry(self._pool, _reap)
        if count > 0:
            logger.warning("stale_jobs_reaped", count=count)
        return count

    async def get(self, job_id: UUID) -> Optional[Job]:
        """Get a job by ID."""
        query = "SELECT * FROM jobs WHERE id = $1"
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, job_id))
        return self._row_to_job(row) if row else None

    async def count_pending(self, job_type: Optional[JobType] = None) -> int:
        """Number of pending jobs, optionally of one type."""
        query = """
            SELECT COUNT(*) AS total FROM jobs
            WHERE status = 'pending' AND ($1::text IS NULL OR type = $1)
        """
        value = job_type.value if job_type else None
        row = await with_db_retry(self._pool, lambda conn: conn.fetchrow(query, value))
        return row["total"] if row else 0

    def _row_to_job(self, row) -> Job:
        """Convert a database row to a Job model."""
        return Job(
            id=row["id"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            payload=_decode_json(row["payload"]) or {},
            attempt=row["attempt"],
            max_attempts=row["max_attempts"],
            backoff_s=float(row["backoff_s"]),
            run_after=row["run_after"],
            priority=row["priority"],
            locked_at=row["locked_at"],
            locked_by=row["locked_by"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            result=_decode_json(row["result"]),
        )
