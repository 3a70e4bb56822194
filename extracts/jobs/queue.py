"""Work queue contract and the in-memory implementation.

The queue owns leasing and the attempt counter. Delivery is at-least-once:
a claimed job is leased to one worker until it is completed or failed, and a
lease held by a crashed worker is released by ``reap_stale``.

Current implementations:
- JobRepository (extracts.repositories.jobs): PostgreSQL, durable
- InMemoryWorkQueue: single process, used by tests and local runs
"""

import asyncio
import itertools
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import UUID, uuid4

import structlog

from extracts.core.resilience import RetryConfig, calculate_backoff
from extracts.jobs.models import Job
from extracts.jobs.types import JobStatus, JobType

logger = structlog.get_logger(__name__)

STALE_FINAL_ATTEMPT_ERROR = "lease expired on final attempt"


class WorkQueue(ABC):
    """Abstract job queue."""

    @abstractmethod
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
        """Add a job. Returns immediately; the job becomes claimable after delay_s."""
        ...

    @abstractmethod
    async def claim(self, worker_id: str, job_types: list[JobType]) -> Optional[Job]:
        """Lease the next runnable job, ordered by (priority, created_at).

        Increments ``attempt``. Returns None if nothing is runnable.
        """
        ...

    @abstractmethod
    async def complete(self, job_id: UUID, result: Optional[dict[str, Any]] = None) -> Job:
        """Mark a leased job as succeeded."""
        ...

    @abstractmethod
    async def fail(self, job_id: UUID, error: str, should_retry: bool = True) -> Job:
        """Release a leased job after a handler failure.

        If ``should_retry`` and attempts remain, the job goes back to pending
        with an exponential backoff delay; otherwise it is marked failed.
        """
        ...

    @abstractmethod
    async def reap_stale(self, stale_minutes: int = 30) -> int:
        """Release jobs leased longer than stale_minutes.

        A job with attempts left goes back to pending. A job whose final attempt
        was leased is marked failed and replaced by a fresh job with the same
        type, payload and priority, so it is never stranded.

        Returns the number of leases released.
        """
        ...

    @abstractmethod
    async def get(self, job_id: UUID) -> Optional[Job]:
        ...


class InMemoryWorkQueue(WorkQueue):
    """Process-local queue with the same semantics as the PostgreSQL queue."""

    def __init__(
        self,
        default_max_attempts: int = 3,
        default_backoff_s: float = 10.0,
        max_backoff_s: float = 300.0,
        default_priority: int = 100,
        jitter_s: float = 0.0,
    ):
        self._jobs: dict[UUID, Job] = {}
        self._seq = itertools.count()
        self._order: dict[UUID, int] = {}
        self._lock = asyncio.Lock()
        self._default_max_attempts = default_max_attempts
        self._default_backoff_s = default_backoff_s
        self._max_backoff_s = max_backoff_s
        self._default_priority = default_priority
        self._jitter_s = jitter_s

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
        now = datetime.now(timezone.utc)
        job = Job(
            id=uuid4(),
            type=job_type,
            status=JobStatus.PENDING,
            payload=dict(payload),
            max_attempts=max_attempts or self._default_max_attempts,
            backoff_s=backoff_s if backoff_s is not None else self._default_backoff_s,
            priority=priority if priority is not None else self._default_priority,
            run_after=now + timedelta(seconds=delay_s),
            created_at=now,
        )
        async with self._lock:
            self._jobs[job.id] = job
            self._order[job.id] = next(self._seq)
        logger.info(
            "job_enqueued",
            job_id=str(job.id),
            job_type=job_type.value,
            delay_s=delay_s,
            priority=job.priority,
        )
        return job

    async def claim(self, worker_id: str, job_types: list[JobType]) -> Optional[Job]:
        now = datetime.now(timezone.utc)
        async with self._lock:
            runnable = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.PENDING
                and job.run_after <= now
                and job.type in job_types
            ]
            if not runnable:
                return None
            job = min(runnable, key=lambda j: (j.priority, self._order[j.id]))
            job.status = JobStatus.RUNNING
            job.attempt += 1
            job.locked_at = now
            job.locked_by = worker_id
            job.started_at = now

        logger.info(
            "job_claimed",
            job_id=str(job.id),
            job_type=job.type.value,
            worker_id=worker_id,
            attempt=job.attempt,
        )
        return job

    async def complete(self, job_id: UUID, result: Optional[dict[str, Any]] = None) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.status = JobStatus.SUCCEEDED
            job.result = result or {}
            job.completed_at = datetime.now(timezone.utc)
            job.locked_at = None
            job.locked_by = None
        logger.info("job_completed", job_id=str(job_id))
        return job

    async def fail(self, job_id: UUID, error: str, should_retry: bool = True) -> Job:
        async with self._lock:
            job = self._require(job_id)
            job.locked_at = None
            job.locked_by = None

            if should_retry and job.attempt < job.max_attempts:
                config = RetryConfig(
                    base_delay_seconds=job.backoff_s,
                    max_delay_seconds=self._max_backoff_s,
                    jitter_seconds=self._jitter_s,
                )
                backoff = calculate_backoff(job.attempts_made, config)
                job.status = JobStatus.PENDING
                job.run_after = datetime.now(timezone.utc) + timedelta(seconds=backoff)
                job.result = {"last_error": error}
                logger.info(
                    "job_retry_scheduled",
                    job_id=str(job_id),
                    attempt=job.attempt,
                    backoff=backoff,
                )
            else:
                job.status = JobStatus.FAILED
                job.completed_at = datetime.now(timezone.utc)
                job.result = {"error": error}
                logger.warning("job_failed", job_id=str(job_id), error=error)
        return job

    async def reap_stale(self, stale_minutes: int = 30) -> int:
        now = datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=stale_minutes)
        count = 0
        async with self._lock:
            stale = [
                job
                for job in self._jobs.values()
                if job.status == JobStatus.RUNNING
                and job.locked_at is not None
                and job.locked_at < cutoff
            ]
            for job in stale:
                job.locked_at = None
                job.locked_by = None
                count += 1
                if job.attempt < job.max_attempts:
                    job.status = JobStatus.PENDING
                    continue
                # Final attempt died with its worker: replace it with fresh work
                replacement = Job(
                    id=uuid4(),
                    type=job.type,
                    status=JobStatus.PENDING,
                    payload=dict(job.payload),
                    max_attempts=job.max_attempts,
                    backoff_s=job.backoff_s,
                    priority=job.priority,
                    run_after=now,
                    created_at=now,
                )
                self._jobs[replacement.id] = replacement
                self._order[replacement.id] = next(self._seq)
                job.status = JobStatus.FAILED
                job.completed_at = now
                job.result = {
                    "error": STALE_FINAL_ATTEMPT_ERROR,
                    "requeued": True,
                    "new_job_id": str(replacement.id),
                }
                logger.warning(
                    "stale_final_attempt_replaced",
                    job_id=str(job.id),
                    new_job_id=str(replacement.id),
                    job_type=job.type.value,
                )
        if count > 0:
            logger.warning("stale_jobs_reaped", count=count)
        return count

    async def get(self, job_id: UUID) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(
        self,
        job_type: Optional[JobType] = None,
        status: Optional[JobStatus] = None,
    ) -> list[Job]:
        """Snapshot of jobs in enqueue order."""
        jobs = sorted(self._jobs.values(), key=lambda j: self._order[j.id])
        return [
            j
            for j in jobs
            if (job_type is None or j.type == job_type)
            and (status is None or j.status == status)
        ]

    def _require(self, job_id: UUID) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise ValueError(f"Job {job_id} not found")
        return job


def create_work_queue(settings, pool=None) -> WorkQueue:
    """
    Build the configured queue backend.

    Raises:
        ValueError: If QUEUE_BACKEND=postgres but no pool is available
    """
    if settings.queue_backend == "postgres":
        if pool is None:
            raise ValueError(
                "QUEUE_BACKEND=postgres requires DATABASE_URL to be set. "
                "Use QUEUE_BACKEND=memory for a single-process run."
            )
        from extracts.repositories.jobs import JobRepository

        queue: WorkQueue = JobRepository(
            pool,
            default_max_attempts=settings.job_max_attempts,
            default_backoff_s=settings.job_backoff_initial_s,
            max_backoff_s=settings.job_backoff_max_s,
            default_priority=settings.default_job_priority,
            jitter_s=settings.job_backoff_jitter_s,
        )
    else:
        queue = InMemoryWorkQueue(
            default_max_attempts=settings.job_max_attempts,
            default_backoff_s=settings.job_backoff_initial_s,
            max_backoff_s=settings.job_backoff_max_s,
            default_priority=settings.default_job_priority,
            jitter_s=settings.job_backoff_jitter_s,
        )
    logger.info("work_queue_initialized", backend=settings.queue_backend)
    return queue
