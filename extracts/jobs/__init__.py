"""Job system package."""

from extracts.jobs.models import Job, OrderJobData, StatusCheckJobData
from extracts.jobs.queue import InMemoryWorkQueue, WorkQueue, create_work_queue
from extracts.jobs.registry import JobRegistry
from extracts.jobs.retry import ExhaustionDisposition, RetryPolicy
from extracts.jobs.types import JobStatus, JobType

__all__ = [
    "JobType",
    "JobStatus",
    "Job",
    "OrderJobData",
    "StatusCheckJobData",
    "WorkQueue",
    "InMemoryWorkQueue",
    "create_work_queue",
    "JobRegistry",
    "RetryPolicy",
    "ExhaustionDisposition",
]
