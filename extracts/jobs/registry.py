"""Job handler registry."""

from dataclasses import dataclass
from typing import Any, Callable, Coroutine

from extracts.jobs.models import Job
from extracts.jobs.types import JobType

# Handler signature: async def handler(job: Job, ctx: dict) -> dict
JobHandler = Callable[[Job, dict[str, Any]], Coroutine[Any, Any, dict[str, Any]]]


@dataclass(frozen=True)
class Consumer:
    """A handler bound to a job type with its concurrency limit."""

    job_type: JobType
    handler: JobHandler
    concurrency: int = 1


class JobRegistry:
    """Registry mapping job types to their handlers."""

    def __init__(self):
        self._consumers: dict[JobType, Consumer] = {}

    def register(self, job_type: JobType, handler: JobHandler, concurrency: int = 1) -> None:
        """Register a handler for a job type."""
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._consumers[job_type] = Consumer(job_type, handler, concurrency)

    def get_handler(self, job_type: JobType) -> JobHandler:
        """Get the handler for a job type. Raises KeyError if not found."""
        if job_type not in self._consumers:
            raise KeyError(f"No handler registered for job type: {job_type}")
        return self._consumers[job_type].handler

    def consumers(self) -> list[Consumer]:
        return list(self._consumers.values())
