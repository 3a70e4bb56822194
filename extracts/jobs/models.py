"""Job system data models."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import UUID

from extracts.jobs.types import JobStatus, JobType


@dataclass
class Job:
    """A job in the queue.

    ``attempt`` counts deliveries and is incremented by the queue when the job
    is claimed, so a handler sees 1 on the first delivery. The payload is never
    modified after enqueue.
    """

    id: UUID
    type: JobType
    status: JobStatus
    payload: dict[str, Any]

    # Retry handling
    attempt: int = 0
    max_attempts: int = 3
    backoff_s: float = 10.0
    run_after: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    priority: int = 100

    # Lease info
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None

    # Lifecycle timestamps
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Result or last error
    result: Optional[dict[str, Any]] = None

    @property
    def attempts_made(self) -> int:
        """Failed deliveries before the current one."""
        return max(self.attempt - 1, 0)

    @property
    def has_retries_left(self) -> bool:
        """True if a failure now would still be redelivered by the queue."""
        return self.attempts_made + 1 < self.max_attempts


@dataclass(frozen=True)
class OrderJobData:
    """Payload of a place-order job."""

    order_id: int
    cadastral_number: str
    owner_id: int

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderJobData":
        return cls(
            order_id=int(payload["order_id"]),
            cadastral_number=str(payload["cadastral_number"]),
            owner_id=int(payload["owner_id"]),
        )


@dataclass(frozen=True)
class StatusCheckJobData:
    """Payload of a check-and-download job."""

    order_id: int
    external_order_number: str

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "StatusCheckJobData":
        return cls(
            order_id=int(payload["order_id"]),
            external_order_number=str(payload["external_order_number"]),
        )
