"""Job system type definitions."""

from enum import Enum


class JobType(str, Enum):
    """Job kinds consumed by the worker."""

    PLACE_ORDER = "place_order"
    CHECK_AND_DOWNLOAD = "check_and_download"


class JobStatus(str, Enum):
    """Job lifecycle statuses."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (job won't change)."""
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED)
