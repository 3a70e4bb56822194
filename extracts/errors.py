"""Error taxonomy shared by the session, portal and job layers.

Every domain error carries a disposition that tells the job processor what to
do with the failed attempt:

- retryable: burn one attempt, let the queue redeliver after backoff
- fatal_for_attempt: this attempt is over (e.g. bad credentials); the session
  is rebuilt and the job retried at the job level
- operator_action: a human must change something first; no backoff retries
"""

from enum import Enum
from typing import Optional


class ErrorDisposition(str, Enum):
    """What a failed attempt means for the job that produced it."""

    RETRYABLE = "retryable"
    FATAL_FOR_ATTEMPT = "fatal_for_attempt"
    OPERATOR_ACTION = "operator_action"


class ExtractsError(Exception):
    """Base class for domain errors."""

    disposition: ErrorDisposition = ErrorDisposition.RETRYABLE


class TransientPortalError(ExtractsError):
    """Network failure or 5xx from the portal."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthenticationFailed(ExtractsError):
    """Login failed or the session was rejected by the portal."""

    disposition = ErrorDisposition.FATAL_FOR_ATTEMPT


class CodeTimeout(ExtractsError):
    """No human supplied the code within the wait window."""

    def __init__(self, subject: str, kind: str, timeout_s: float):
        super().__init__(f"Timeout waiting for {kind} code (waited {timeout_s:g}s)")
        self.subject = subject
        self.kind = kind
        self.timeout_s = timeout_s


class CodeRequestConflict(ExtractsError):
    """A second request for the same (subject, kind) while one is outstanding."""

    def __init__(self, subject: str, kind: str):
        super().__init__(f"A {kind} code request for {subject!r} is already outstanding")
        self.subject = subject
        self.kind = kind


class CodeWaitCancelled(ExtractsError):
    """A pending code wait was released by shutdown or an explicit cancel."""

    def __init__(self, subject: str, kind: str):
        super().__init__(f"Wait for {kind} code for {subject!r} was cancelled")
        self.subject = subject
        self.kind = kind


class BrokerUnavailable(ExtractsError):
    """The code broker could not open or confirm a subscription."""


class UnansweredAnomalyQuestion(ExtractsError):
    """The portal asked a verification question nobody has answered yet."""

    disposition = ErrorDisposition.OPERATOR_ACTION

    def __init__(self, question: str):
        super().__init__(f"No answer available for anomaly question: {question}")
        self.question = question


class ArtifactValidationFailed(ExtractsError):
    """Downloaded artifact is missing, empty or not a readable archive."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Artifact {path} failed validation: {reason}")
        self.path = path
        self.reason = reason


class QueueExhausted(ExtractsError):
    """A job used all of its attempts."""

    def __init__(self, job_id, attempts: int):
        super().__init__(f"Job {job_id} exhausted {attempts} attempts")
        self.job_id = job_id
        self.attempts = attempts


class OrderNotFound(ExtractsError):
    """Order id does not exist (or was soft-deleted)."""

    disposition = ErrorDisposition.FATAL_FOR_ATTEMPT

    def __init__(self, order_id: int):
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class RepositoryUnavailable(Exception):
    """Database is unreachable. Infrastructure error, not a domain error."""


class WorkerInitializationError(Exception):
    """Worker could not resolve its operator identity or start the browser."""


def classify_error(error: BaseException) -> ErrorDisposition:
    """Map any exception to a disposition. Unknown errors are retryable."""
    if isinstance(error, ExtractsError):
        return error.disposition
    return ErrorDisposition.RETRYABLE


def is_infrastructure_error(error: BaseException) -> bool:
    """Errors that must bubble to the worker loop instead of the processor."""
    return isinstance(error, (RepositoryUnavailable, WorkerInitializationError))
