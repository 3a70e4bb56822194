"""Backoff arithmetic and database resilience.

Two concerns live here:

- ``calculate_backoff`` computes the redelivery delay for a failed job
  (``initial * 2^attempts_made``, capped, optional jitter).
- ``with_db_retry`` wraps repository calls: transient connection failures are
  retried a few times, and if they persist the caller sees
  ``RepositoryUnavailable`` instead of a raw driver error.

Usage:
    from extracts.core.resilience import with_db_retry

    row = await with_db_retry(pool, lambda conn: conn.fetchrow(query, order_id))
"""

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, TypeVar

import asyncpg
import structlog

from extracts.errors import RepositoryUnavailable

logger = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Exponential backoff parameters."""

    max_attempts: int = 3
    base_delay_seconds: float = 0.5
    max_delay_seconds: float = 10.0
    exponential_base: float = 2.0
    jitter_seconds: float = 0.0


@dataclass
class CircuitState:
    """Track circuit breaker state for the database."""

    failures: int = 0
    last_failure: Optional[datetime] = None
    is_open: bool = False
    open_until: Optional[datetime] = None

    # Circuit opens after this many consecutive exhausted calls
    failure_threshold: int = 5
    reset_timeout_seconds: float = 30.0


_db_circuit = CircuitState()

# Repository calls retry quickly; a long outage becomes RepositoryUnavailable.
DB_RETRY = RetryConfig(max_attempts=3, base_delay_seconds=0.5, max_delay_seconds=5.0)

TRANSIENT_SQLSTATES = {
    "08000",  # connection_exception
    "08003",  # connection_does_not_exist
    "08006",  # connection_failure
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "57P01",  # admin_shutdown
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
}


def calculate_backoff(attempts_made: int, config: RetryConfig) -> float:
    """Delay before the next delivery of a job.

    Args:
        attempts_made: Deliveries that already failed, minus one
            (0 after the first failure)
        config: Backoff parameters

    Returns:
        Delay in seconds
    """
    delay = config.base_delay_seconds * (config.exponential_base ** max(attempts_made, 0))
    delay = min(delay, config.max_delay_seconds)
    if config.jitter_seconds > 0:
        delay += random.uniform(0, config.jitter_seconds)
    return delay


def is_transient_db_error(error: BaseException) -> bool:
    """Check if a database error is a connectivity problem worth retrying.

    Query errors and constraint violations are not transient.
    """
    if isinstance(
        error,
        (
            asyncpg.InterfaceError,
            asyncpg.InternalClientError,
            asyncpg.TooManyConnectionsError,
            ConnectionRefusedError,
            ConnectionResetError,
            TimeoutError,
            asyncio.TimeoutError,
            OSError,
        ),
    ):
        return True

    if isinstance(error, asyncpg.PostgresError):
        return getattr(error, "sqlstate", None) in TRANSIENT_SQLSTATES

    return False


def _check_circuit(circuit: CircuitState) -> bool:
    if not circuit.is_open:
        return True
    now = datetime.now(timezone.utc)
    if circuit.open_until and now >= circuit.open_until:
        logger.info("circuit_half_open", service="postgres", failures=circuit.failures)
        return True
    return False


def _record_success(circuit: CircuitState) -> None:
    if circuit.failures > 0 or circuit.is_open:
        logger.info("circuit_closed", service="postgres", previous_failures=circuit.failures)
    circuit.failures = 0
    circuit.last_failure = None
    circuit.is_open = False
    circuit.open_until = None


def _record_failure(circuit: CircuitState) -> None:
    now = datetime.now(timezone.utc)
    circuit.failures += 1
    circuit.last_failure = now

    if circuit.failures >= circuit.failure_threshold:
        circuit.is_open = True
        circuit.open_until = datetime.fromtimestamp(
            now.timestamp() + circuit.reset_timeout_seconds,
            tz=timezone.utc,
        )
        logger.warning(
            "circuit_opened",
            service="postgres",
            failures=circuit.failures,
            reset_at=circuit.open_until.isoformat(),
        )


async def with_db_retry(
    pool,
    operation: Callable[[Any], Any],
    config: Optional[RetryConfig] = None,
) -> Any:
    """Execute a database operation, retrying transient failures.

    Args:
        pool: asyncpg connection pool
        operation: Async callable that takes a connection and returns a result
        config: Optional retry configuration

    Raises:
        RepositoryUnavailable: Circuit open or transient failures persisted
        Exception: Non-transient errors are re-raised unchanged
    """
    if config is None:
        config = DB_RETRY

    if not _check_circuit(_db_circuit):
        raise RepositoryUnavailable(
            "Database circuit breaker is open - service recovering from outage"
        )

    last_error: Optional[BaseException] = None

    for attempt in range(config.max_attempts):
        try:
            async with pool.acquire() as conn:
                result = await operation(conn)
            _record_success(_db_circuit)
            return result

        except Exception as e:
            if not is_transient_db_error(e):
                raise

            last_error = e
            delay = calculate_backoff(attempt, config)
            logger.warning(
                "db_retry_attempt",
                attempt=attempt + 1,
                max_attempts=config.max_attempts,
                delay_seconds=round(delay, 2),
                error=str(e),
                error_type=type(e).__name__,
            )
            if attempt < config.max_attempts - 1:
                await asyncio.sleep(delay)

    _record_failure(_db_circuit)
    logger.error("db_retries_exhausted", attempts=config.max_attempts, error=str(last_error))
    raise RepositoryUnavailable(str(last_error)) from last_error


def get_circuit_status() -> dict:
    """Get current circuit breaker status for health checks."""
    return {
        "postgres": {
            "failures": _db_circuit.failures,
            "is_open": _db_circuit.is_open,
            "last_failure": (
                _db_circuit.last_failure.isoformat() if _db_circuit.last_failure else None
            ),
        },
    }


def reset_circuits() -> None:
    """Reset circuit breaker state. Used for testing."""
    global _db_circuit
    _db_circuit = CircuitState()
