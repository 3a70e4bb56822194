"""Tests for connection resilience and backoff."""

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import asyncpg
import pytest

from extracts.core.resilience import (
    RetryConfig,
    calculate_backoff,
    get_circuit_status,
    is_transient_db_error,
    reset_circuits,
    with_db_retry,
)
from extracts.errors import RepositoryUnavailable

FAST = RetryConfig(max_attempts=3, base_delay_seconds=0)


def make_pool(mock_conn):
    mock_pool = MagicMock()
    mock_pool.acquire.return_value.__aenter__.return_value = mock_conn
    return mock_pool


class TestBackoffCalculation:
    def test_doubles_per_attempt(self):
        config = RetryConfig(base_delay_seconds=10.0, max_delay_seconds=300.0)
        assert [calculate_backoff(n, config) for n in range(4)] == [10.0, 20.0, 40.0, 80.0]

    def test_capped_at_max(self):
        config = RetryConfig(base_delay_seconds=10.0, max_delay_seconds=300.0)
        assert calculate_backoff(10, config) == 300.0

    def test_jitter_is_bounded(self):
        config = RetryConfig(base_delay_seconds=1.0, jitter_seconds=0.5)
        for _ in range(20):
            assert 1.0 <= calculate_backoff(0, config) <= 1.5


class TestTransientErrorDetection:
    @pytest.mark.parametrize(
        "error",
        [
            ConnectionRefusedError(),
            ConnectionResetError(),
            asyncio.TimeoutError(),
            OSError("network unreachable"),
            asyncpg.InterfaceError("connection is closed"),
        ],
    )
    def test_transient(self, error):
        assert is_transient_db_error(error)

    def test_value_error_not_transient(self):
        assert not is_transient_db_error(ValueError("bad input"))

    def test_unique_violation_not_transient(self):
        assert not is_transient_db_error(asyncpg.UniqueViolationError("dup"))


class TestDatabaseRetry:
    @pytest.mark.asyncio
    async def test_successful_operation_no_retry(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.return_value = 1

        result = await with_db_retry(make_pool(mock_conn), lambda c: c.fetchval("SELECT 1"), FAST)

        assert result == 1
        assert mock_conn.fetchval.call_count == 1

    @pytest.mark.asyncio
    async def test_retry_on_transient_error(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.side_effect = [ConnectionResetError(), 1]

        result = await with_db_retry(make_pool(mock_conn), lambda c: c.fetchval("SELECT 1"), FAST)

        assert result == 1
        assert mock_conn.fetchval.call_count == 2

    @pytest.mark.asyncio
    async def test_no_retry_on_non_transient_error(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.side_effect = ValueError("bad query")

        with pytest.raises(ValueError):
            await with_db_retry(make_pool(mock_conn), lambda c: c.fetchval("SELECT"), FAST)
        assert mock_conn.fetchval.call_count == 1

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_repository_unavailable(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.side_effect = ConnectionRefusedError("refused")

        with pytest.raises(RepositoryUnavailable):
            await with_db_retry(make_pool(mock_conn), lambda c: c.fetchval("SELECT 1"), FAST)
        assert mock_conn.fetchval.call_count == 3

    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_outages(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.side_effect = ConnectionRefusedError("refused")
        pool = make_pool(mock_conn)
        single = RetryConfig(max_attempts=1, base_delay_seconds=0)

        for _ in range(5):
            with pytest.raises(RepositoryUnavailable):
                await with_db_retry(pool, lambda c: c.fetchval("SELECT 1"), single)

        assert get_circuit_status()["postgres"]["is_open"]
        calls = mock_conn.fetchval.call_count
        with pytest.raises(RepositoryUnavailable, match="circuit breaker"):
            await with_db_retry(pool, lambda c: c.fetchval("SELECT 1"), single)
        assert mock_conn.fetchval.call_count == calls

    @pytest.mark.asyncio
    async def test_success_closes_circuit(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.side_effect = [ConnectionResetError(), 1]
        pool = make_pool(mock_conn)
        single = RetryConfig(max_attempts=1, base_delay_seconds=0)

        with pytest.raises(RepositoryUnavailable):
            await with_db_retry(pool, lambda c: c.fetchval("SELECT 1"), single)
        assert get_circuit_status()["postgres"]["failures"] == 1

        await with_db_retry(pool, lambda c: c.fetchval("SELECT 1"), single)
        assert get_circuit_status()["postgres"]["failures"] == 0

    @pytest.mark.asyncio
    async def test_sleeps_between_attempts(self):
        mock_conn = AsyncMock()
        mock_conn.fetchval.side_effect = [ConnectionResetError(), ConnectionResetError(), 1]
        config = RetryConfig(max_attempts=3, base_delay_seconds=0.5)

        with patch("extracts.core.resilience.asyncio.sleep", new=AsyncMock()) as sleep:
            await with_db_retry(make_pool(mock_conn), lambda c: c.fetchval("SELECT 1"), config)

        assert [call.args[0] for call in sleep.await_args_list] == [0.5, 1.0]


def test_reset_clears_status():
    reset_circuits()
    assert get_circuit_status()["postgres"] == {
        "failures": 0,
        "is_open": False,
        "last_failure": None,
    }
