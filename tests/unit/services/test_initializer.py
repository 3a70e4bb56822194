"""Tests for one-time worker initialization."""

import asyncio

import pytest

from extracts.errors import WorkerInitializationError
from extracts.services.initializer import WorkerInitializer


class TestEnsureReady:
    @pytest.mark.asyncio
    async def test_resolves_operator_and_starts_browser(
        self, operator, browser, make_operators
    ):
        operators = make_operators(operator)
        initializer = WorkerInitializer(operators, browser, "user1")

        resolved = await initializer.ensure_ready()

        assert resolved is operator
        assert initializer.is_ready
        assert initializer.operator is operator
        assert browser.started == 1

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_attempt(
        self, operator, browser, make_operators
    ):
        operators = make_operators(operator)
        initializer = WorkerInitializer(operators, browser, "user1")

        results = await asyncio.gather(*(initializer.ensure_ready() for _ in range(5)))

        assert all(r is operator for r in results)
        assert operators.lookups == 1
        assert browser.started == 1

    @pytest.mark.asyncio
    async def test_later_calls_do_not_reinitialize(self, operator, browser, make_operators):
        operators = make_operators(operator)
        initializer = WorkerInitializer(operators, browser, "user1")

        await initializer.ensure_ready()
        await initializer.ensure_ready()

        assert operators.lookups == 1

    @pytest.mark.asyncio
    async def test_unknown_operator(self, operator, browser, make_operators):
        initializer = WorkerInitializer(make_operators(operator), browser, "someone-else")

        with pytest.raises(WorkerInitializationError, match="not found"):
            await initializer.ensure_ready()
        assert not initializer.is_ready

    @pytest.mark.asyncio
    async def test_missing_username(self, operator, browser, make_operators):
        initializer = WorkerInitializer(make_operators(operator), browser, "")
        with pytest.raises(WorkerInitializationError, match="OPERATOR_USERNAME"):
            await initializer.ensure_ready()

    @pytest.mark.asyncio
    async def test_failed_attempt_is_retried(self, operator, browser, make_operators):
        operators = make_operators(operator, error=ConnectionError("db down"))
        initializer = WorkerInitializer(operators, browser, "user1")

        with pytest.raises(WorkerInitializationError, match="lookup failed"):
            await initializer.ensure_ready()

        operators.error = None
        assert await initializer.ensure_ready() is operator
        assert operators.lookups == 2

    @pytest.mark.asyncio
    async def test_browser_start_failure(self, operator, browser, make_operators):
        browser.fail_start = True
        initializer = WorkerInitializer(make_operators(operator), browser, "user1")

        with pytest.raises(WorkerInitializationError, match="Browser failed"):
            await initializer.ensure_ready()
        assert not initializer.is_ready

    @pytest.mark.asyncio
    async def test_operator_before_ready_raises(self, operator, browser, make_operators):
        initializer = WorkerInitializer(make_operators(operator), browser, "user1")
        with pytest.raises(WorkerInitializationError):
            initializer.operator

    @pytest.mark.asyncio
    async def test_wait_until_ready(self, operator, browser, make_operators):
        initializer = WorkerInitializer(make_operators(operator), browser, "user1")
        waiter = asyncio.create_task(initializer.wait_until_ready(timeout=1))
        await asyncio.sleep(0)

        await initializer.ensure_ready()

        assert await waiter is operator
