"""One-time worker initialization.

Resolves the operator account this worker acts as and starts the browser.
Concurrent first callers share a single in-flight attempt; a failed attempt
is forgotten so the next caller retries it.
"""

import asyncio
from typing import Optional, Protocol

import structlog

from extracts.errors import WorkerInitializationError
from extracts.repositories.operators import Operator
from extracts.routers.metrics import set_worker_ready

logger = structlog.get_logger(__name__)


class OperatorLookup(Protocol):
    async def get_by_username(self, username: str) -> Optional[Operator]: ...


class Startable(Protocol):
    async def start(self) -> None: ...


class WorkerInitializer:
    """Do-once gate in front of every job processor."""

    def __init__(self, operators: OperatorLookup, browser: Startable, username: str):
        self._operators = operators
        self._browser = browser
        self._username = username
        self._operator: Optional[Operator] = None
        self._task: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def operator(self) -> Operator:
        if self._operator is None:
            raise WorkerInitializationError("Worker is not initialized")
        return self._operator

    async def ensure_ready(self) -> Operator:
        """Initialize on first call; later calls return at once."""
        if self._operator is not None:
            return self._operator
        if self._task is None:
            self._task = asyncio.create_task(self._initialize(), name="worker-init")
        task = self._task
        try:
            # shield: one cancelled caller must not cancel the shared attempt
            return await asyncio.shield(task)
        except WorkerInitializationError:
            if self._task is task:
                self._task = None
            raise

    async def wait_until_ready(self, timeout: Optional[float] = None) -> Operator:
        """Block until another caller's initialization has finished."""
        await asyncio.wait_for(self._ready.wait(), timeout=timeout)
        return self.operator

    async def _initialize(self) -> Operator:
        log = logger.bind(username=self._username)
        if not self._username:
            set_worker_ready(False)
            raise WorkerInitializationError("OPERATOR_USERNAME is not configured")

        try:
            operator = await self._operators.get_by_username(self._username)
        except Exception as e:
            set_worker_ready(False)
            raise WorkerInitializationError(f"Operator lookup failed: {e}") from e
        if operator is None:
            set_worker_ready(False)
            raise WorkerInitializationError(f"Operator {self._username!r} not found")

        try:
            await self._browser.start()
        except Exception as e:
            set_worker_ready(False)
            log.error("browser_start_failed", error=str(e))
            raise WorkerInitializationError(f"Browser failed to start: {e}") from e

        self._operator = operator
        self._ready.set()
        set_worker_ready(True)
        log.info("worker_initialized", operator_id=operator.id)
        return operator
