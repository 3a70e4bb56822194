"""Code broker: hands a human-entered code to the one worker waiting for it.

Per (subject, kind) a request moves through::

    idle -> subscribed -> waiting -> delivered | timed out -> idle

``subscribe`` creates the delivery slot before it returns, so a code published
between ``subscribe`` and ``wait_for_code`` is held for the waiter instead of
being lost. Callers must subscribe before doing the thing that makes the
portal send a code, and must ``cancel`` if that action fails before they get
to ``wait_for_code``. The ``expect`` context manager does both.

Current implementations:
- InMemoryCodeBroker: API and worker in one process
- RedisCodeBroker (redis_broker.py): API and worker in separate processes
"""

import asyncio
import json
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import AsyncIterator, Optional

import structlog

from extracts.errors import CodeRequestConflict, CodeTimeout, CodeWaitCancelled
from extracts.routers.metrics import record_code_wait, set_pending_code_requests

logger = structlog.get_logger(__name__)

REQUESTS_CHANNEL = "codes:requests"
_SUBJECT_UNSAFE = re.compile(r"[^a-zA-Z0-9@._-]")


class CodeKind(str, Enum):
    SMS = "sms"
    CAPTCHA = "captcha"


class RequestState(str, Enum):
    SUBSCRIBED = "subscribed"
    WAITING = "waiting"


def sanitize_subject(subject: str) -> str:
    """Replace characters that are unsafe in a channel name."""
    return _SUBJECT_UNSAFE.sub("_", subject)


def channel_name(subject: str, kind: CodeKind) -> str:
    """Channel a code for (subject, kind) is delivered on."""
    return f"codes:{sanitize_subject(subject)}:{kind.value}"


@dataclass
class CodeMessage:
    """A code on its way to a waiter. Consumed once, then discarded."""

    subject: str
    kind: CodeKind
    code: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    attachment_path: Optional[str] = None

    def to_json(self) -> str:
        data = {
            "subject": self.subject,
            "kind": self.kind.value,
            "code": self.code,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.attachment_path:
            data["attachment_path"] = self.attachment_path
        return json.dumps(data, ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "CodeMessage":
        data = json.loads(raw)
        return cls(
            subject=data["subject"],
            kind=CodeKind(data["kind"]),
            code=str(data.get("code", "")),
            timestamp=datetime.fromisoformat(data["timestamp"]),
            attachment_path=data.get("attachment_path"),
        )


@dataclass
class CodeRequest:
    """An outstanding wait for one code."""

    subject: str
    kind: CodeKind
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    timeout_at: Optional[datetime] = None
    state: RequestState = RequestState.SUBSCRIBED


@dataclass
class _Pending:
    request: CodeRequest
    future: "asyncio.Future[CodeMessage]"


class CodeBroker(ABC):
    """Shared request bookkeeping; subclasses provide the transport."""

    def __init__(self, default_timeout_s: float = 300.0):
        self._default_timeout_s = default_timeout_s
        self._pending: dict[str, _Pending] = {}
        self._lock = asyncio.Lock()

    @abstractmethod
    async def publish(
        self,
        subject: str,
        kind: CodeKind,
        code: str,
        attachment_path: Optional[str] = None,
    ) -> int:
        """
        Deliver a code to the matching waiter.

        Returns:
            Number of subscribers reached. 0 means nobody was waiting and the
            code was dropped.
        """
        ...

    @abstractmethod
    async def announce_request(
        self, subject: str, kind: CodeKind, attachment_path: Optional[str] = None
    ) -> int:
        """Tell operator tooling that a code is needed (e.g. a CAPTCHA image)."""
        ...

    async def _open_channel(self, channel: str) -> None:
        """Start listening on a channel. Must return only once it is live."""

    async def _close_channel(self, channel: str) -> None:
        """Stop listening on a channel."""

    async def close(self) -> None:
        """Release every pending wait and the transport."""
        await self.cancel_all()

    async def ping(self) -> bool:
        """Whether the transport is reachable."""
        return True

    def pending_count(self) -> int:
        return len(self._pending)

    def pending_requests(self) -> list[CodeRequest]:
        return [p.request for p in self._pending.values()]

    async def subscribe(self, subject: str, kind: CodeKind) -> CodeRequest:
        """Open the delivery slot for (subject, kind).

        Raises:
            CodeRequestConflict: A request for the same key is outstanding
        """
        channel = channel_name(subject, kind)
        async with self._lock:
            if channel in self._pending:
                raise CodeRequestConflict(subject, kind.value)
            pending = _Pending(
                request=CodeRequest(subject=subject, kind=kind),
                future=asyncio.get_running_loop().create_future(),
            )
            self._pending[channel] = pending

        try:
            await self._open_channel(channel)
        except BaseException:
            self._pending.pop(channel, None)
            raise

        set_pending_code_requests(len(self._pending))
        logger.info("code_subscribed", subject=subject, kind=kind.value, channel=channel)
        return pending.request

    async def wait_for_code(
        self, subject: str, kind: CodeKind, timeout_s: Optional[float] = None
    ) -> str:
        """Block until the code arrives or the timeout elapses.

        The subscription is released either way.

        Raises:
            CodeTimeout: No code within the timeout
            CodeRequestConflict: Another caller is already waiting on this key
            CodeWaitCancelled: The wait was released by cancel/shutdown
        """
        channel = channel_name(subject, kind)
        pending = self._pending.get(channel)
        if pending is None:
            logger.warning("code_wait_without_subscribe", subject=subject, kind=kind.value)
            await self.subscribe(subject, kind)
            pending = self._pending[channel]
        elif pending.request.state == RequestState.WAITING:
            raise CodeRequestConflict(subject, kind.value)

        timeout = timeout_s if timeout_s is not None else self._default_timeout_s
        pending.request.state = RequestState.WAITING
        pending.request.timeout_at = datetime.now(timezone.utc) + timedelta(seconds=timeout)
        logger.info("code_waiting", subject=subject, kind=kind.value, timeout_s=timeout)

        try:
            message = await asyncio.wait_for(pending.future, timeout=timeout)
        except asyncio.TimeoutError:
            record_code_wait(kind.value, "timeout")
            logger.warning("code_wait_timeout", subject=subject, kind=kind.value)
            raise CodeTimeout(subject, kind.value, timeout) from None
        except CodeWaitCancelled:
            record_code_wait(kind.value, "cancelled")
            raise
        finally:
            await self._release(channel, pending)

        record_code_wait(kind.value, "delivered")
        logger.info("code_received", subject=subject, kind=kind.value)
        return message.code

    async def cancel(self, subject: str, kind: CodeKind) -> bool:
        """Release a subscription that will not be waited on.

        Returns True if there was one. A caller blocked in ``wait_for_code``
        gets CodeWaitCancelled.
        """
        channel = channel_name(subject, kind)
        pending = self._pending.get(channel)
        if pending is None:
            return False
        if pending.request.state == RequestState.WAITING:
            # the waiter's finally releases the slot
            if not pending.future.done():
                pending.future.set_exception(CodeWaitCancelled(subject, kind.value))
        else:
            pending.future.cancel()
            await self._release(channel, pending)
        logger.info("code_subscription_cancelled", subject=subject, kind=kind.value)
        return True

    async def cancel_all(self) -> int:
        """Cancel every outstanding request. Returns how many were released."""
        count = 0
        for request in self.pending_requests():
            if await self.cancel(request.subject, request.kind):
                count += 1
        return count

    @asynccontextmanager
    async def expect(self, subject: str, kind: CodeKind) -> AsyncIterator[CodeRequest]:
        """Subscribe for the duration of a block and release on the way out.

        Usage:
            async with broker.expect(login, CodeKind.SMS):
                await page.submit_credentials(...)
                code = await broker.wait_for_code(login, CodeKind.SMS)
        """
        request = await self.subscribe(subject, kind)
        try:
            yield request
        finally:
            if self._pending.get(channel_name(subject, kind)) is not None:
                await self.cancel(subject, kind)

    def _deliver(self, channel: str, message: CodeMessage) -> int:
        """Resolve the waiter on ``channel``. First code wins."""
        pending = self._pending.get(channel)
        if pending is None or pending.future.done():
            logger.info("code_dropped_no_waiter", channel=channel, kind=message.kind.value)
            return 0
        pending.future.set_result(message)
        return 1

    async def _release(self, channel: str, pending: _Pending) -> None:
        async with self._lock:
            if self._pending.get(channel) is pending:
                del self._pending[channel]
            else:
                return
        set_pending_code_requests(len(self._pending))
        try:
            await self._close_channel(channel)
        except Exception as e:
            logger.warning("code_channel_close_failed", channel=channel, error=str(e))


class InMemoryCodeBroker(CodeBroker):
    """Broker for a single process. Publish resolves the waiter directly."""

    def __init__(self, default_timeout_s: float = 300.0):
        super().__init__(default_timeout_s=default_timeout_s)
        self.announcements: list[CodeMessage] = []

    async def publish(
        self,
        subject: str,
        kind: CodeKind,
        code: str,
        attachment_path: Optional[str] = None,
    ) -> int:
        message = CodeMessage(
            subject=subject, kind=kind, code=code, attachment_path=attachment_path
        )
        delivered = self._deliver(channel_name(subject, kind), message)
        logger.info("code_published", subject=subject, kind=kind.value, subscribers=delivered)
        return delivered

    async def announce_request(
        self, subject: str, kind: CodeKind, attachment_path: Optional[str] = None
    ) -> int:
        self.announcements.append(
            CodeMessage(subject=subject, kind=kind, code="", attachment_path=attachment_path)
        )
        logger.info(
            "code_request_announced",
            subject=subject,
            kind=kind.value,
            attachment_path=attachment_path,
        )
        return 0


def create_code_broker(settings) -> CodeBroker:
    """
    Build the configured broker.

    Raises:
        ValueError: If CODE_BROKER_MODE=redis but REDIS_URL not configured
    """
    if settings.code_broker_mode == "redis":
        if not settings.redis_url:
            raise ValueError(
                "CODE_BROKER_MODE=redis requires REDIS_URL to be set. "
                "Example: redis://localhost:6379/0"
            )
        from extracts.services.codes.redis_broker import RedisCodeBroker

        broker: CodeBroker = RedisCodeBroker(
            redis_url=settings.redis_url,
            default_timeout_s=settings.code_timeout_s,
            subscribe_timeout_s=settings.redis_subscribe_timeout_s,
        )
    else:
        broker = InMemoryCodeBroker(default_timeout_s=settings.code_timeout_s)
    logger.info("code_broker_initialized", mode=settings.code_broker_mode)
    return broker
