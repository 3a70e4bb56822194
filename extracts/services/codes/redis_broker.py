"""Redis Pub/Sub code broker for separate API and worker processes.

Channel pattern: codes:<sanitized subject>:<kind>

The worker subscribes and waits for Redis to confirm the SUBSCRIBE before
``subscribe`` returns. The API side checks PUBSUB NUMSUB first and does not
publish at all when nobody is listening.
"""

import asyncio
from typing import Optional

import structlog
from redis.exceptions import RedisError

from extracts.errors import BrokerUnavailable
from extracts.services.codes.broker import (
    REQUESTS_CHANNEL,
    CodeBroker,
    CodeKind,
    CodeMessage,
    channel_name,
)

logger = structlog.get_logger(__name__)


class RedisCodeBroker(CodeBroker):
    """
    Redis Pub/Sub code broker.

    One PubSub connection per process, read by a single background task that
    resolves subscribe confirmations and dispatches code messages to waiters.
    """

    def __init__(
        self,
        redis_url: str,
        default_timeout_s: float = 300.0,
        subscribe_timeout_s: float = 5.0,
    ):
        """
        Initialize Redis code broker.

        Args:
            redis_url: Redis connection URL (redis://host:port/db or rediss://...)
            default_timeout_s: Code wait timeout when the caller passes none
            subscribe_timeout_s: Max wait for a SUBSCRIBE confirmation
        """
        super().__init__(default_timeout_s=default_timeout_s)
        self._redis_url = redis_url
        self._subscribe_timeout_s = subscribe_timeout_s
        self._redis: "redis.asyncio.Redis | None" = None
        self._pubsub = None
        self._reader: Optional[asyncio.Task] = None
        self._acks: dict[str, asyncio.Future] = {}

    async def _get_redis(self) -> "redis.asyncio.Redis":
        """Get or create Redis connection."""
        if self._redis is None:
            import redis.asyncio as redis_async

            self._redis = redis_async.from_url(
                self._redis_url,
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_keepalive=True,
            )
            await self._redis.ping()
            logger.info("redis_code_broker_connected", url=self._redis_url[:30] + "...")
        return self._redis

    async def _get_pubsub(self):
        if self._pubsub is None:
            redis = await self._get_redis()
            self._pubsub = redis.pubsub()
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop(), name="code-broker-reader")
        return self._pubsub

    async def _open_channel(self, channel: str) -> None:
        pubsub = await self._get_pubsub()
        ack = asyncio.get_running_loop().create_future()
        self._acks[channel] = ack
        try:
            await pubsub.subscribe(channel)
            await asyncio.wait_for(ack, timeout=self._subscribe_timeout_s)
        except asyncio.TimeoutError:
            await self._safe_unsubscribe(channel)
            raise BrokerUnavailable(
                f"Redis did not confirm subscription to {channel} "
                f"within {self._subscribe_timeout_s:g}s"
            ) from None
        finally:
            self._acks.pop(channel, None)
        logger.debug("redis_channel_subscribed", channel=channel)

    async def _close_channel(self, channel: str) -> None:
        if self._pubsub is not None:
            await self._pubsub.unsubscribe(channel)
            logger.debug("redis_channel_unsubscribed", channel=channel)

    async def _safe_unsubscribe(self, channel: str) -> None:
        try:
            await self._close_channel(channel)
        except Exception as e:
            logger.warning("redis_unsubscribe_failed", channel=channel, error=str(e))

    async def _read_loop(self) -> None:
        """Dispatch PubSub traffic until closed."""
        while self._pubsub is not None:
            try:
                if not self._pubsub.subscribed:
                    await asyncio.sleep(0.05)
                    continue
                message = await self._pubsub.get_message(timeout=1.0)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error("redis_code_reader_error", error=str(e))
                await asyncio.sleep(1.0)
                continue

            if message is None:
                continue
            self._handle(message)

    def _handle(self, message: dict) -> None:
        channel = message.get("channel")
        kind = message.get("type")

        if kind == "subscribe":
            ack = self._acks.get(channel)
            if ack is not None and not ack.done():
                ack.set_result(True)
            return

        if kind != "message":
            return

        try:
            code_message = CodeMessage.from_json(message["data"])
        except (ValueError, KeyError) as e:
            logger.warning("redis_code_message_invalid", channel=channel, error=str(e))
            return
        self._deliver(channel, code_message)

    async def publish(
        self,
        subject: str,
        kind: CodeKind,
        code: str,
        attachment_path: Optional[str] = None,
    ) -> int:
        channel = channel_name(subject, kind)
        message = CodeMessage(
            subject=subject, kind=kind, code=code, attachment_path=attachment_path
        )
        try:
            redis = await self._get_redis()
            numsub = await redis.pubsub_numsub(channel)
            subscribers = numsub[0][1] if numsub else 0
            if subscribers == 0:
                logger.warning(
                    "code_not_published_no_subscribers", subject=subject, kind=kind.value
                )
                return 0
            receivers = await redis.publish(channel, message.to_json())
        except RedisError as e:
            raise BrokerUnavailable(f"Redis publish to {channel} failed: {e}") from e
        logger.info("code_published", subject=subject, kind=kind.value, subscribers=receivers)
        return receivers

    async def announce_request(
        self, subject: str, kind: CodeKind, attachment_path: Optional[str] = None
    ) -> int:
        redis = await self._get_redis()
        message = CodeMessage(
            subject=subject, kind=kind, code="", attachment_path=attachment_path
        )
        receivers = await redis.publish(REQUESTS_CHANNEL, message.to_json())
        logger.info(
            "code_request_announced",
            subject=subject,
            kind=kind.value,
            attachment_path=attachment_path,
            listeners=receivers,
        )
        return receivers

    async def ping(self) -> bool:
        try:
            redis = await self._get_redis()
            return bool(await redis.ping())
        except RedisError as e:
            logger.warning("redis_code_broker_ping_failed", error=str(e))
            return False

    async def close(self) -> None:
        """Cancel pending waits, stop the reader and close connections."""
        await super().close()

        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None

        if self._pubsub is not None:
            pubsub, self._pubsub = self._pubsub, None
            await pubsub.aclose()

        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
            logger.info("redis_code_broker_closed")
