"""
Redis Pub/Sub wrapper used for the outbound notification channel and the
inbound command channel.

Notifications are published as NotificationEvent JSON for the chat-bot
bridge; commands arrive on a separate channel and are handed to an async
handler by RedisSubscriber.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import orjson
import redis.asyncio as redis
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from utils.config import settings
from utils.schemas import NotificationEvent

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], Awaitable[None]]


def create_client(redis_url: Optional[str] = None) -> redis.Redis:
    return redis.from_url(
        redis_url or settings.REDIS_URL,
        max_connections=settings.REDIS_MAX_CONNECTIONS,
        decode_responses=False,  # orjson works on bytes
    )


class RedisPublisher:
    """Publishes JSON messages with pooled connections and retries."""

    def __init__(self, redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.client: Optional[redis.Redis] = None

    async def connect(self) -> None:
        if self.client is None:
            self.client = create_client(self.redis_url)

    @retry(
        retry=retry_if_exception_type((redis.RedisError, redis.ConnectionError, redis.TimeoutError)),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=5),
        reraise=True,
    )
    async def publish(self, channel: str, message: dict[str, Any]) -> None:
        """Publish message to a channel, retrying transient Redis errors.

        Raises:
            redis.RedisError: If publishing fails after retries
        """
        if self.client is None:
            await self.connect()
        await self.client.publish(channel, orjson.dumps(message, default=str))

    async def close(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None


class RedisNotificationChannel:
    """Notification channel backed by a Redis channel.

    `send` never raises: a publish that still fails after retries is logged
    and reported as False so collection keeps running.
    """

    def __init__(self, publisher: Optional[RedisPublisher] = None, channel: Optional[str] = None) -> None:
        self.publisher = publisher or RedisPublisher()
        self.channel = channel or settings.REDIS_CHANNEL_NOTIFY
        self.sent = 0
        self.failed = 0

    async def send(self, text: str, metadata: Optional[dict[str, Any]] = None) -> bool:
        event = NotificationEvent(text=text, metadata=dict(metadata or {}))
        try:
            await self.publisher.publish(self.channel, event.model_dump(mode="json"))
        except (redis.RedisError, OSError) as e:
            self.failed += 1
            logger.error(
                "Notification publish failed",
                extra={"channel": self.channel, "error": str(e)},
            )
            return False
        self.sent += 1
        return True

    async def close(self) -> None:
        await self.publisher.close()


class RedisSubscriber:
    """Subscribes to channels and feeds decoded JSON messages to a handler."""

    def __init__(self, channels: list[str], redis_url: Optional[str] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.channels = channels
        self.client: Optional[redis.Redis] = None
        self.pubsub: Optional[redis.client.PubSub] = None
        self._stop_event = asyncio.Event()

    async def connect(self) -> None:
        if self.client is None:
            self.client = create_client(self.redis_url)
        self.pubsub = self.client.pubsub()
        await self.pubsub.subscribe(*self.channels)

    async def subscribe(self, handler: MessageHandler) -> None:
        """Poll until stop() is called, passing (channel, payload) to handler."""
        if self.pubsub is None:
            await self.connect()

        while not self._stop_event.is_set():
            try:
                message = await asyncio.wait_for(
                    self.pubsub.get_message(ignore_subscribe_messages=True),
                    timeout=1.0,
                )
            except asyncio.TimeoutError:
                continue
            except redis.RedisError as e:
                logger.error("Redis error during subscription", extra={"error": str(e)})
                await asyncio.sleep(1)
                continue

            if message and message["type"] == "message":
                try:
                    channel = message["channel"].decode("utf-8")
                    payload = orjson.loads(message["data"])
                except (orjson.JSONDecodeError, UnicodeDecodeError, KeyError) as e:
                    logger.warning(
                        "Failed to decode message, skipping",
                        extra={"error": str(e), "raw_data": message.get("data")},
                    )
                    continue
                await handler(channel, payload)
            else:
                await asyncio.sleep(0.01)

    def stop(self) -> None:
        self._stop_event.set()

    async def close(self) -> None:
        try:
            if self.pubsub:
                await self.pubsub.unsubscribe(*self.channels)
                await self.pubsub.aclose()
                self.pubsub = None
        finally:
            if self.client:
                await self.client.aclose()
                self.client = None
