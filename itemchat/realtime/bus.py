import logging
from typing import AsyncIterator, Optional, Union

import redis.asyncio as redis
from redis.exceptions import RedisError

from itemchat.core.exceptions import UnavailableError


logger = logging.getLogger(__name__)


def topic_for(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


class NoopBus:
    """Single-process mode: the channel fans out locally and nothing crosses processes."""

    enabled = False

    async def publish(self, channel: str, message: str) -> None:
        return

    async def subscribe(self, channel: str) -> "BusSubscription":
        raise UnavailableError("Realtime bus is not configured", {"channel": channel})

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return


class BusSubscription:

    def __init__(self, pubsub, channel: str) -> None:
        self._pubsub = pubsub
        self._channel = channel
        self._running = True

    async def messages(self) -> AsyncIterator[str]:
        while self._running:
            try:
                msg = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            except RedisError as exc:
                raise UnavailableError("Realtime bus connection lost", {"channel": self._channel}) from exc
            if msg and msg.get("type") == "message":
                data = msg.get("data")
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                yield data

    async def cancel(self) -> None:
        self._running = False
        try:
            await self._pubsub.unsubscribe(self._channel)
            await self._pubsub.aclose()
        except RedisError:
            logger.warning("Failed to unsubscribe from %s cleanly", self._channel)


class RedisBus:

    enabled = True

    def __init__(self, url: str = "", client: Optional[redis.Redis] = None) -> None:
        self._redis = client if client is not None else redis.from_url(url)

    async def publish(self, channel: str, message: str) -> None:
        try:
            await self._redis.publish(channel, message)
        except RedisError as exc:
            raise UnavailableError("Failed to publish to realtime bus", {"channel": channel}) from exc

    async def subscribe(self, channel: str) -> BusSubscription:
        pubsub = self._redis.pubsub()
        try:
            await pubsub.subscribe(channel)
        except RedisError as exc:
            raise UnavailableError("Failed to subscribe to realtime bus", {"channel": channel}) from exc
        return BusSubscription(pubsub, channel)

    async def ping(self) -> bool:
        try:
            return bool(await self._redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._redis.aclose()


Bus = Union[NoopBus, RedisBus]


def create_bus(url: Optional[str]) -> Bus:
    if not url:
        logger.info("REDIS_URL not set, live delivery stays in-process")
        return NoopBus()
    logger.info("Live delivery fans out through Redis")
    return RedisBus(url)
