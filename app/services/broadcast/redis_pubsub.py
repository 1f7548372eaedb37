"""
Redis Pub/Sub Broadcaster

Used in staging and production, where several instances sit behind a
load balancer. Every envelope is published as JSON on one channel; each
instance runs a listener task that feeds its own session manager.

A lost subscription is retried with exponential backoff for as long as
the broadcaster runs. While it is down the instance delivers nothing, so
``health_check`` reports it unhealthy.
"""

import asyncio
import json
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import get_settings
from app.services.broadcast.base import BaseBroadcaster, Deliver, Envelope

logger = logging.getLogger(__name__)


class RedisBroadcaster(BaseBroadcaster):
    """
    Fan-out through a Redis channel.

    Attributes:
        channel: Pub/sub channel name (``BROADCAST_CHANNEL``)
        client: ``redis.asyncio`` client, injectable for tests
        retry_seconds: First resubscribe delay, doubled per failure
        retry_max_seconds: Cap of the resubscribe delay
    """

    def __init__(
        self,
        url: Optional[str] = None,
        channel: Optional[str] = None,
        client: Optional[redis.Redis] = None,
        retry_seconds: Optional[float] = None,
        retry_max_seconds: Optional[float] = None,
    ):
        settings = get_settings()
        self.channel = channel or settings.broadcast_channel
        self.client = client or redis.from_url(url or settings.redis_url, decode_responses=True)
        self.retry_seconds = retry_seconds or settings.broadcast_retry_seconds
        self.retry_max_seconds = retry_max_seconds or settings.broadcast_retry_max_seconds
        self.subscribed = False
        self._pubsub = None
        self._listener: Optional[asyncio.Task] = None
        self._deliver: Optional[Deliver] = None

    @property
    def provider_name(self) -> str:
        return "redis"

    async def start(self, deliver: Deliver) -> None:
        self._deliver = deliver
        await self._subscribe()
        self._listener = asyncio.create_task(self._listen())
        logger.info(f"Redis broadcaster listening on {self.channel}")

    async def _subscribe(self) -> None:
        self._pubsub = self.client.pubsub()
        await self._pubsub.subscribe(self.channel)
        self.subscribed = True

    async def _drop_subscription(self) -> None:
        self.subscribed = False
        pubsub, self._pubsub = self._pubsub, None
        if pubsub is None:
            return
        try:
            await pubsub.aclose()
        except RedisError as e:
            logger.debug(f"Closing dead subscription on {self.channel}: {e}")

    async def _listen(self) -> None:
        delay = self.retry_seconds
        while True:
            try:
                if self._pubsub is None:
                    await self._subscribe()
                    logger.info(f"Resubscribed to {self.channel}")
                delay = self.retry_seconds
                await self._pump()
                logger.warning(f"Subscription to {self.channel} ended")
            except RedisError as e:
                logger.error(f"Redis listener on {self.channel} lost: {e}, retrying in {delay}s")

            await self._drop_subscription()
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.retry_max_seconds)

    async def _pump(self) -> None:
        async for message in self._pubsub.listen():
            if message["type"] != "message":
                continue
            try:
                envelope = json.loads(message["data"])
            except (TypeError, json.JSONDecodeError):
                logger.warning(f"Ignoring malformed envelope on {self.channel}")
                continue
            await self._deliver(envelope)

    async def publish(self, envelope: Envelope) -> None:
        await self.client.publish(self.channel, json.dumps(envelope))

    async def stop(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None
        if self._pubsub is not None:
            try:
                await self._pubsub.unsubscribe(self.channel)
            except RedisError as e:
                logger.warning(f"Unsubscribe from {self.channel} failed: {e}")
            await self._drop_subscription()
        self.subscribed = False
        await self.client.aclose()
        logger.info("Redis broadcaster stopped")

    async def health_check(self) -> bool:
        if self._listener is None or self._listener.done() or not self.subscribed:
            return False
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return False
