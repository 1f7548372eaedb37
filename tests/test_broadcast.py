import asyncio

import fakeredis.aioredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from app.core.config import get_settings
from app.services.broadcast import (
    MemoryBroadcaster,
    RedisBroadcaster,
    get_broadcaster,
    reset_broadcaster,
)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


@pytest.mark.anyio
async def test_memory_broadcaster_delivers_locally(anyio_backend):
    received = []

    async def deliver(envelope):
        received.append(envelope)

    broadcaster = MemoryBroadcaster()
    await broadcaster.publish({"event": "dropped"})
    await broadcaster.start(deliver)
    await broadcaster.publish({"event": "order_update", "data": {"id": "o1"}})

    assert received == [{"event": "order_update", "data": {"id": "o1"}}]
    assert await broadcaster.health_check() is True
    await broadcaster.stop()
    assert await broadcaster.health_check() is False


@pytest.mark.anyio
async def test_redis_broadcaster_fans_out_between_instances(anyio_backend):
    server = fakeredis.FakeServer()
    first_seen, second_seen = [], []

    async def collect_first(envelope):
        first_seen.append(envelope)

    async def collect_second(envelope):
        second_seen.append(envelope)

    first = RedisBroadcaster(
        channel="orders:test",
        client=fakeredis.aioredis.FakeRedis(server=server, decode_responses=True),
    )
    second = RedisBroadcaster(
        channel="orders:test",
        client=fakeredis.aioredis.FakeRedis(server=server, decode_responses=True),
    )
    await first.start(collect_first)
    await second.start(collect_second)

    envelope = {"event": "order_update", "data": {"id": "o1"}, "rooms": None, "orderId": "o1", "version": 2}
    await first.publish(envelope)

    await wait_for(lambda: first_seen and second_seen)
    assert first_seen == [envelope]
    assert second_seen == [envelope]
    assert await first.health_check() is True

    await first.stop()
    await second.stop()


@pytest.mark.anyio
async def test_redis_listener_skips_malformed_messages(anyio_backend):
    client = fakeredis.aioredis.FakeRedis(decode_responses=True)
    seen = []

    async def collect(envelope):
        seen.append(envelope)

    broadcaster = RedisBroadcaster(channel="orders:test", client=client)
    await broadcaster.start(collect)
    await client.publish("orders:test", "{broken")
    await broadcaster.publish({"event": "ping"})

    await wait_for(lambda: seen)
    assert seen == [{"event": "ping"}]
    await broadcaster.stop()


class DroppingPubSub:
    """Pub/sub wrapper whose ``listen`` fails once ``drop`` is set."""

    def __init__(self, pubsub, drop: asyncio.Event):
        self.pubsub = pubsub
        self.drop = drop

    async def subscribe(self, *channels):
        await self.pubsub.subscribe(*channels)

    async def unsubscribe(self, *channels):
        await self.pubsub.unsubscribe(*channels)

    async def aclose(self):
        await self.pubsub.aclose()

    async def listen(self):
        await self.drop.wait()
        raise RedisConnectionError("Connection closed by server.")
        yield


class FlakyRedis:
    """
    Redis client whose first subscription can be killed on demand.

    ``refuse`` makes every later subscription attempt fail too.
    """

    def __init__(self, client):
        self.client = client
        self.drop = asyncio.Event()
        self.refuse = False
        self.subscriptions = 0

    def pubsub(self):
        self.subscriptions += 1
        if self.subscriptions > 1 and self.refuse:
            raise RedisConnectionError("Connection refused")
        pubsub = self.client.pubsub()
        return DroppingPubSub(pubsub, self.drop) if self.subscriptions == 1 else pubsub

    def __getattr__(self, name):
        return getattr(self.client, name)


@pytest.mark.anyio
async def test_redis_listener_resubscribes_after_connection_loss(anyio_backend):
    client = FlakyRedis(fakeredis.aioredis.FakeRedis(decode_responses=True))
    seen = []

    async def collect(envelope):
        seen.append(envelope)

    broadcaster = RedisBroadcaster(channel="orders:test", client=client, retry_seconds=0.01)
    await broadcaster.start(collect)
    assert await broadcaster.health_check() is True

    client.drop.set()
    await wait_for(lambda: client.subscriptions == 2 and broadcaster.subscribed)

    await broadcaster.publish({"event": "order_update", "data": {"id": "o1"}})
    await wait_for(lambda: seen)
    assert seen == [{"event": "order_update", "data": {"id": "o1"}}]
    assert await broadcaster.health_check() is True
    await broadcaster.stop()


@pytest.mark.anyio
async def test_redis_health_reports_lost_subscription(anyio_backend):
    client = FlakyRedis(fakeredis.aioredis.FakeRedis(decode_responses=True))
    client.refuse = True

    async def ignore(envelope):
        pass

    broadcaster = RedisBroadcaster(channel="orders:test", client=client, retry_seconds=0.01, retry_max_seconds=0.05)
    await broadcaster.start(ignore)
    client.drop.set()

    await wait_for(lambda: client.subscriptions >= 3)
    assert broadcaster.subscribed is False
    assert await broadcaster.health_check() is False
    await broadcaster.stop()


def test_factory_follows_settings(monkeypatch):
    assert isinstance(get_broadcaster(), MemoryBroadcaster)
    assert get_broadcaster() is get_broadcaster()

    monkeypatch.setenv("BROADCAST_BACKEND", "redis")
    get_settings.cache_clear()
    reset_broadcaster()
    try:
        assert isinstance(get_broadcaster(), RedisBroadcaster)
    finally:
        monkeypatch.setenv("BROADCAST_BACKEND", "memory")
        get_settings.cache_clear()
        reset_broadcaster()


def test_auto_backend_uses_redis_outside_development(monkeypatch):
    monkeypatch.setenv("BROADCAST_BACKEND", "auto")
    monkeypatch.setenv("ENV_MODE", "staging")
    get_settings.cache_clear()
    try:
        assert get_settings().use_redis_broadcast is True
    finally:
        monkeypatch.setenv("BROADCAST_BACKEND", "memory")
        monkeypatch.setenv("ENV_MODE", "development")
        get_settings.cache_clear()
