import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from chat_gateway import (
    FallbackGateway,
    GatewayError,
    GatewayUnavailable,
    InMemoryGateway,
    LocalStoreGateway,
    PersistenceGateway,
    RedisGateway,
    WriteResult,
    create_gateway,
)
from chat_gateway.redis_client import check_connection
from chat_gateway.subscriber import listen_for_changes


class FakePubSub:
    def __init__(self, messages):
        self.messages = messages
        self.channels = []
        self.closed = False

    async def subscribe(self, channel):
        self.channels.append(channel)

    async def listen(self):
        for message in self.messages:
            yield message

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_memory_put_get_returns_copies():
    gateway = InMemoryGateway()
    record = {"id": "u1", "tags": ["a"]}
    assert await gateway.put("users", "u1", record) == WriteResult.STORED

    record["tags"].append("b")
    stored = await gateway.get("users", "u1")
    assert stored == {"id": "u1", "tags": ["a"]}

    stored["tags"].append("c")
    assert (await gateway.get("users", "u1"))["tags"] == ["a"]
    assert await gateway.get("users", "missing") is None


@pytest.mark.asyncio
async def test_memory_query_and_delete():
    gateway = InMemoryGateway()
    for i in range(4):
        await gateway.put("messages", f"m{i}", {"n": i})

    even = await gateway.query("messages", lambda r: r["n"] % 2 == 0)
    assert [r["n"] for r in even] == [0, 2]

    assert await gateway.delete("messages", "m0") is True
    assert await gateway.delete("messages", "m0") is False
    assert len(await gateway.query("messages")) == 3


@pytest.mark.asyncio
async def test_subscribers_see_matching_changes_and_deletions():
    gateway = InMemoryGateway()
    seen = []

    async def on_change(key, value):
        seen.append((key, value))

    subscription = await gateway.subscribe("conversations", lambda r: r.get("room") == "a", on_change)
    await gateway.put("conversations", "c1", {"room": "a"})
    await gateway.put("conversations", "c2", {"room": "b"})
    await gateway.delete("conversations", "c1")

    assert seen == [("c1", {"room": "a"}), ("c1", None)]

    subscription.unsubscribe()
    subscription.unsubscribe()
    await gateway.put("conversations", "c3", {"room": "a"})
    assert len(seen) == 2


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_fail_the_write():
    gateway = InMemoryGateway()

    def broken(key, value):
        raise RuntimeError("boom")

    await gateway.subscribe("users", lambda r: True, broken)
    assert await gateway.put("users", "u1", {"id": "u1"}) == WriteResult.STORED


def test_backends_implement_the_gateway_protocol(tmp_path):
    assert isinstance(InMemoryGateway(), PersistenceGateway)
    assert isinstance(LocalStoreGateway(tmp_path), PersistenceGateway)
    assert isinstance(RedisGateway(client=AsyncMock()), PersistenceGateway)


@pytest.mark.asyncio
async def test_local_store_survives_a_new_instance(tmp_path):
    first = LocalStoreGateway(tmp_path)
    await first.put("users", "u1", {"id": "u1", "username": "alice"})

    second = LocalStoreGateway(tmp_path)
    assert await second.get("users", "u1") == {"id": "u1", "username": "alice"}
    assert (tmp_path / "users.json").exists()


@pytest.mark.asyncio
async def test_local_store_concurrent_puts_keep_every_record(tmp_path):
    gateway = LocalStoreGateway(tmp_path)

    await asyncio.gather(*(gateway.put("messages", f"m{i}", {"n": i}) for i in range(20)))

    stored = await LocalStoreGateway(tmp_path).query("messages")
    assert sorted(r["n"] for r in stored) == list(range(20))


@pytest.mark.asyncio
async def test_local_store_reports_corrupt_collection(tmp_path):
    (tmp_path / "users.json").write_text("{not json", encoding="utf-8")
    gateway = LocalStoreGateway(tmp_path)
    with pytest.raises(GatewayError):
        await gateway.get("users", "u1")


@pytest.mark.asyncio
async def test_fallback_retries_on_local_store(tmp_path):
    primary = RedisGateway(client=AsyncMock())
    primary.redis_client.hset.side_effect = RedisConnectionError("down")
    primary.redis_client.hget.side_effect = RedisConnectionError("down")
    local = LocalStoreGateway(tmp_path)
    gateway = FallbackGateway(primary, local)

    assert await gateway.put("messages", "m1", {"id": "m1"}) == WriteResult.STORED_LOCALLY
    assert await gateway.get("messages", "m1") == {"id": "m1"}
    assert await local.get("messages", "m1") == {"id": "m1"}
    assert gateway.fallback_count == 2


@pytest.mark.asyncio
async def test_fallback_uses_primary_when_healthy():
    primary, local = InMemoryGateway(), InMemoryGateway()
    gateway = FallbackGateway(primary, local)

    assert await gateway.put("users", "u1", {"id": "u1"}) == WriteResult.STORED
    assert await local.get("users", "u1") is None
    assert gateway.fallback_count == 0


@pytest.mark.asyncio
async def test_fallback_raises_when_both_stores_fail(flaky_gateway):
    other = type(flaky_gateway)()
    flaky_gateway.down = True
    other.down = True
    gateway = FallbackGateway(flaky_gateway, other)

    with pytest.raises(GatewayUnavailable):
        await gateway.query("users")


def test_create_gateway_backends(tmp_path):
    assert isinstance(create_gateway("memory"), InMemoryGateway)
    assert isinstance(create_gateway("local", local_path=tmp_path), LocalStoreGateway)

    wrapped = create_gateway("redis", local_path=tmp_path)
    assert isinstance(wrapped, FallbackGateway)
    assert isinstance(wrapped.primary, RedisGateway)
    assert isinstance(wrapped.fallback, LocalStoreGateway)

    assert isinstance(create_gateway("redis", use_fallback=False), RedisGateway)


def test_create_gateway_rejects_unknown_backend():
    with pytest.raises(ValueError):
        create_gateway("firebase")


@pytest.mark.asyncio
async def test_redis_put_stores_json_and_publishes():
    client = AsyncMock()
    gateway = RedisGateway(client=client, prefix="test")

    await gateway.put("users", "u1", {"id": "u1"})

    client.hset.assert_awaited_once_with("test:users", "u1", json.dumps({"id": "u1"}))
    channel, payload = client.publish.await_args.args
    assert channel == "test:users:changes"
    assert json.loads(payload) == {"key": "u1", "value": {"id": "u1"}, "previous": None}


@pytest.mark.asyncio
async def test_redis_get_query_and_delete():
    client = AsyncMock()
    client.hget.return_value = json.dumps({"id": "u1", "n": 1})
    client.hvals.return_value = [json.dumps({"n": 1}), "garbage", json.dumps({"n": 2})]
    gateway = RedisGateway(client=client, prefix="test")

    assert await gateway.get("users", "u1") == {"id": "u1", "n": 1}
    assert await gateway.query("users", lambda r: r["n"] > 1) == [{"n": 2}]

    assert await gateway.delete("users", "u1") is True
    client.hdel.assert_awaited_once_with("test:users", "u1")
    _, payload = client.publish.await_args.args
    assert json.loads(payload)["previous"] == {"id": "u1", "n": 1}


@pytest.mark.asyncio
async def test_redis_errors_become_gateway_errors():
    client = AsyncMock()
    client.hvals.side_effect = RedisConnectionError("refused")
    gateway = RedisGateway(client=client)

    with pytest.raises(GatewayError) as exc_info:
        await gateway.query("users")
    assert exc_info.value.backend == "redis"


@pytest.mark.asyncio
async def test_redis_subscription_dispatches_published_changes():
    pubsub = FakePubSub([
        {"type": "subscribe", "data": 1},
        {"type": "message", "data": json.dumps({"key": "c1", "value": {"room": "a"}, "previous": None})},
        {"type": "message", "data": json.dumps({"key": "c2", "value": {"room": "b"}, "previous": None})},
        {"type": "message", "data": json.dumps({"key": "c1", "value": None, "previous": {"room": "a"}})},
    ])
    client = AsyncMock()
    client.pubsub = MagicMock(return_value=pubsub)
    gateway = RedisGateway(client=client, prefix="test")
    seen = []

    await gateway.subscribe("conversations", lambda r: r["room"] == "a", lambda k, v: seen.append((k, v)))
    await gateway._listeners["conversations"]

    assert pubsub.channels == ["test:conversations:changes"]
    assert seen == [("c1", {"room": "a"}), ("c1", None)]
    assert pubsub.closed


@pytest.mark.asyncio
async def test_listen_for_changes_skips_malformed_payloads():
    pubsub = FakePubSub([
        {"type": "message", "data": "not json", "channel": "x"},
        {"type": "message", "data": json.dumps({"key": "k"})},
    ])
    changes = [change async for change in listen_for_changes(pubsub)]
    assert changes == [{"key": "k"}]


@pytest.mark.asyncio
async def test_check_connection():
    client = AsyncMock()
    assert await check_connection(client) is True

    client.ping.side_effect = RedisConnectionError("refused")
    assert await check_connection(client) is False


@pytest.mark.asyncio
async def test_redis_close_cancels_listeners():
    client = AsyncMock()
    pubsub = FakePubSub([])

    async def never_ending():
        await asyncio.Event().wait()
        yield {}

    pubsub.listen = never_ending
    client.pubsub = MagicMock(return_value=pubsub)
    gateway = RedisGateway(client=client)

    await gateway.subscribe("users", lambda r: True, lambda k, v: None)
    await asyncio.sleep(0)
    await gateway.close()

    assert gateway._listeners == {}
    client.aclose.assert_awaited_once()
