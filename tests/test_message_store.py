import asyncio

import pytest
from fakeredis import aioredis as fake_aioredis

from tripchat.core.config import Settings
from tripchat.services.message_store import InMemoryMessageStore, build_message_store
from tripchat.services.redis_message_store import RedisMessageStore


@pytest.mark.asyncio
async def test_memory_store_assigns_increasing_ids_and_server_timestamps():
    store = InMemoryMessageStore()

    m1 = await store.append("trip-1", "u1", "first", sender_display_name="Una")
    m2 = await store.append("trip-2", "u2", "elsewhere")
    m3 = await store.append("trip-1", "u2", "second")

    assert m1.id < m2.id < m3.id
    assert m1.created_at.tzinfo is not None
    assert m1.sender_display_name == "Una"
    assert [m.body for m in await store.list_since("trip-1")] == ["first", "second"]


@pytest.mark.asyncio
async def test_memory_store_list_since_cursor():
    store = InMemoryMessageStore()
    first = await store.append("trip-1", "u1", "a")
    await store.append("trip-1", "u1", "b")
    await store.append("trip-1", "u1", "c")

    assert [m.body for m in await store.list_since("trip-1", first.id)] == ["b", "c"]
    assert await store.list_since("trip-404") == []


@pytest.mark.asyncio
async def test_memory_store_idempotency_key_scoped_to_sender_and_window():
    store = InMemoryMessageStore(idempotency_window=0.05)

    original = await store.append("trip-1", "u1", "hi", idempotency_key="k")
    again = await store.append("trip-1", "u1", "hi", idempotency_key="k")
    other_sender = await store.append("trip-1", "u2", "hi", idempotency_key="k")

    assert again.id == original.id and again.replayed
    assert other_sender.id != original.id and not other_sender.replayed

    await asyncio.sleep(0.1)
    after_window = await store.append("trip-1", "u1", "hi", idempotency_key="k")
    assert after_window.id != original.id
    assert len(await store.list_since("trip-1")) == 3


@pytest.mark.asyncio
async def test_memory_store_replay_reports_delivery():
    store = InMemoryMessageStore()
    await store.append("trip-1", "u1", "hi", idempotency_key="k")

    before = await store.append("trip-1", "u1", "hi", idempotency_key="k")
    await store.mark_delivered("trip-1", "u1", "k")
    after = await store.append("trip-1", "u1", "hi", idempotency_key="k")

    assert not before.delivered
    assert after.delivered and after.id == before.id


@pytest.mark.asyncio
async def test_memory_store_concurrent_appends_are_distinct():
    store = InMemoryMessageStore()

    messages = await asyncio.gather(*(store.append("trip-1", f"u{i}", "same") for i in range(20)))

    assert len({m.id for m in messages}) == 20
    assert [m.id for m in await store.list_since("trip-1")] == sorted(m.id for m in messages)


def test_build_message_store_from_settings():
    settings = Settings()
    settings.MESSAGE_STORE = "memory"
    assert isinstance(build_message_store(settings), InMemoryMessageStore)

    settings.MESSAGE_STORE = "redis"
    assert isinstance(build_message_store(settings), RedisMessageStore)

    settings.MESSAGE_STORE = "sqlite"
    with pytest.raises(ValueError):
        build_message_store(settings)


# ============================================================================
# REDIS STORE
# ============================================================================

@pytest.fixture
def redis_store():
    return RedisMessageStore(client=fake_aioredis.FakeRedis(decode_responses=True), idempotency_window=60)


@pytest.mark.asyncio
async def test_redis_store_append_and_history(redis_store):
    await redis_store.connect()

    m1 = await redis_store.append("trip-1", "u1", "hello", sender_display_name="Una")
    m2 = await redis_store.append("trip-1", "u2", "hey")
    await redis_store.append("trip-2", "u1", "other room")

    history = await redis_store.list_since("trip-1")
    assert [m.id for m in history] == [m1.id, m2.id]
    assert history[0] == m1
    assert history[0].created_at == m1.created_at
    assert [m.body for m in await redis_store.list_since("trip-1", m1.id)] == ["hey"]


@pytest.mark.asyncio
async def test_redis_store_idempotency_returns_original(redis_store):
    original = await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-9")
    again = await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-9")

    assert again.id == original.id
    assert again.replayed is True
    assert len(await redis_store.list_since("trip-1")) == 1


@pytest.mark.asyncio
async def test_redis_store_releases_claim_when_append_fails(redis_store, monkeypatch):
    async def broken_incr(*args, **kwargs):
        raise ConnectionError("redis went away")

    monkeypatch.setattr(redis_store.client, "incr", broken_incr)
    with pytest.raises(ConnectionError):
        await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-1")
    monkeypatch.undo()

    message = await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-1")
    assert message.replayed is False
    assert len(await redis_store.list_since("trip-1")) == 1


@pytest.mark.asyncio
async def test_redis_store_cancelled_append_releases_short_lived_claim(monkeypatch):
    store = RedisMessageStore(
        client=fake_aioredis.FakeRedis(decode_responses=True), idempotency_window=60, pending_ttl=2
    )
    stalled = asyncio.Event()

    async def stalled_incr(*args, **kwargs):
        stalled.set()
        await asyncio.sleep(10)

    monkeypatch.setattr(store.client, "incr", stalled_incr)
    task = asyncio.create_task(store.append("trip-1", "u1", "hi", idempotency_key="k-2"))
    await stalled.wait()

    claim = store._idem_key("trip-1", "u1", "k-2")
    assert 0 < await store.client.pttl(claim) <= 2000

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert await store.client.exists(claim) == 0
    monkeypatch.undo()

    message = await store.append("trip-1", "u1", "hi", idempotency_key="k-2")
    assert message.replayed is False
    assert len(await store.list_since("trip-1")) == 1


@pytest.mark.asyncio
async def test_redis_store_replay_reports_delivery(redis_store):
    await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-3")

    before = await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-3")
    await redis_store.mark_delivered("trip-1", "u1", "k-3")
    after = await redis_store.append("trip-1", "u1", "hi", idempotency_key="k-3")

    assert before.replayed and not before.delivered
    assert after.replayed and after.delivered
