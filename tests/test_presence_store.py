import asyncio
import uuid

import fakeredis
import pytest

from app.core.errors import NetworkUnavailable
from app.presence.records import SERVER_TIMESTAMP, ConnectionRecord, info_key, offline_patch
from app.presence.redis_store import RedisPresenceStore
from app.presence.store import MemoryPresenceStore, apply_patch, resolve_server_values


@pytest.fixture(params=["memory", "redis"])
async def presence_store(request):
    if request.param == "memory":
        store = MemoryPresenceStore(lease_seconds=0.3)
    else:
        store = RedisPresenceStore(
            fakeredis.FakeAsyncRedis(decode_responses=True),
            lease_seconds=0.3,
            namespace=f"test-{uuid.uuid4().hex[:8]}",
        )
    yield store
    await store.close()


def test_resolve_server_values():
    value = {"a": SERVER_TIMESTAMP, "b": {"c": SERVER_TIMESTAMP, "d": 1}, "e": [SERVER_TIMESTAMP]}
    assert resolve_server_values(value, 42) == {"a": 42, "b": {"c": 42, "d": 1}, "e": [42]}


def test_apply_patch():
    assert apply_patch({"a": 1, "b": 2}, {"b": None, "c": 3}) == {"a": 1, "c": 3}
    assert apply_patch({"a": 1}, {"a": None}) is None
    assert apply_patch(None, {"a": 1}) == {"a": 1}


async def test_set_get_update_delete(presence_store):
    await presence_store.set("status/1", {"isOnline": True, "lastOnline": SERVER_TIMESTAMP})
    value = await presence_store.get("status/1")
    assert value["isOnline"] is True
    assert isinstance(value["lastOnline"], int)

    await presence_store.update("status/1", {"isOnline": False, "extra": None})
    assert (await presence_store.get("status/1"))["isOnline"] is False

    await presence_store.update("status/1", {"isOnline": None, "lastOnline": None})
    assert await presence_store.get("status/1") is None

    await presence_store.set("status/1", {"isOnline": True})
    await presence_store.delete("status/1")
    assert await presence_store.get("status/1") is None


async def test_record_round_trip(presence_store):
    record = ConnectionRecord(partner_id=7, connection_id="c1")
    await presence_store.set("connections/1", record.to_store())
    loaded = ConnectionRecord.from_store(await presence_store.get("connections/1"))
    assert loaded.partner_id == 7
    assert not loaded.is_disconnected
    assert isinstance(loaded.last_active, int)
    assert ConnectionRecord.from_store(None) is None


async def test_watch_delivers_current_value_then_changes(presence_store):
    await presence_store.set("connections/2", {"status": "connected"})
    async with presence_store.watch("connections/2") as updates:
        assert await asyncio.wait_for(updates.__anext__(), 2) == {"status": "connected"}

        await presence_store.update("connections/2", {"status": "disconnected"})
        assert (await asyncio.wait_for(updates.__anext__(), 2))["status"] == "disconnected"

        await presence_store.delete("connections/2")
        assert await asyncio.wait_for(updates.__anext__(), 2) is None


async def test_watch_absent_key(presence_store):
    async with presence_store.watch("connections/3") as updates:
        assert await asyncio.wait_for(updates.__anext__(), 2) is None


async def test_drop_connection_applies_hooks(presence_store):
    connection_id = await presence_store.open_connection()
    assert await presence_store.get(info_key(connection_id)) == {"connected": True}

    await presence_store.set("connections/1", {"status": "connected"})
    await presence_store.set("status/1", {"isOnline": True, "connectionId": connection_id})
    await presence_store.on_disconnect(connection_id, "connections/1", None)
    await presence_store.on_disconnect(connection_id, "status/1", offline_patch(), merge=True)

    assert await presence_store.drop_connection(connection_id)
    assert await presence_store.get("connections/1") is None
    status = await presence_store.get("status/1")
    assert status["isOnline"] is False
    assert status["connectionId"] == connection_id
    assert isinstance(status["lastOnline"], int)
    assert await presence_store.get(info_key(connection_id)) is None

    assert not await presence_store.drop_connection(connection_id)


async def test_close_connection_discards_hooks(presence_store):
    connection_id = await presence_store.open_connection()
    await presence_store.set("connections/1", {"status": "connected"})
    await presence_store.on_disconnect(connection_id, "connections/1", None)

    await presence_store.close_connection(connection_id)
    assert await presence_store.get("connections/1") == {"status": "connected"}
    assert await presence_store.get(info_key(connection_id)) is None
    assert not await presence_store.drop_connection(connection_id)


async def test_cancel_on_disconnect(presence_store):
    connection_id = await presence_store.open_connection()
    await presence_store.set("connections/1", {"status": "connected"})
    await presence_store.on_disconnect(connection_id, "connections/1", None)
    await presence_store.cancel_on_disconnect(connection_id)

    assert await presence_store.drop_connection(connection_id)
    assert await presence_store.get("connections/1") == {"status": "connected"}


async def test_hooks_need_a_live_connection(presence_store):
    with pytest.raises(NetworkUnavailable):
        await presence_store.on_disconnect("nope", "connections/1", None)


async def test_sweep_drops_expired_leases(presence_store):
    stale = await presence_store.open_connection()
    live = await presence_store.open_connection()
    await presence_store.set("connections/1", {"status": "connected"})
    await presence_store.on_disconnect(stale, "connections/1", None)

    await asyncio.sleep(0.2)
    assert await presence_store.heartbeat(live)
    await asyncio.sleep(0.2)

    assert await presence_store.sweep() == [stale]
    assert await presence_store.get("connections/1") is None
    assert await presence_store.get(info_key(live)) == {"connected": True}
    assert await presence_store.heartbeat(live)


async def test_memory_sweep_uses_monotonic_clock():
    now = [100.0]
    store = MemoryPresenceStore(lease_seconds=30, monotonic=lambda: now[0])
    connection_id = await store.open_connection()

    assert await store.sweep() == []
    now[0] += 31
    assert await store.sweep() == [connection_id]
    assert not await store.heartbeat(connection_id)


async def test_memory_watch_releases_idle_channels():
    store = MemoryPresenceStore()
    for _ in range(20):
        connection_id = await store.open_connection()
        async with store.watch(info_key(connection_id)) as updates:
            assert await asyncio.wait_for(updates.__anext__(), 1) == {"connected": True}
        await store.close_connection(connection_id)

    async with store.watch("status/1"):
        async with store.watch("status/1"):
            pass
        assert "status/1" in store._channels
    assert store._channels == {}
