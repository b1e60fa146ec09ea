import asyncio
import warnings
from pathlib import Path

import pytest

from app.models.user import User
from app.presence.records import connection_key, status_key
from app.presence.store import MemoryPresenceStore
from app.services import reconciler as reconciler_module
from app.services.reconciler import PresenceReconciler, PresenceState, disconnect_notice
from app.services.session import PairingSession
from app.services.user_feed import UserFeed


async def _absent(store, key):
    return await store.get(key) is None


@pytest.fixture
def attach(services):
    async def _attach(user):
        ctx = PairingSession(user.id, user.display_name, clock=services.invite_codes.clock)
        return await services.coordinator.attach(ctx)

    return _attach


def test_disconnect_notice():
    assert disconnect_notice("Bob") == "Bob has disconnected"
    assert disconnect_notice(None) == "Your partner has disconnected"


def test_module_compiles_without_warnings():
    path = Path(reconciler_module.__file__)
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        compile(path.read_text(), str(path), "exec")


async def test_connect_publishes_records(services, store, create_user, attach, eventually):
    ann = await create_user("a@example.com", "Ann")
    ctx = await attach(ann)

    await eventually(lambda: ctx.presence == PresenceState.CONNECTED.value)
    record = await store.get(connection_key(ann.id))
    assert record["partnerId"] is None
    assert record["status"] == "connected"
    assert record["connectionId"] == ctx.reconciler.connection_id
    status = await store.get(status_key(ann.id))
    assert status["isOnline"] is True
    assert ctx.is_online


async def test_tracks_partner_presence(services, store, create_user, link_users, attach, eventually):
    ann = await create_user("a@example.com", "Ann")
    bob = await create_user("b@example.com", "Bob")
    await link_users(ann, bob)

    ctx_a = await attach(ann)
    await eventually(lambda: ctx_a.presence == "connected")
    assert ctx_a.partner.id == bob.id
    assert (await store.get(connection_key(ann.id)))["partnerId"] == bob.id
    await eventually(lambda: ctx_a.partner_online is False)

    ctx_b = await attach(bob)
    await eventually(lambda: ctx_a.partner_online is True)

    await services.coordinator.detach(ctx_b, graceful=True)
    await eventually(lambda: ctx_a.partner_online is False)
    # Partner went offline, the partnership itself is untouched.
    assert ctx_a.partner.id == bob.id
    assert ctx_a.disconnect_message is None


async def test_stale_disconnect_signal_is_ignored(
    services, store, create_user, link_users, load_user, attach, eventually
):
    ann = await create_user("a@example.com", "Ann")
    bob = await create_user("b@example.com", "Bob")
    await link_users(ann, bob)
    ctx_a = await attach(ann)
    await eventually(lambda: ctx_a.presence == "connected")

    await store.set(connection_key(bob.id), {"partnerId": ann.id, "status": "connected"})
    await store.set(connection_key(bob.id), {"partnerId": ann.id, "status": "disconnected"})
    await store.delete(connection_key(bob.id))
    await asyncio.sleep(0.1)

    assert (await load_user(ann.id)).partner_id == bob.id
    assert (await load_user(bob.id)).partner_id == ann.id
    assert ctx_a.partner.id == bob.id
    assert ctx_a.disconnect_message is None
    assert ctx_a.reconciler.partner_id == bob.id


async def test_genuine_disconnect_is_confirmed(
    services, store, sessions, create_user, link_users, load_user, attach, eventually
):
    ann = await create_user("a@example.com", "Ann")
    bob = await create_user("b@example.com", "Bob")
    await link_users(ann, bob)
    ctx_a = await attach(ann)
    await eventually(lambda: ctx_a.presence == "connected")

    await store.set(connection_key(bob.id), {"partnerId": ann.id, "status": "connected"})
    async with sessions() as session:
        row = await session.get(User, bob.id)
        row.partner_id = None
        session.add(row)
        await session.commit()
    await store.delete(connection_key(bob.id))

    await eventually(lambda: ctx_a.disconnect_message == "Bob has disconnected")
    assert ctx_a.partner is None
    assert (await load_user(ann.id)).partner_id is None
    assert ctx_a.reconciler.partner_id is None
    await eventually(lambda: _absent(store, connection_key(ann.id)))
    assert (await store.get(status_key(ann.id)))["isOnline"] is True

    services.coordinator.dismiss_disconnect_message(ctx_a)
    assert ctx_a.disconnect_message is None


async def test_abrupt_drop_applies_hooks(services, store, create_user, attach, eventually):
    ann = await create_user("a@example.com", "Ann")
    ctx = await attach(ann)
    await eventually(lambda: ctx.presence == "connected")
    connection_id = ctx.reconciler.connection_id

    await services.coordinator.detach(ctx, graceful=False)

    assert await store.get(connection_key(ann.id)) is None
    status = await store.get(status_key(ann.id))
    assert status["isOnline"] is False
    assert status["connectionId"] == connection_id
    assert services.hub.for_user(ann.id) == []


async def test_graceful_teardown(services, store, create_user, attach, eventually):
    ann = await create_user("a@example.com", "Ann")
    ctx = await attach(ann)
    await eventually(lambda: ctx.presence == "connected")

    await services.coordinator.detach(ctx, graceful=True)

    assert await store.get(connection_key(ann.id)) is None
    assert (await store.get(status_key(ann.id)))["isOnline"] is False
    assert ctx.presence == PresenceState.DISCONNECTED.value
    assert not ctx.is_online


async def test_reconnects_after_connection_loss(services, store, create_user, attach, eventually):
    ann = await create_user("a@example.com", "Ann")
    ctx = await attach(ann)
    await eventually(lambda: ctx.presence == "connected")
    first = ctx.reconciler.connection_id

    assert await store.drop_connection(first)
    assert (await store.get(status_key(ann.id)))["isOnline"] is False

    await eventually(
        lambda: ctx.reconciler.state == PresenceState.CONNECTED
        and ctx.reconciler.connection_id not in (None, first)
    )
    assert (await store.get(connection_key(ann.id)))["connectionId"] == ctx.reconciler.connection_id
    assert (await store.get(status_key(ann.id)))["isOnline"] is True


async def test_expired_lease_is_swept(services, store, create_user, attach, eventually):
    ann = await create_user("a@example.com", "Ann")
    ctx = await attach(ann)
    await eventually(lambda: ctx.presence == "connected")
    first = ctx.reconciler.connection_id

    assert await store.sweep(now=float("inf")) == [first]
    await eventually(lambda: ctx.reconciler.connection_id not in (None, first))


class BrokenStore(MemoryPresenceStore):
    def __init__(self):
        super().__init__()
        self.attempts = 0

    async def open_connection(self) -> str:
        self.attempts += 1
        raise RuntimeError("presence backend is down")


async def test_setup_failures_are_capped(test_settings, sessions, create_user):
    ann = await create_user("a@example.com", "Ann")
    store = BrokenStore()
    ctx = PairingSession(ann.id, ann.display_name)
    reconciler = PresenceReconciler(
        ctx, store=store, sessions=sessions, feed=UserFeed(store), settings=test_settings
    )

    await asyncio.wait_for(reconciler.start(), 3)

    assert reconciler.state == PresenceState.UNKNOWN
    assert ctx.presence == "unknown"
    assert store.attempts == test_settings.RECONCILER_MAX_SETUP_RETRIES + 1


class SlowHookStore(MemoryPresenceStore):
    """Absorbs a cancellation while registering hooks, like wait_for can."""

    def __init__(self):
        super().__init__()
        self.registering = asyncio.Event()

    async def on_disconnect(self, connection_id, key, value, merge=False):
        self.registering.set()
        try:
            await asyncio.sleep(0.2)
        except asyncio.CancelledError:
            pass
        await super().on_disconnect(connection_id, key, value, merge)


async def test_teardown_finishes_when_cancel_is_absorbed(test_settings, sessions, create_user):
    ann = await create_user("a@example.com", "Ann")
    store = SlowHookStore()
    ctx = PairingSession(ann.id, ann.display_name)
    reconciler = PresenceReconciler(
        ctx, store=store, sessions=sessions, feed=UserFeed(store), settings=test_settings
    )
    reconciler.start()
    await asyncio.wait_for(store.registering.wait(), 3)

    await asyncio.wait_for(reconciler.teardown(), 3)

    assert reconciler.state == PresenceState.DISCONNECTED
    assert reconciler.connection_id is None
    assert await store.get(connection_key(ann.id)) is None
    assert not (await store.get(status_key(ann.id)) or {}).get("isOnline")
    assert await store.expired_connections(now=float("inf")) == []
    assert store._channels == {}


async def test_detach_right_after_attach(services, store, create_user, attach):
    ann = await create_user("a@example.com", "Ann")
    ctx = await attach(ann)

    await asyncio.wait_for(services.coordinator.detach(ctx, graceful=True), 3)

    assert ctx.presence == PresenceState.DISCONNECTED.value
    assert await store.get(connection_key(ann.id)) is None
    assert await store.expired_connections(now=float("inf")) == []
    assert services.hub.for_user(ann.id) == []
