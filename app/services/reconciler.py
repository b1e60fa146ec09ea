"""
Presence & disconnect reconciliation for one live session.

The reconciler owns the session's presence connection. Once the store reports
the connection active it registers on-disconnect hooks, publishes the user's
Connection and Presence records, and (when partnered) watches the partner's
records. A vanished partner Connection Record is only a hint: the partner's
durable record is re-read, and the partnership is torn down only if that
record no longer points back at this user.

    checking -> connected <-> disconnected
    checking -> unknown  (setup kept failing; the session runs without presence)
"""

import asyncio
import enum
import logging
from typing import List, Optional

from app.core.channels import cancel_and_wait
from app.core.clock import Clock, utcnow
from app.core.config import Settings, settings as default_settings
from app.core.db import SessionFactory
from app.core.errors import NotLoggedIn, PairingError
from app.core.retry import retry_on_transient, retry_operation
from app.models.user import User
from app.presence.records import (
    ConnectionRecord,
    PresenceRecord,
    connection_key,
    info_key,
    offline_patch,
    status_key,
)
from app.presence.store import PresenceStore
from app.services.partnership import unlink_partners
from app.services.session import PairingSession
from app.services.user_feed import PARTNER_DISCONNECTED, UserFeed

logger = logging.getLogger(__name__)


class PresenceState(str, enum.Enum):
    CHECKING = "checking"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


def disconnect_notice(partner_name: Optional[str]) -> str:
    if partner_name:
        return f"{partner_name} has disconnected"
    return "Your partner has disconnected"


class PresenceReconciler:
    def __init__(
        self,
        ctx: PairingSession,
        *,
        store: PresenceStore,
        sessions: SessionFactory,
        feed: UserFeed,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ):
        self.ctx = ctx
        self.store = store
        self.sessions = sessions
        self.feed = feed
        self.settings = settings
        self.clock = clock

        self.state = PresenceState.CHECKING
        self.connection_id: Optional[str] = None
        self.partner_id: Optional[int] = None

        self._runner: Optional[asyncio.Task] = None
        self._session_tasks: List[asyncio.Task] = []
        self._partner_tasks: List[asyncio.Task] = []
        self._lock = asyncio.Lock()
        self._failures = 0
        self._closing = False

    @property
    def user_id(self) -> int:
        return self.ctx.user_id

    def _set_state(self, state: PresenceState) -> None:
        self.state = state
        self.ctx.presence = state.value
        self.ctx.publish()

    async def _retry(self, operation, description: str):
        return await retry_operation(
            operation,
            max_retries=self.settings.RETRY_MAX_ATTEMPTS,
            initial_delay=self.settings.RETRY_INITIAL_DELAY_SECONDS,
            timeout=self.settings.OPERATION_TIMEOUT_SECONDS,
            description=description,
        )

    async def _presence(self, operation, description: str):
        return await retry_on_transient(
            operation,
            attempts=self.settings.PRESENCE_RETRY_ATTEMPTS,
            delay=self.settings.PRESENCE_RETRY_DELAY_SECONDS,
            timeout=self.settings.OPERATION_TIMEOUT_SECONDS,
            description=description,
        )

    async def _read_user(self, user_id: int) -> Optional[User]:
        async def read():
            async with self.sessions() as session:
                return await session.get(User, user_id)

        return await self._retry(read, f"read user {user_id}")

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> asyncio.Task:
        self._closing = False
        self._runner = asyncio.create_task(self._run(), name=f"presence-{self.user_id}")
        return self._runner

    async def _run(self) -> None:
        while not self._closing:
            try:
                await self._establish()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._failures += 1
                logger.exception(
                    "Presence setup for user %s failed (attempt %d)", self.user_id, self._failures
                )
                await self._stop_listeners()
                await self._release_connection()
                if self._failures > self.settings.RECONCILER_MAX_SETUP_RETRIES:
                    logger.error(
                        "Giving up on presence for user %s after %d attempts",
                        self.user_id,
                        self._failures,
                    )
                    self._set_state(PresenceState.UNKNOWN)
                    return
            if self._closing:
                return
            await asyncio.sleep(self.settings.RECONCILER_SETUP_RETRY_DELAY_SECONDS)

    async def _establish(self) -> None:
        self._set_state(PresenceState.CHECKING)
        self.connection_id = await self._presence(
            self.store.open_connection, "open presence connection"
        )
        if self._closing:
            return
        async with self.store.watch(info_key(self.connection_id)) as connected:
            async for value in connected:
                if self._closing:
                    return
                if value:
                    if self.state != PresenceState.CONNECTED:
                        await self._on_connected()
                        if self._closing:
                            return
                else:
                    await self._on_connection_lost()
                    return

    async def _on_connected(self) -> None:
        uid, conn = self.user_id, self.connection_id

        # Hooks first, so a drop right after the writes below still cleans up.
        await self._presence(
            lambda: self.store.on_disconnect(conn, connection_key(uid), None),
            "register connection hook",
        )
        await self._presence(
            lambda: self.store.on_disconnect(conn, status_key(uid), offline_patch(), merge=True),
            "register presence hook",
        )

        user = await self._read_user(uid)
        if user is None:
            raise NotLoggedIn()
        if self._closing:
            return

        connection = ConnectionRecord(partner_id=user.partner_id, connection_id=conn)
        presence = PresenceRecord(is_online=True, connection_id=conn)
        await self._presence(
            lambda: self.store.set(connection_key(uid), connection.to_store()),
            "write connection record",
        )
        await self._presence(
            lambda: self.store.set(status_key(uid), presence.to_store()),
            "write presence record",
        )
        if self._closing:
            return

        self._failures = 0
        self.ctx.is_online = True
        self.ctx.display_name = user.display_name
        self._session_tasks = [
            asyncio.create_task(self._keepalive(conn), name=f"heartbeat-{uid}"),
            asyncio.create_task(self._follow_user_feed(), name=f"user-feed-{uid}"),
        ]
        async with self._lock:
            await self._sync_partner(user, reason=None)
        logger.info("User %s connected (connection %s, partner %s)", uid, conn, user.partner_id)
        self._set_state(PresenceState.CONNECTED)

    async def _on_connection_lost(self) -> None:
        logger.warning("Presence connection %s of user %s was lost", self.connection_id, self.user_id)
        await self._stop_listeners()
        self.connection_id = None
        self.ctx.is_online = False
        self._set_state(PresenceState.DISCONNECTED)

    async def _keepalive(self, connection_id: str) -> None:
        interval = max(self.store.lease_seconds / 3, 0.01)
        while True:
            await asyncio.sleep(interval)
            try:
                alive = await self.store.heartbeat(connection_id)
            except Exception as exc:
                logger.warning("Heartbeat for %s failed: %r", connection_id, exc)
                continue
            if not alive:
                logger.warning("Lease %s expired before heartbeat", connection_id)
                return

    async def _follow_user_feed(self) -> None:
        async with self.feed.watch(self.user_id) as changes:
            async for change in changes:
                if change is None:
                    continue
                try:
                    user = await self._read_user(self.user_id)
                except PairingError as exc:
                    logger.warning("Could not refresh user %s: %s", self.user_id, exc)
                    continue
                if user is None:
                    continue
                async with self._lock:
                    await self._sync_partner(user, reason=change.get("reason"))

    async def reinitialize(self) -> None:
        """Re-read the durable record and retarget partner tracking."""
        if self.state != PresenceState.CONNECTED:
            return
        user = await self._read_user(self.user_id)
        if user is None:
            return
        async with self._lock:
            await self._sync_partner(user, reason=None)

    async def reset_partner(self) -> None:
        """Stop tracking the partner locally and republish an unpartnered connection."""
        async with self._lock:
            await self._stop_partner_tracking()
            self.ctx.set_partner(None)
            await self._write_connection_record(None)
        self.ctx.publish()

    async def teardown(self) -> None:
        """Graceful shutdown: cancel hooks and remove our records ourselves."""
        self._closing = True
        await self._cancel_runner()
        await self._stop_listeners()
        await self._release_connection()
        self.ctx.is_online = False
        self._set_state(PresenceState.DISCONNECTED)

    async def drop(self) -> None:
        """Abrupt shutdown: let the store apply the on-disconnect hooks."""
        self._closing = True
        await self._cancel_runner()
        await self._stop_listeners()
        connection_id, self.connection_id = self.connection_id, None
        if connection_id is None:
            return
        try:
            await self.store.drop_connection(connection_id)
        except Exception:
            logger.exception("Could not drop presence connection %s", connection_id)

    async def _cancel_runner(self) -> None:
        runner = self._runner
        if runner is None or runner is asyncio.current_task():
            return
        await cancel_and_wait([runner])
        self._runner = None

    async def _release_connection(self) -> None:
        connection_id, self.connection_id = self.connection_id, None
        if connection_id is None:
            return
        uid = self.user_id
        try:
            await self.store.cancel_on_disconnect(connection_id)
        except Exception:
            logger.exception("Could not cancel on-disconnect hooks of %s", connection_id)
        results = await asyncio.gather(
            self.store.delete(connection_key(uid)),
            self.store.update(status_key(uid), offline_patch()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Presence cleanup for user %s failed: %r", uid, result)
        try:
            await self.store.close_connection(connection_id)
        except Exception:
            logger.exception("Could not close presence connection %s", connection_id)

    async def _stop_listeners(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._session_tasks + self._partner_tasks if t is not current]
        await cancel_and_wait(tasks)
        self._session_tasks = []
        self._partner_tasks = []
        self.partner_id = None

    # -- partner tracking (callers hold self._lock) ---------------------------

    async def _sync_partner(self, user: User, reason: Optional[str]) -> None:
        new_partner_id = user.partner_id
        if new_partner_id == self.partner_id:
            if new_partner_id is None and self.ctx.partner is not None:
                self.ctx.set_partner(None)
                self.ctx.publish()
            return

        previous_id = self.partner_id
        previous_name = self._partner_name()
        await self._stop_partner_tracking()

        if new_partner_id is None:
            self.ctx.set_partner(None)
            if previous_id is not None and reason == PARTNER_DISCONNECTED:
                self.ctx.disconnect_message = disconnect_notice(previous_name)
            logger.info("User %s is no longer tracking partner %s", self.user_id, previous_id)
        else:
            partner = await self._read_user(new_partner_id)
            self.ctx.set_partner(partner)
            self.ctx.set_invite_code(None)
            self.ctx.disconnect_message = None
            self.partner_id = new_partner_id
            self._start_partner_tracking(new_partner_id)
            logger.info("User %s is now tracking partner %s", self.user_id, new_partner_id)

        await self._write_connection_record(new_partner_id)
        self.ctx.publish()

    def _partner_name(self) -> Optional[str]:
        partner = self.ctx.partner
        if partner is None:
            return None
        return partner.display_name or partner.email

    async def _write_connection_record(self, partner_id: Optional[int]) -> None:
        connection_id = self.connection_id
        if connection_id is None:
            return
        record = ConnectionRecord(partner_id=partner_id, connection_id=connection_id)
        try:
            await self._presence(
                lambda: self.store.set(connection_key(self.user_id), record.to_store()),
                "write connection record",
            )
        except Exception:
            logger.exception("Could not refresh connection record of user %s", self.user_id)

    def _start_partner_tracking(self, partner_id: int) -> None:
        self._partner_tasks = [
            asyncio.create_task(
                self._watch_partner_status(partner_id), name=f"partner-status-{partner_id}"
            ),
            asyncio.create_task(
                self._watch_partner_connection(partner_id), name=f"partner-connection-{partner_id}"
            ),
        ]

    async def _stop_partner_tracking(self) -> None:
        current = asyncio.current_task()
        tasks = [t for t in self._partner_tasks if t is not current]
        await cancel_and_wait(tasks)
        self._partner_tasks = []
        self.partner_id = None

    async def _watch_partner_status(self, partner_id: int) -> None:
        async with self.store.watch(status_key(partner_id)) as updates:
            async for value in updates:
                online = bool(value and value.get("isOnline"))
                if online != self.ctx.partner_online:
                    logger.debug("Partner %s is %s", partner_id, "online" if online else "offline")
                self.ctx.partner_online = online
                self.ctx.publish()

    async def _watch_partner_connection(self, partner_id: int) -> None:
        async with self.store.watch(connection_key(partner_id)) as updates:
            async for value in updates:
                record = ConnectionRecord.from_store(value)
                if record is not None and not record.is_disconnected:
                    continue
                try:
                    if await self._confirm_partner_disconnect(partner_id):
                        return
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("Could not verify disconnect of partner %s", partner_id)

    async def _confirm_partner_disconnect(self, partner_id: int) -> bool:
        """
        Decide whether a vanished partner connection means the partnership ended.

        Returns True when tracking of ``partner_id`` is over (genuine departure,
        or we already moved on), False when the signal was stale.
        """
        uid = self.user_id
        async with self._lock:
            if self.partner_id != partner_id:
                return True

            partner = await self._read_user(partner_id)
            if partner is not None and partner.partner_id == uid:
                logger.info(
                    "Connection record of partner %s is gone but the partnership with %s "
                    "is intact; ignoring",
                    partner_id,
                    uid,
                )
                return False

            logger.info("Partner %s has left user %s; ending the partnership", partner_id, uid)

            async def unlink():
                async with self.sessions() as session:
                    await unlink_partners(session, uid, partner_id)
                    await session.commit()

            await self._retry(unlink, f"unlink {uid} from {partner_id}")
            name = self._partner_name()
            await self._stop_partner_tracking()
            self.ctx.set_partner(None)
            self.ctx.disconnect_message = disconnect_notice(name)

        await self._reset_own_records()
        await self.feed.touch_quietly(uid, PARTNER_DISCONNECTED)
        self.ctx.publish()
        return True

    async def _reset_own_records(self) -> None:
        uid = self.user_id
        presence = PresenceRecord(is_online=True, connection_id=self.connection_id)
        results = await asyncio.gather(
            self.store.delete(connection_key(uid)),
            self.store.set(status_key(uid), presence.to_store()),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("Presence reset for user %s failed: %r", uid, result)
