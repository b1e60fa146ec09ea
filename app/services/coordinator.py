"""
Pairing transitions on behalf of a client session.

Every operation takes the caller's ``PairingSession``. Durable writes go
through the managers (wrapped in the retry policy); afterwards the
coordinator fans the result out to the caller's live sessions, touches the
change feeds so other processes see it, and sends best-effort notifications.
"""

import asyncio
import logging
from typing import List, Optional

from app.core.clock import Clock, utcnow
from app.core.config import Settings, settings as default_settings
from app.core.db import SessionFactory
from app.core.errors import NetworkUnavailable, NotConnected, NotLoggedIn
from app.core.retry import retry_operation
from app.models.invite_code import InviteCode
from app.models.partner_request import PartnerRequest
from app.models.user import User
from app.presence.records import PresenceRecord, connection_key, status_key
from app.presence.store import PresenceStore
from app.services.invite_codes import InviteCodeManager
from app.services.notifications import NotificationType, Notifier
from app.services.partner_requests import PartnerRequestManager
from app.services.partnership import unlink_partners
from app.services.reconciler import PresenceReconciler, PresenceState
from app.services.session import PairingSession, SessionHub
from app.services.user_feed import (
    DISCONNECTED,
    PAIRED,
    PARTNER_DISCONNECTED,
    REQUESTS_CHANGED,
    UserFeed,
)

logger = logging.getLogger(__name__)


class PairingCoordinator:
    def __init__(
        self,
        *,
        sessions: SessionFactory,
        store: PresenceStore,
        hub: SessionHub,
        feed: UserFeed,
        notifier: Notifier,
        invite_codes: InviteCodeManager,
        requests: PartnerRequestManager,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ):
        self.sessions = sessions
        self.store = store
        self.hub = hub
        self.feed = feed
        self.notifier = notifier
        self.invite_codes = invite_codes
        self.requests = requests
        self.settings = settings
        self.clock = clock

    async def _retry(self, operation, description: str):
        return await retry_operation(
            operation,
            max_retries=self.settings.RETRY_MAX_ATTEMPTS,
            initial_delay=self.settings.RETRY_INITIAL_DELAY_SECONDS,
            timeout=self.settings.OPERATION_TIMEOUT_SECONDS,
            description=description,
        )

    @staticmethod
    def _ensure_online(ctx: PairingSession) -> None:
        if not ctx.is_online:
            raise NetworkUnavailable()

    async def _get_user(self, user_id: int) -> Optional[User]:
        async with self.sessions() as session:
            return await session.get(User, user_id)

    async def _current_user(self, ctx: PairingSession) -> User:
        user = await self._retry(lambda: self._get_user(ctx.user_id), "read current user")
        if user is None:
            raise NotLoggedIn()
        return user

    def _sessions_of(self, ctx: PairingSession) -> List[PairingSession]:
        live = self.hub.for_user(ctx.user_id)
        if ctx not in live:
            live.append(ctx)
        return live

    # -- invite codes ---------------------------------------------------------

    async def generate_invite_code(self, ctx: PairingSession) -> InviteCode:
        self._ensure_online(ctx)
        invite = await self._retry(
            lambda: self.invite_codes.generate(ctx.user_id), "generate invite code"
        )
        for live in self._sessions_of(ctx):
            live.set_invite_code(invite)
            live.publish()
        return invite

    async def connect_with_code(self, ctx: PairingSession, code: str) -> User:
        self._ensure_online(ctx)
        issuer = await self._retry(
            lambda: self.invite_codes.redeem(code, ctx.user_id), "redeem invite code"
        )
        await self._after_pairing(ctx, issuer)
        return issuer

    # -- partner requests -----------------------------------------------------

    async def search_users(self, ctx: PairingSession, term: str) -> List[User]:
        self._ensure_online(ctx)
        return await self._retry(lambda: self.requests.search(term, ctx.user_id), "search users")

    async def send_partner_request(self, ctx: PairingSession, recipient_id: int) -> PartnerRequest:
        self._ensure_online(ctx)
        request = await self._retry(
            lambda: self.requests.send(ctx.user_id, recipient_id), "send partner request"
        )
        await self.feed.touch_quietly(recipient_id, REQUESTS_CHANGED)
        await self.notifier.notify_quietly(
            recipient_id,
            NotificationType.PARTNER_REQUEST,
            f"{request.sender_name} wants to connect with you",
            sender_id=ctx.user_id,
            sender_name=request.sender_name,
            requestId=request.id,
        )
        return request

    async def accept_partner_request(self, ctx: PairingSession, request_id: str) -> User:
        self._ensure_online(ctx)
        sender = await self._retry(
            lambda: self.requests.accept(request_id, ctx.user_id), "accept partner request"
        )
        await self._after_pairing(ctx, sender)
        return sender

    async def decline_partner_request(
        self, ctx: PairingSession, request_id: str
    ) -> Optional[PartnerRequest]:
        self._ensure_online(ctx)
        request = await self._retry(
            lambda: self.requests.decline(request_id, ctx.user_id), "decline partner request"
        )
        if request is not None:
            await self.feed.touch_quietly(request.recipient_id, REQUESTS_CHANGED)
        return request

    # -- pairing transitions --------------------------------------------------

    async def _after_pairing(self, ctx: PairingSession, partner: User) -> None:
        uid = ctx.user_id
        await asyncio.gather(
            self.feed.touch_quietly(uid, PAIRED),
            self.feed.touch_quietly(partner.id, PAIRED),
        )

        for live in self._sessions_of(ctx):
            live.set_partner(partner)
            live.set_invite_code(None)
            live.disconnect_message = None
            if live.reconciler is not None:
                try:
                    await live.reconciler.reinitialize()
                except Exception:
                    logger.exception("Could not retarget presence of user %s", uid)
            live.publish()

        me = await self._get_user(uid)
        name = me.name if me else None
        logger.info("Users %s and %s are now partners", uid, partner.id)
        await self.notifier.notify_quietly(
            partner.id,
            NotificationType.PARTNER_CONNECTED,
            f"{name or 'Someone'} connected with you",
            sender_id=uid,
            sender_name=name,
        )

    async def disconnect_partner(self, ctx: PairingSession) -> None:
        self._ensure_online(ctx)
        user = await self._current_user(ctx)
        partner_id = user.partner_id
        if partner_id is None:
            raise NotConnected()
        uid = ctx.user_id
        live_sessions = self._sessions_of(ctx)

        # Stop watching the partner first; the deletes below would otherwise
        # look like the partner leaving us.
        for live in live_sessions:
            if live.reconciler is not None:
                await live.reconciler.reset_partner()

        async def unlink():
            async with self.sessions() as session:
                await unlink_partners(session, uid, partner_id)
                await session.commit()

        operations = [
            self._retry(unlink, f"unlink {uid} from {partner_id}"),
            self.store.delete(connection_key(uid)),
            self.store.delete(connection_key(partner_id)),
            self.notifier.notify_quietly(
                partner_id,
                NotificationType.PARTNER_DISCONNECTED,
                f"{user.name} has disconnected from you",
                sender_id=uid,
                sender_name=user.name,
            ),
        ]
        reconciler = ctx.reconciler
        if reconciler is not None and reconciler.state == PresenceState.CONNECTED:
            presence = PresenceRecord(is_online=True, connection_id=reconciler.connection_id)
            operations.append(self.store.set(status_key(uid), presence.to_store()))

        durable, *ephemeral = await asyncio.gather(*operations, return_exceptions=True)
        if isinstance(durable, BaseException):
            for live in live_sessions:
                if live.reconciler is not None:
                    await live.reconciler.reinitialize()
            raise durable
        for result in ephemeral:
            if isinstance(result, Exception):
                logger.warning("Presence cleanup after disconnect of %s failed: %r", uid, result)

        for live in live_sessions:
            live.set_partner(None)
            live.set_invite_code(None)
            live.disconnect_message = None
            live.publish()

        await asyncio.gather(
            self.feed.touch_quietly(uid, DISCONNECTED),
            self.feed.touch_quietly(partner_id, PARTNER_DISCONNECTED),
        )
        logger.info("User %s disconnected from partner %s", uid, partner_id)

    def dismiss_disconnect_message(self, ctx: PairingSession) -> None:
        for live in self._sessions_of(ctx):
            live.dismiss_disconnect_message()

    # -- live sessions --------------------------------------------------------

    async def attach(self, ctx: PairingSession) -> PairingSession:
        self.hub.register(ctx)
        try:
            ctx.set_invite_code(await self.invite_codes.active_code(ctx.user_id))
        except Exception:
            logger.exception("Could not restore invite code of user %s", ctx.user_id)

        ctx.reconciler = PresenceReconciler(
            ctx,
            store=self.store,
            sessions=self.sessions,
            feed=self.feed,
            settings=self.settings,
            clock=self.clock,
        )
        ctx.reconciler.start()
        ctx.spawn(self._follow_pending_requests(ctx), name=f"pending-requests-{ctx.user_id}")
        logger.info("Attached live session for user %s", ctx.user_id)
        return ctx

    async def detach(self, ctx: PairingSession, graceful: bool = True) -> None:
        self.hub.unregister(ctx)
        if ctx.reconciler is not None:
            if graceful:
                await ctx.reconciler.teardown()
            else:
                await ctx.reconciler.drop()
        await ctx.close()
        logger.info(
            "Detached live session for user %s (%s)",
            ctx.user_id,
            "graceful" if graceful else "abrupt",
        )

    async def _follow_pending_requests(self, ctx: PairingSession) -> None:
        try:
            async for requests in self.requests.watch_pending(ctx.user_id):
                ctx.set_pending_requests(requests)
                ctx.publish()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Pending request watcher for user %s stopped", ctx.user_id)
