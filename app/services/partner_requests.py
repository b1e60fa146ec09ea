import logging
from datetime import timedelta
from typing import AsyncIterator, List, Optional

from sqlalchemy import func, or_, update
from sqlmodel import select

from app.core.clock import Clock, utcnow
from app.core.config import Settings, settings as default_settings
from app.core.db import SessionFactory
from app.core.errors import (
    AlreadyPartnered,
    NotAuthorized,
    NotLoggedIn,
    RequestExpired,
    RequestNoLongerPending,
    RequestNotFound,
    SelfPairing,
    TermTooShort,
    UserNotFound,
)
from app.models.partner_request import PartnerRequest, PartnerRequestStatus
from app.models.user import User
from app.services.partnership import edit_pending_requests, link_partners
from app.services.user_feed import UserFeed

logger = logging.getLogger(__name__)


def _without(request_id: str):
    return lambda ids: [rid for rid in ids if rid != request_id]


class PartnerRequestManager:
    """Search-based pairing: request, then accept or decline."""

    def __init__(
        self,
        sessions: SessionFactory,
        feed: UserFeed,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ):
        self.sessions = sessions
        self.feed = feed
        self.settings = settings
        self.clock = clock

    async def search(self, term: str, excluding_user_id: Optional[int]) -> List[User]:
        term = (term or "").strip().lower()
        if len(term) < self.settings.USER_SEARCH_MIN_LENGTH:
            raise TermTooShort(
                f"Please enter at least {self.settings.USER_SEARCH_MIN_LENGTH} characters to search."
            )

        statement = (
            select(User)
            .where(
                User.partner_id == None,  # noqa: E711
                or_(
                    func.lower(User.display_name).contains(term, autoescape=True),
                    func.lower(User.email).contains(term, autoescape=True),
                ),
            )
            .order_by(User.display_name, User.email)
            .limit(self.settings.USER_SEARCH_LIMIT)
        )
        if excluding_user_id is not None:
            statement = statement.where(User.id != excluding_user_id)

        async with self.sessions() as session:
            return list((await session.exec(statement)).all())

    async def send(self, sender_id: Optional[int], recipient_id: int) -> PartnerRequest:
        if sender_id is None:
            raise NotLoggedIn("You must be logged in to send a partner request.")
        if sender_id == recipient_id:
            raise SelfPairing()

        now = self.clock()
        async with self.sessions() as session:
            sender = await session.get(User, sender_id)
            if not sender:
                raise NotLoggedIn("You must be logged in to send a partner request.")
            recipient = await session.get(User, recipient_id)
            if not recipient:
                raise UserNotFound()
            if sender.partner_id:
                raise AlreadyPartnered()
            if recipient.partner_id:
                raise AlreadyPartnered(f"{recipient.name} is already connected with a partner.")

            existing = (
                await session.exec(
                    select(PartnerRequest).where(
                        PartnerRequest.sender_id == sender.id,
                        PartnerRequest.recipient_id == recipient.id,
                        PartnerRequest.status == PartnerRequestStatus.PENDING,
                        PartnerRequest.expires_at > now,
                    )
                )
            ).first()
            if existing:
                return existing

            request = PartnerRequest(
                sender_id=sender.id,
                sender_name=sender.name,
                recipient_id=recipient.id,
                created_at=now,
                expires_at=now + timedelta(minutes=self.settings.PARTNER_REQUEST_TTL_MINUTES),
            )
            session.add(request)
            await edit_pending_requests(session, recipient.id, lambda ids: [*ids, request.id])
            await session.commit()
            await session.refresh(request)

        logger.info("User %s sent partner request %s to %s", sender_id, request.id, recipient_id)
        return request

    async def accept(self, request_id: str, user_id: Optional[int]) -> User:
        """Accept a request addressed to ``user_id``; returns the new partner (the sender)."""
        if user_id is None:
            raise NotLoggedIn()

        async with self.sessions() as session:
            request = await session.get(PartnerRequest, request_id)
            if not request:
                raise RequestNotFound()
            if request.status != PartnerRequestStatus.PENDING:
                raise RequestNoLongerPending()
            if request.recipient_id != user_id:
                raise NotAuthorized()
            now = self.clock()
            if request.expires_at <= now:
                raise RequestExpired()

            recipient = await session.get(User, user_id)
            sender = await session.get(User, request.sender_id)
            if not recipient:
                raise NotLoggedIn()
            if not sender:
                raise RequestNotFound("The user who sent this request no longer exists.")
            if recipient.partner_id:
                raise AlreadyPartnered()
            if sender.partner_id:
                raise AlreadyPartnered(f"{sender.name} is already connected with a partner.")

            marked = await session.exec(
                update(PartnerRequest)
                .where(
                    PartnerRequest.id == request.id,
                    PartnerRequest.status == PartnerRequestStatus.PENDING,
                )
                .values(status=PartnerRequestStatus.ACCEPTED, responded_at=now)
            )
            if marked.rowcount != 1:
                raise RequestNoLongerPending()

            await edit_pending_requests(session, recipient.id, _without(request.id))
            await link_partners(session, recipient, sender)
            await session.commit()
            await session.refresh(sender)

        logger.info("User %s accepted partner request %s from %s", user_id, request_id, sender.id)
        return sender

    async def decline(self, request_id: str, user_id: Optional[int] = None) -> Optional[PartnerRequest]:
        """Decline (or withdraw) a request. Missing or already settled requests are a no-op."""
        async with self.sessions() as session:
            request = await session.get(PartnerRequest, request_id)
            if not request:
                return None
            if user_id is not None and user_id not in (request.recipient_id, request.sender_id):
                raise NotAuthorized()

            if request.status == PartnerRequestStatus.PENDING:
                request.status = PartnerRequestStatus.DECLINED
                request.responded_at = self.clock()
                session.add(request)

            await edit_pending_requests(session, request.recipient_id, _without(request.id))

            await session.commit()
            await session.refresh(request)

        logger.info("Partner request %s is now %s", request_id, request.status.value)
        return request

    async def list_pending(self, user_id: int) -> List[PartnerRequest]:
        now = self.clock()
        async with self.sessions() as session:
            user = await session.get(User, user_id)
            if not user or not user.pending_requests:
                return []
            requests = (
                await session.exec(
                    select(PartnerRequest)
                    .where(PartnerRequest.id.in_(user.pending_requests))  # type: ignore[attr-defined]
                    .order_by(PartnerRequest.created_at)
                )
            ).all()
        return [request for request in requests if request.is_valid(now)]

    async def watch_pending(self, user_id: int) -> AsyncIterator[List[PartnerRequest]]:
        """Yield the valid pending requests now and after every change to the user record."""
        async with self.feed.watch(user_id) as changes:
            async for _ in changes:
                yield await self.list_pending(user_id)
