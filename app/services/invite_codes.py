import logging
import secrets
import string
from datetime import timedelta
from typing import Optional

from sqlalchemy import delete, or_, update
from sqlmodel import select

from app.core.clock import Clock, utcnow
from app.core.config import Settings, settings as default_settings
from app.core.db import SessionFactory
from app.core.errors import (
    AlreadyPartnered,
    InvalidOrExpiredCode,
    NotLoggedIn,
    SelfPairing,
)
from app.models.invite_code import InviteCode
from app.models.user import User
from app.services.partnership import link_partners

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits


def generate_code(length=6):
    return ''.join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def normalize_code(code: Optional[str]) -> str:
    return (code or "").strip().upper()


class InviteCodeManager:
    """Issues and redeems single-use, time-boxed invite codes."""

    def __init__(
        self,
        sessions: SessionFactory,
        settings: Settings = default_settings,
        clock: Clock = utcnow,
    ):
        self.sessions = sessions
        self.settings = settings
        self.clock = clock

    @property
    def ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.INVITE_CODE_TTL_MINUTES)

    @property
    def grace(self) -> timedelta:
        return timedelta(seconds=self.settings.INVITE_CODE_GRACE_SECONDS)

    async def generate(self, user_id: Optional[int]) -> InviteCode:
        if user_id is None:
            raise NotLoggedIn("You must be logged in to generate an invite code.")

        async with self.sessions() as session:
            user = await session.get(User, user_id)
            if not user:
                raise NotLoggedIn("You must be logged in to generate an invite code.")
            if user.partner_id:
                raise AlreadyPartnered(
                    "You are already connected with a partner. "
                    "Please disconnect first to generate a new code."
                )

            now = self.clock()
            # Codes are never purged elsewhere; drop this user's dead ones here.
            await session.exec(
                delete(InviteCode).where(
                    InviteCode.created_by == user.id,
                    or_(InviteCode.used == True, InviteCode.expires_at <= now),  # noqa: E712
                )
            )

            code = generate_code(self.settings.INVITE_CODE_LENGTH)
            # Ensure uniqueness among live codes (simple check)
            while (
                await session.exec(
                    select(InviteCode).where(
                        InviteCode.code == code,
                        InviteCode.used == False,  # noqa: E712
                        InviteCode.expires_at > now - self.grace,
                    )
                )
            ).first():
                code = generate_code(self.settings.INVITE_CODE_LENGTH)

            invite = InviteCode(
                code=code,
                created_by=user.id,
                created_at=now,
                expires_at=now + self.ttl,
            )
            session.add(invite)
            await session.commit()
            await session.refresh(invite)

        logger.info("User %s generated invite code expiring at %s", user_id, invite.expires_at)
        return invite

    async def active_code(self, user_id: int) -> Optional[InviteCode]:
        now = self.clock()
        async with self.sessions() as session:
            return (
                await session.exec(
                    select(InviteCode)
                    .where(
                        InviteCode.created_by == user_id,
                        InviteCode.used == False,  # noqa: E712
                        InviteCode.expires_at > now,
                    )
                    .order_by(InviteCode.created_at.desc())  # type: ignore[attr-defined]
                )
            ).first()

    async def redeem(self, code: Optional[str], user_id: Optional[int]) -> User:
        """
        Pair ``user_id`` with the issuer of ``code``.

        The code is marked used and both partner pointers are set in one
        transaction. Returns the issuer's refreshed record.
        """
        normalized = normalize_code(code)
        if user_id is None:
            raise NotLoggedIn()

        async with self.sessions() as session:
            redeemer = await session.get(User, user_id)
            if not redeemer:
                raise NotLoggedIn()
            if redeemer.partner_id:
                raise AlreadyPartnered()

            now = self.clock()
            invite = (
                await session.exec(
                    select(InviteCode)
                    .where(
                        InviteCode.code == normalized,
                        InviteCode.used == False,  # noqa: E712
                        InviteCode.expires_at > now - self.grace,
                    )
                    .order_by(InviteCode.created_at.desc())  # type: ignore[attr-defined]
                )
            ).first()
            if not invite:
                raise InvalidOrExpiredCode()
            if invite.created_by == redeemer.id:
                raise SelfPairing()

            issuer = await session.get(User, invite.created_by)
            if not issuer:
                raise InvalidOrExpiredCode()
            if issuer.partner_id:
                raise AlreadyPartnered(f"{issuer.name} is already connected with a partner.")

            # Another redeemer may have claimed it since we read it.
            marked = await session.exec(
                update(InviteCode)
                .where(InviteCode.id == invite.id, InviteCode.used == False)  # noqa: E712
                .values(used=True, used_by=redeemer.id, used_at=now)
            )
            if marked.rowcount != 1:
                raise InvalidOrExpiredCode()

            await link_partners(session, redeemer, issuer)
            await session.commit()
            await session.refresh(issuer)
            await session.refresh(redeemer)

        logger.info("User %s redeemed invite code of user %s", user_id, issuer.id)
        return issuer
