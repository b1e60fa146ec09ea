"""
Symmetric partner link/unlink, run inside a caller's transaction.

Both sides are written with compare-and-swap updates whose row counts are
checked, so a user can never end up linked to two partners even when two
pairing transactions race: the loser's update matches no row and raises,
and its transaction is rolled back.
"""

from typing import Callable, Iterable, List

from sqlalchemy import delete, update
from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import AlreadyPartnered, BackendTransientFailure
from app.models.invite_code import InviteCode
from app.models.user import User


async def link_partners(session: AsyncSession, user: User, partner: User) -> None:
    for me, other in ((user, partner), (partner, user)):
        result = await session.exec(
            update(User)
            .where(User.id == me.id, User.partner_id == None)  # noqa: E711
            .values(partner_id=other.id, partner_display_name=other.name)
        )
        if result.rowcount != 1:
            if me is user:
                raise AlreadyPartnered()
            raise AlreadyPartnered(f"{partner.name} is already connected with a partner.")


async def unlink_partners(session: AsyncSession, user_id: int, partner_id: int) -> int:
    """Clear both pointers where they still point at each other; returns rows changed."""
    changed = 0
    for me, other in ((user_id, partner_id), (partner_id, user_id)):
        result = await session.exec(
            update(User)
            .where(User.id == me, User.partner_id == other)
            .values(partner_id=None, partner_display_name=None)
        )
        changed += result.rowcount
    await clear_unused_codes(session, (user_id, partner_id))
    return changed


async def clear_unused_codes(session: AsyncSession, user_ids: Iterable[int]) -> None:
    await session.exec(
        delete(InviteCode).where(
            InviteCode.created_by.in_(list(user_ids)),  # type: ignore[attr-defined]
            InviteCode.used == False,  # noqa: E712
        )
    )


async def edit_pending_requests(
    session: AsyncSession,
    user_id: int,
    edit: Callable[[List[str]], List[str]],
    attempts: int = 5,
) -> bool:
    """
    Apply ``edit`` to a user's pending request IDs.

    The list is re-read and written back only if ``pending_version`` is
    unchanged, so concurrent appends and removals never overwrite each other.
    Returns False when the user does not exist.
    """
    for _ in range(attempts):
        row = (
            await session.exec(
                select(User.pending_requests, User.pending_version).where(User.id == user_id)
            )
        ).first()
        if row is None:
            return False
        current, version = row
        result = await session.exec(
            update(User)
            .where(User.id == user_id, User.pending_version == version)
            .values(pending_requests=edit(list(current or [])), pending_version=version + 1)
        )
        if result.rowcount == 1:
            return True
    raise BackendTransientFailure()
