import asyncio
from datetime import timedelta

import pytest
from sqlmodel import select

from app.core.errors import AlreadyPartnered, InvalidOrExpiredCode, NotLoggedIn, SelfPairing
from app.models.invite_code import InviteCode
from app.services.invite_codes import CODE_ALPHABET, generate_code, normalize_code


def test_generate_code_alphabet():
    code = generate_code()
    assert len(code) == 6
    assert set(code) <= set(CODE_ALPHABET)
    assert len(generate_code(8)) == 8


def test_normalize_code():
    assert normalize_code("  ab12cd\n") == "AB12CD"
    assert normalize_code(None) == ""


async def test_generate_sets_expiry(services, create_user, clock):
    user = await create_user()
    invite = await services.invite_codes.generate(user.id)
    assert invite.created_by == user.id
    assert invite.expires_at == clock() + timedelta(minutes=10)
    assert (await services.invite_codes.active_code(user.id)).code == invite.code


async def test_generate_requires_user(services):
    with pytest.raises(NotLoggedIn):
        await services.invite_codes.generate(None)
    with pytest.raises(NotLoggedIn):
        await services.invite_codes.generate(12345)


async def test_generate_drops_dead_codes(services, session, create_user, clock):
    user = await create_user()
    first = await services.invite_codes.generate(user.id)
    clock.advance(minutes=11)
    second = await services.invite_codes.generate(user.id)

    codes = (await session.exec(select(InviteCode).where(InviteCode.created_by == user.id))).all()
    assert [c.code for c in codes] == [second.code]
    assert codes[0].expires_at == first.expires_at + timedelta(minutes=11)
    assert await services.invite_codes.active_code(user.id) is not None


async def test_redeem_scenario(services, create_user, load_user, clock):
    a = await create_user("a@example.com", "Ann")
    b = await create_user("b@example.com", "Bob")
    c = await create_user("c@example.com", "Cy")

    invite = await services.invite_codes.generate(a.id)

    clock.advance(minutes=2)
    issuer = await services.invite_codes.redeem(invite.code, b.id)
    assert issuer.id == a.id
    a, b = await load_user(a.id), await load_user(b.id)
    assert (a.partner_id, b.partner_id) == (b.id, a.id)

    clock.advance(minutes=1)
    with pytest.raises(InvalidOrExpiredCode):
        await services.invite_codes.redeem(invite.code, c.id)
    assert (await load_user(c.id)).partner_id is None


async def test_redeem_marks_code_used(services, session, create_user, clock):
    a = await create_user("a@example.com")
    b = await create_user("b@example.com")
    invite = await services.invite_codes.generate(a.id)
    await services.invite_codes.redeem(invite.code, b.id)

    stored = await session.get(InviteCode, invite.id)
    assert stored.used
    assert stored.used_by == b.id
    assert stored.used_at == clock()


async def test_expired_code(services, create_user):
    a = await create_user("a@example.com")
    b = await create_user("b@example.com")
    invite = await services.invite_codes.generate(a.id)

    services.invite_codes.clock.advance(minutes=11)
    with pytest.raises(InvalidOrExpiredCode):
        await services.invite_codes.redeem(invite.code, b.id)


async def test_code_grace_period(services, create_user, load_user, clock):
    a = await create_user("a@example.com")
    b = await create_user("b@example.com")
    invite = await services.invite_codes.generate(a.id)

    clock.advance(minutes=10, seconds=30)
    await services.invite_codes.redeem(invite.code, b.id)
    assert (await load_user(b.id)).partner_id == a.id


async def test_redeem_own_code(services, create_user):
    a = await create_user()
    invite = await services.invite_codes.generate(a.id)
    with pytest.raises(SelfPairing):
        await services.invite_codes.redeem(invite.code, a.id)


async def test_redeem_while_partnered(services, create_user, link_users):
    a = await create_user("a@example.com")
    b = await create_user("b@example.com")
    c = await create_user("c@example.com")
    invite = await services.invite_codes.generate(a.id)
    await link_users(b, c)

    with pytest.raises(AlreadyPartnered):
        await services.invite_codes.redeem(invite.code, b.id)


async def test_issuer_paired_since(services, create_user, link_users):
    a = await create_user("a@example.com", "Ann")
    b = await create_user("b@example.com")
    c = await create_user("c@example.com")
    invite = await services.invite_codes.generate(a.id)
    await link_users(a, c)

    with pytest.raises(AlreadyPartnered, match="Ann"):
        await services.invite_codes.redeem(invite.code, b.id)


async def test_concurrent_redemption(services, create_user, load_user):
    a = await create_user("a@example.com")
    b = await create_user("b@example.com")
    c = await create_user("c@example.com")
    invite = await services.invite_codes.generate(a.id)

    results = await asyncio.gather(
        services.invite_codes.redeem(invite.code, b.id),
        services.invite_codes.redeem(invite.code, c.id),
        return_exceptions=True,
    )
    failures = [r for r in results if isinstance(r, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], (InvalidOrExpiredCode, AlreadyPartnered))

    a = await load_user(a.id)
    winner = await load_user(a.partner_id)
    assert winner.id in (b.id, c.id)
    assert winner.partner_id == a.id
    loser_id = c.id if winner.id == b.id else b.id
    assert (await load_user(loser_id)).partner_id is None
