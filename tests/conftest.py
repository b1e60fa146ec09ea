import asyncio
import os
from datetime import datetime, timedelta, timezone

os.environ.setdefault("SECRET_KEY", "test-secret-key-for-duet")

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.config import settings
from app.core.db import init_db, make_engine, make_session_factory
from app.core.security import create_access_token
from app.main import create_application
from app.models.user import User
from app.presence.store import MemoryPresenceStore
from app.services.container import build_services


class FakeClock:
    def __init__(self, start: datetime = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def test_settings():
    return settings.model_copy(
        update={
            "RETRY_MAX_ATTEMPTS": 2,
            "RETRY_INITIAL_DELAY_SECONDS": 0.01,
            "OPERATION_TIMEOUT_SECONDS": 2.0,
            "PRESENCE_RETRY_ATTEMPTS": 2,
            "PRESENCE_RETRY_DELAY_SECONDS": 0.01,
            "RECONCILER_MAX_SETUP_RETRIES": 2,
            "RECONCILER_SETUP_RETRY_DELAY_SECONDS": 0.01,
        }
    )


@pytest.fixture
async def engine(tmp_path):
    engine = make_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return make_session_factory(engine)


@pytest.fixture
async def session(sessions):
    async with sessions() as session:
        yield session


@pytest.fixture
async def store():
    store = MemoryPresenceStore(lease_seconds=30)
    yield store
    await store.close()


@pytest.fixture
async def services(test_settings, sessions, store, clock):
    services = build_services(test_settings, sessions, store, clock=clock)
    yield services
    for ctx in services.hub.all():
        await services.coordinator.detach(ctx, graceful=True)


@pytest.fixture
async def client(services):
    app = create_application()
    app.state.services = services
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def create_user(sessions):
    async def _create_user(email="test@example.com", display_name=None, **fields):
        async with sessions() as session:
            user = User(email=email, display_name=display_name, **fields)
            session.add(user)
            await session.commit()
            await session.refresh(user)
            return user

    return _create_user


@pytest.fixture
def load_user(sessions):
    async def _load_user(user_id):
        async with sessions() as session:
            return await session.get(User, user_id)

    return _load_user


@pytest.fixture
def link_users(sessions):
    async def _link_users(user, partner):
        async with sessions() as session:
            for me, other in ((user, partner), (partner, user)):
                row = await session.get(User, me.id)
                row.partner_id = other.id
                row.partner_display_name = other.name
                session.add(row)
            await session.commit()

    return _link_users


@pytest.fixture
def auth_headers():
    def _auth_headers(user_id):
        return {"Authorization": f"Bearer {create_access_token(user_id)}"}

    return _auth_headers


@pytest.fixture
def eventually():
    async def _eventually(predicate, timeout=3.0, interval=0.01):
        deadline = asyncio.get_running_loop().time() + timeout
        while True:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
            if asyncio.get_running_loop().time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(interval)

    return _eventually
