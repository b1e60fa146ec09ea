from dataclasses import dataclass

from app.core.clock import Clock, utcnow
from app.core.config import Settings
from app.core.db import SessionFactory
from app.presence.redis_store import RedisPresenceStore
from app.presence.store import MemoryPresenceStore, PresenceStore
from app.services.coordinator import PairingCoordinator
from app.services.invite_codes import InviteCodeManager
from app.services.notifications import Notifier
from app.services.partner_requests import PartnerRequestManager
from app.services.session import SessionHub
from app.services.user_feed import UserFeed


@dataclass
class Services:
    """Everything the API layer needs, built once per application."""

    settings: Settings
    sessions: SessionFactory
    store: PresenceStore
    hub: SessionHub
    feed: UserFeed
    notifier: Notifier
    invite_codes: InviteCodeManager
    requests: PartnerRequestManager
    coordinator: PairingCoordinator


def build_presence_store(settings: Settings) -> PresenceStore:
    if settings.PRESENCE_BACKEND == "redis":
        return RedisPresenceStore.from_url(
            settings.REDIS_URL, lease_seconds=settings.PRESENCE_LEASE_SECONDS
        )
    return MemoryPresenceStore(lease_seconds=settings.PRESENCE_LEASE_SECONDS)


def build_services(
    settings: Settings,
    sessions: SessionFactory,
    store: PresenceStore,
    clock: Clock = utcnow,
) -> Services:
    hub = SessionHub()
    feed = UserFeed(store)
    notifier = Notifier(store)
    invite_codes = InviteCodeManager(sessions, settings=settings, clock=clock)
    requests = PartnerRequestManager(sessions, feed, settings=settings, clock=clock)
    coordinator = PairingCoordinator(
        sessions=sessions,
        store=store,
        hub=hub,
        feed=feed,
        notifier=notifier,
        invite_codes=invite_codes,
        requests=requests,
        settings=settings,
        clock=clock,
    )
    return Services(
        settings=settings,
        sessions=sessions,
        store=store,
        hub=hub,
        feed=feed,
        notifier=notifier,
        invite_codes=invite_codes,
        requests=requests,
        coordinator=coordinator,
    )
