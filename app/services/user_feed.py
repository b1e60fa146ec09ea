import logging

from app.presence.records import SERVER_TIMESTAMP, feed_key
from app.presence.store import PresenceStore

logger = logging.getLogger(__name__)

PAIRED = "paired"
DISCONNECTED = "disconnected"
PARTNER_DISCONNECTED = "partner_disconnected"
REQUESTS_CHANGED = "requests_changed"


class UserFeed:
    """
    Change notifications for durable user records.

    SQL has no snapshot listeners, so whoever commits a change to a user
    record touches that user's feed key afterwards. Watchers re-read the
    record from the database; the feed value only says why it changed.
    """

    def __init__(self, store: PresenceStore):
        self.store = store

    async def touch(self, user_id: int, reason: str) -> None:
        await self.store.set(feed_key(user_id), {"reason": reason, "at": SERVER_TIMESTAMP})

    async def touch_quietly(self, user_id: int, reason: str) -> None:
        try:
            await self.touch(user_id, reason)
        except Exception:
            logger.exception("Could not publish %s change for user %s", reason, user_id)

    def watch(self, user_id: int):
        return self.store.watch(feed_key(user_id))
