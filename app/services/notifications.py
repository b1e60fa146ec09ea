import enum
import logging
import uuid
from typing import Any, Dict, List, Optional

from app.presence.records import SERVER_TIMESTAMP, notifications_key
from app.presence.store import PresenceStore

logger = logging.getLogger(__name__)


class NotificationType(str, enum.Enum):
    PARTNER_REQUEST = "partner_request"
    PARTNER_CONNECTED = "partner_connected"
    PARTNER_DISCONNECTED = "partner_disconnected"
    SYSTEM = "system"


class Notifier:
    """Informational notifications kept in the presence store per recipient."""

    def __init__(self, store: PresenceStore):
        self.store = store

    async def notify(
        self,
        recipient_id: int,
        type: NotificationType,
        message: str,
        *,
        sender_id: Optional[int] = None,
        sender_name: Optional[str] = None,
        **extra: Any,
    ) -> str:
        notification_id = uuid.uuid4().hex
        await self.store.update(
            notifications_key(recipient_id),
            {
                notification_id: {
                    "type": type.value,
                    "message": message,
                    "senderId": sender_id,
                    "senderName": sender_name,
                    "timestamp": SERVER_TIMESTAMP,
                    "read": False,
                    **extra,
                }
            },
        )
        return notification_id

    async def notify_quietly(self, recipient_id: int, type: NotificationType, message: str, **kwargs: Any) -> Optional[str]:
        # Delivery is informational; callers never fail because of it.
        try:
            return await self.notify(recipient_id, type, message, **kwargs)
        except Exception:
            logger.exception("Failed to deliver %s notification to user %s", type.value, recipient_id)
            return None

    async def list(self, user_id: int) -> List[Dict[str, Any]]:
        data = await self.store.get(notifications_key(user_id)) or {}
        items = [{"id": notification_id, **value} for notification_id, value in data.items()]
        return sorted(items, key=lambda item: item.get("timestamp") or 0, reverse=True)

    async def dismiss(self, user_id: int, notification_id: str) -> None:
        await self.store.update(notifications_key(user_id), {notification_id: None})

    async def clear(self, user_id: int) -> None:
        await self.store.delete(notifications_key(user_id))
