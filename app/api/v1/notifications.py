from typing import Any, List

from fastapi import APIRouter

from app.api import deps
from app.schemas.msg import Msg
from app.schemas.notification import NotificationRead

router = APIRouter()


@router.get("", response_model=List[NotificationRead], response_model_by_alias=True)
async def read_notifications(
    services: deps.ServicesDep,
    current_user: deps.CurrentUser,
) -> Any:
    """
    Notifications of the current user, newest first.
    """
    return await services.notifier.list(current_user.id)


@router.delete("/{notification_id}", response_model=Msg)
async def dismiss_notification(
    services: deps.ServicesDep,
    current_user: deps.CurrentUser,
    notification_id: str,
) -> Any:
    await services.notifier.dismiss(current_user.id, notification_id)
    return {"message": "Notification dismissed"}


@router.delete("", response_model=Msg)
async def clear_notifications(
    services: deps.ServicesDep,
    current_user: deps.CurrentUser,
) -> Any:
    await services.notifier.clear(current_user.id)
    return {"message": "Notifications cleared"}
