from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import Optional

from app.models.partner_request import PartnerRequestStatus

class PartnerRequestCreate(BaseModel):
    recipient_id: int

class PartnerRequestRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender_id: int
    sender_name: Optional[str] = None
    recipient_id: int
    status: PartnerRequestStatus
    created_at: datetime
    expires_at: datetime

class UserSearchResult(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str
    display_name: Optional[str] = None
    picture: Optional[str] = None
