import enum
import uuid
from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from app.core.clock import UTCDateTime


class PartnerRequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"


class PartnerRequest(SQLModel, table=True):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex, primary_key=True)
    sender_id: int = Field(foreign_key="user.id", index=True)
    sender_name: Optional[str] = None
    recipient_id: int = Field(foreign_key="user.id", index=True)
    status: PartnerRequestStatus = Field(default=PartnerRequestStatus.PENDING)
    created_at: datetime = Field(sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime)
    responded_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    def is_valid(self, now: datetime) -> bool:
        return self.status == PartnerRequestStatus.PENDING and self.expires_at > now
