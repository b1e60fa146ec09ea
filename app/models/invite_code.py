from datetime import datetime, timedelta
from typing import Optional

from sqlmodel import Field, SQLModel

from app.core.clock import UTCDateTime


class InviteCode(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    code: str = Field(index=True, max_length=16)
    created_by: int = Field(foreign_key="user.id", index=True)
    created_at: datetime = Field(sa_type=UTCDateTime)
    expires_at: datetime = Field(sa_type=UTCDateTime)

    used: bool = False
    used_by: Optional[int] = Field(default=None, foreign_key="user.id")
    used_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    def is_redeemable(self, now: datetime, grace: timedelta = timedelta(0)) -> bool:
        return not self.used and self.expires_at + grace > now
