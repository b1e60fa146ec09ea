from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from app.core.clock import UTCDateTime, utcnow


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    display_name: Optional[str] = None
    picture: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    last_login: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    # Pairing
    partner_id: Optional[int] = Field(default=None, foreign_key="user.id", index=True)
    partner_display_name: Optional[str] = None
    pending_requests: List[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False)
    )
    # Bumped on every change to pending_requests; guards concurrent edits.
    pending_version: int = 0

    @property
    def name(self) -> str:
        return self.display_name or self.email
