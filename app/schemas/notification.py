from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from typing import Optional

class NotificationRead(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    id: str
    type: str
    message: str
    sender_id: Optional[int] = None
    sender_name: Optional[str] = None
    timestamp: Optional[int] = None
    read: bool = False
