from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

# Placeholder the presence store replaces with epoch milliseconds at write time.
SERVER_TIMESTAMP: Dict[str, str] = {".sv": "timestamp"}

Timestamp = Union[int, Dict[str, str]]


def connection_key(user_id: int) -> str:
    return f"connections/{user_id}"


def status_key(user_id: int) -> str:
    return f"status/{user_id}"


def info_key(connection_id: str) -> str:
    return f".info/connected/{connection_id}"


def feed_key(user_id: int) -> str:
    return f"users/{user_id}"


def notifications_key(user_id: int) -> str:
    return f"notifications/{user_id}"


class _Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_store(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_store(cls, value: Optional[Dict[str, Any]]):
        if not value:
            return None
        return cls.model_validate(value)


class ConnectionRecord(_Record):
    partner_id: Optional[int] = None
    last_active: Timestamp = SERVER_TIMESTAMP
    status: str = "connected"
    connection_id: Optional[str] = None

    @property
    def is_disconnected(self) -> bool:
        return self.status == "disconnected"


class PresenceRecord(_Record):
    is_online: bool
    last_online: Timestamp = SERVER_TIMESTAMP
    connection_id: Optional[str] = None


def offline_patch() -> Dict[str, Any]:
    return {"isOnline": False, "lastOnline": SERVER_TIMESTAMP}
