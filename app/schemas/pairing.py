from datetime import datetime
from pydantic import BaseModel, ConfigDict
from typing import List, Optional

from app.schemas.partner_request import PartnerRequestRead

class PairingCodeRequest(BaseModel):
    code: str

class PairingCodeResponse(BaseModel):
    code: str
    expires_at: datetime

class PartnerInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int]
    email: str
    display_name: Optional[str] = None
    picture: Optional[str] = None
    partner_id: Optional[int]

class PairingResponse(BaseModel):
    message: str
    partner: PartnerInfo

class PairingState(BaseModel):
    user_id: int
    partner: Optional[PartnerInfo] = None
    partner_online: Optional[bool] = None
    active_invite_code: Optional[PairingCodeResponse] = None
    pending_requests: List[PartnerRequestRead] = []
    is_online: bool = True
    presence: str = "checking"
    disconnect_message: Optional[str] = None
