from pydantic import BaseModel

from app.schemas.pairing import PartnerInfo

class Token(BaseModel):
    access_token: str
    token_type: str
    user: PartnerInfo
