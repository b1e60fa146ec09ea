from typing import Any, List

from fastapi import APIRouter, Query

from app.api import deps
from app.schemas.msg import Msg
from app.schemas.pairing import PairingResponse
from app.schemas.partner_request import (
    PartnerRequestCreate,
    PartnerRequestRead,
    UserSearchResult,
)

router = APIRouter()


@router.get("", response_model=List[PartnerRequestRead])
async def read_pending_requests(
    services: deps.ServicesDep,
    current_user: deps.CurrentUser,
) -> Any:
    """
    Valid partner requests waiting for the current user.
    """
    return await services.requests.list_pending(current_user.id)


@router.get("/search", response_model=List[UserSearchResult])
async def search_users(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
    term: str = Query(...),
) -> Any:
    return await services.coordinator.search_users(ctx, term)


@router.post("", response_model=PartnerRequestRead)
async def send_partner_request(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
    body: PartnerRequestCreate,
) -> Any:
    """
    Ask another unpaired user to become your partner.
    """
    return await services.coordinator.send_partner_request(ctx, body.recipient_id)


@router.post("/{request_id}/accept", response_model=PairingResponse)
async def accept_partner_request(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
    request_id: str,
) -> Any:
    partner = await services.coordinator.accept_partner_request(ctx, request_id)
    return {"message": "Paired successfully", "partner": partner}


@router.post("/{request_id}/decline", response_model=Msg)
async def decline_partner_request(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
    request_id: str,
) -> Any:
    await services.coordinator.decline_partner_request(ctx, request_id)
    return {"message": "Request declined"}
