import asyncio
import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Query, WebSocket, WebSocketDisconnect, status

from app.api import deps
from app.models.user import User
from app.schemas.msg import Msg
from app.schemas.pairing import (
    PairingCodeRequest,
    PairingCodeResponse,
    PairingResponse,
    PairingState,
)
from app.services.session import PairingSession

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/code", response_model=PairingCodeResponse)
async def generate_pairing_code(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
) -> Any:
    """
    Generate an invite code for the current user.
    """
    return await services.coordinator.generate_invite_code(ctx)


@router.post("/pair", response_model=PairingResponse)
async def pair_users(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
    body: PairingCodeRequest,
) -> Any:
    """
    Pair with another user using their invite code.
    """
    partner = await services.coordinator.connect_with_code(ctx, body.code)
    return {"message": "Paired successfully", "partner": partner}


@router.post("/unpair", response_model=Msg)
async def unpair_users(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
) -> Any:
    """
    Unpair from current partner.
    """
    await services.coordinator.disconnect_partner(ctx)
    return {"message": "Unpaired successfully"}


@router.get("/state", response_model=PairingState)
async def read_state(
    services: deps.ServicesDep,
    session: deps.SessionDep,
    current_user: deps.CurrentUser,
    ctx: deps.PairingSessionDep,
) -> Any:
    """
    Current pairing state. Live sessions answer from memory; otherwise the
    durable records are read.
    """
    if ctx.reconciler is None:
        partner = None
        if current_user.partner_id:
            partner = await session.get(User, current_user.partner_id)
        ctx.set_partner(partner)
        ctx.set_invite_code(await services.invite_codes.active_code(current_user.id))
        ctx.set_pending_requests(await services.requests.list_pending(current_user.id))
    return ctx.snapshot()


@router.post("/state/dismiss", response_model=PairingState)
async def dismiss_disconnect_message(
    services: deps.ServicesDep,
    ctx: deps.PairingSessionDep,
) -> Any:
    services.coordinator.dismiss_disconnect_message(ctx)
    return ctx.snapshot()


async def _stream_state(websocket: WebSocket, ctx: PairingSession) -> None:
    async with ctx.subscribe() as updates:
        async for state in updates:
            await websocket.send_json({"type": "state", "state": state.model_dump(mode="json")})


@router.websocket("/ws")
async def pairing_socket(websocket: WebSocket, token: str = Query(...)):
    """
    Live session: streams ``PairingState`` and accepts ``ping``, ``leave``,
    ``dismiss``, ``online`` and ``offline`` messages. Closing the socket
    without ``leave`` is treated as an abrupt drop.
    """
    services = websocket.app.state.services
    async with services.sessions() as session:
        try:
            user = await deps.authenticate(session, token)
        except HTTPException:
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

    await websocket.accept()
    coordinator = services.coordinator
    ctx = PairingSession(user.id, user.display_name, clock=services.invite_codes.clock)
    await coordinator.attach(ctx)
    sender = asyncio.create_task(_stream_state(websocket, ctx), name=f"ws-state-{user.id}")

    graceful = False
    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                await websocket.send_json({"type": "error", "detail": "Messages must be JSON objects"})
                continue
            kind = message.get("type") if isinstance(message, dict) else None
            if kind == "ping":
                await websocket.send_json({"type": "pong"})
            elif kind == "leave":
                graceful = True
                break
            elif kind == "dismiss":
                coordinator.dismiss_disconnect_message(ctx)
            elif kind in ("online", "offline"):
                ctx.is_online = kind == "online"
                ctx.publish()
            else:
                await websocket.send_json({"type": "error", "detail": f"Unknown message type: {kind}"})
    except WebSocketDisconnect:
        logger.info("Socket of user %s closed without leave", user.id)
    finally:
        sender.cancel()
        await asyncio.gather(sender, return_exceptions=True)
        await coordinator.detach(ctx, graceful=graceful)

    if graceful:
        await websocket.close()
