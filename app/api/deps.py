from typing import Annotated, AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.security import decode_subject
from app.models.user import User
from app.services.container import Services
from app.services.session import PairingSession

reusable_oauth2 = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/auth/login/google"
)


def get_services(request: Request) -> Services:
    return request.app.state.services


ServicesDep = Annotated[Services, Depends(get_services)]


async def get_session(services: ServicesDep) -> AsyncGenerator[AsyncSession, None]:
    async with services.sessions() as session:
        yield session


SessionDep = Annotated[AsyncSession, Depends(get_session)]
TokenDep = Annotated[str, Depends(reusable_oauth2)]


async def authenticate(session: AsyncSession, token: str) -> User:
    try:
        user_id = decode_subject(token)
    except (JWTError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Could not validate credentials",
        )
    user = await session.get(User, user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


async def get_current_user(session: SessionDep, token: TokenDep) -> User:
    return await authenticate(session, token)


CurrentUser = Annotated[User, Depends(get_current_user)]


def get_pairing_session(services: ServicesDep, current_user: CurrentUser) -> PairingSession:
    """The caller's live session if one is attached, else a request-scoped one."""
    live = services.hub.primary(current_user.id)
    if live is not None:
        return live
    return PairingSession(current_user.id, current_user.display_name, clock=services.invite_codes.clock)


PairingSessionDep = Annotated[PairingSession, Depends(get_pairing_session)]
