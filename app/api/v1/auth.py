import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import RedirectResponse
from fastapi_sso.sso.google import GoogleSSO
from sqlmodel import select

from app.api import deps
from app.core.clock import utcnow
from app.core.config import settings
from app.core.security import create_access_token
from app.models.user import User
from app.schemas.token import Token

logger = logging.getLogger(__name__)

router = APIRouter()

google_sso = GoogleSSO(
    client_id=settings.GOOGLE_CLIENT_ID or "client-id",
    client_secret=settings.GOOGLE_CLIENT_SECRET or "client-secret",
    redirect_uri=settings.GOOGLE_REDIRECT_URI,
    allow_insecure_http=True,  # For dev/localhost
)


@router.get("/login/google", response_class=RedirectResponse)
async def google_login():
    """Generate login URL and redirect"""
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Google SSO not configured")
    async with google_sso:
        return await google_sso.get_login_redirect()


@router.get("/callback/google", response_model=Token)
async def google_callback(request: Request, session: deps.SessionDep) -> Any:
    """Process login response from Google and return JWT"""
    if not settings.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=500, detail="Google SSO not configured")

    try:
        async with google_sso:
            user_info = await google_sso.verify_and_process(request)
    except Exception as e:
        logger.warning("Google SSO callback failed: %s", e)
        raise HTTPException(status_code=400, detail=f"SSO Error: {str(e)}")

    if not user_info or not user_info.email:
        raise HTTPException(status_code=400, detail="No email returned from Google")

    user = (await session.exec(select(User).where(User.email == user_info.email))).first()
    if not user:
        user = User(
            email=user_info.email,
            display_name=user_info.display_name,
            picture=user_info.picture,
        )
        logger.info("Creating user for %s", user_info.email)
    user.last_login = utcnow()
    session.add(user)
    await session.commit()
    await session.refresh(user)

    return {
        "access_token": create_access_token(user.id),
        "token_type": "bearer",
        "user": user,
    }
