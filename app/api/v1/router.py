from fastapi import APIRouter

from app.api.v1 import auth, notifications, pairings, requests

api_router = APIRouter()

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(pairings.router, prefix="/pairings", tags=["pairings"])
api_router.include_router(requests.router, prefix="/requests", tags=["requests"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])


@api_router.get("/")
def root():
    return {"message": "Hello World"}
