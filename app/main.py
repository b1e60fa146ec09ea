import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware

from app.api.v1.router import api_router
from app.core.config import settings
from app.core.db import async_session, engine, init_db
from app.core.errors import PairingError
from app.services.container import build_presence_store, build_services

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db(engine)
    store = build_presence_store(settings)
    services = build_services(settings, async_session, store)
    app.state.services = services
    sweeper = asyncio.create_task(
        store.run_sweeper(settings.PRESENCE_SWEEP_INTERVAL_SECONDS), name="presence-sweeper"
    )
    logger.info("Presence store ready (%s backend)", settings.PRESENCE_BACKEND)
    yield
    sweeper.cancel()
    await asyncio.gather(sweeper, return_exceptions=True)
    for ctx in services.hub.all():
        await services.coordinator.detach(ctx, graceful=True)
    await store.close()
    await engine.dispose()


async def pairing_error_handler(request: Request, exc: PairingError) -> JSONResponse:
    if exc.retryable:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
    )


def create_application(lifespan: Callable = lifespan) -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan,
    )

    # Set all CORS enabled origins
    if settings.BACKEND_CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin) for origin in settings.BACKEND_CORS_ORIGINS],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(PairingError, pairing_error_handler)
    app.include_router(api_router, prefix=settings.API_V1_STR)
    return app


app = create_application()
