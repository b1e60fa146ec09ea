"""
Retry/backoff wrappers for document store and presence store calls.

``retry_operation`` is the general policy: every attempt races a fixed
timeout, ``permission-denied`` fails at once, everything else is retried with
exponential backoff (``initial_delay * 2 ** attempt``) and translated into a
``PairingError`` once the attempts run out.

``retry_on_transient`` is the presence variant: it only retries network,
timeout and contention failures, with a fixed delay.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from redis import exceptions as redis_exceptions
from sqlalchemy import exc as sa_exc

from app.core.config import settings
from app.core.errors import (
    BackendTransientFailure,
    NetworkUnavailable,
    OperationTimedOut,
    PairingError,
    PermissionDenied,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

PERMISSION_DENIED = "permission-denied"
UNAVAILABLE = "unavailable"
DEADLINE_EXCEEDED = "deadline-exceeded"
ABORTED = "aborted"
UNKNOWN = "unknown"

TRANSIENT = frozenset({UNAVAILABLE, DEADLINE_EXCEEDED, ABORTED})

# Postgres SQLSTATE for insufficient_privilege
_PG_INSUFFICIENT_PRIVILEGE = "42501"


def classify_error(exc: BaseException) -> str:
    """Map an exception raised by a store call onto a backend error code."""
    if isinstance(exc, PermissionDenied):
        return PERMISSION_DENIED
    if isinstance(exc, OperationTimedOut):
        return DEADLINE_EXCEEDED
    if isinstance(exc, NetworkUnavailable):
        return UNAVAILABLE
    if isinstance(exc, BackendTransientFailure):
        return ABORTED

    if isinstance(exc, (redis_exceptions.NoPermissionError, redis_exceptions.AuthenticationError)):
        return PERMISSION_DENIED
    if isinstance(exc, redis_exceptions.TimeoutError):
        return DEADLINE_EXCEEDED
    if isinstance(exc, redis_exceptions.ConnectionError):
        return UNAVAILABLE
    if isinstance(exc, redis_exceptions.WatchError):
        return ABORTED

    if isinstance(exc, sa_exc.DBAPIError):
        pgcode = getattr(exc.orig, "pgcode", None) or getattr(exc.orig, "sqlstate", None)
        if pgcode == _PG_INSUFFICIENT_PRIVILEGE:
            return PERMISSION_DENIED
        if exc.connection_invalidated:
            return UNAVAILABLE
        if isinstance(exc, sa_exc.OperationalError):
            # "database is locked", serialization failures, dropped connections
            return ABORTED
    if isinstance(exc, sa_exc.DisconnectionError):
        return UNAVAILABLE

    if isinstance(exc, asyncio.TimeoutError):
        return DEADLINE_EXCEEDED
    if isinstance(exc, (ConnectionError, OSError)):
        return UNAVAILABLE
    return UNKNOWN


def translate_error(exc: BaseException, kind: Optional[str] = None) -> PairingError:
    if isinstance(exc, PairingError):
        return exc
    kind = kind or classify_error(exc)
    if kind == PERMISSION_DENIED:
        return PermissionDenied()
    if kind == DEADLINE_EXCEEDED:
        return OperationTimedOut()
    if kind == UNAVAILABLE:
        return NetworkUnavailable()
    return BackendTransientFailure()


async def retry_operation(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: Optional[int] = None,
    initial_delay: Optional[float] = None,
    timeout: Optional[float] = None,
    description: str = "operation",
) -> T:
    if max_retries is None:
        max_retries = settings.RETRY_MAX_ATTEMPTS
    if initial_delay is None:
        initial_delay = settings.RETRY_INITIAL_DELAY_SECONDS
    if timeout is None:
        timeout = settings.OPERATION_TIMEOUT_SECONDS

    attempt = 0
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout)
        except PairingError as exc:
            if not exc.retryable:
                raise
            error: Exception = exc
        except Exception as exc:
            error = exc

        kind = classify_error(error)
        logger.warning(
            "%s failed (attempt %d, %s): %r", description, attempt + 1, kind, error
        )
        if kind == PERMISSION_DENIED:
            raise PermissionDenied() from error
        if attempt >= max_retries:
            raise translate_error(error, kind) from error

        delay = initial_delay * 2 ** attempt
        logger.info("Retrying %s in %.2fs", description, delay)
        await asyncio.sleep(delay)
        attempt += 1


async def retry_on_transient(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: Optional[int] = None,
    delay: Optional[float] = None,
    timeout: Optional[float] = None,
    description: str = "presence operation",
) -> T:
    if attempts is None:
        attempts = settings.PRESENCE_RETRY_ATTEMPTS
    if delay is None:
        delay = settings.PRESENCE_RETRY_DELAY_SECONDS
    if timeout is None:
        timeout = settings.OPERATION_TIMEOUT_SECONDS

    attempt = 1
    while True:
        try:
            return await asyncio.wait_for(operation(), timeout)
        except Exception as exc:
            kind = classify_error(exc)
            if kind not in TRANSIENT:
                raise
            if attempt >= attempts:
                logger.error("%s failed after %d attempts: %r", description, attempt, exc)
                raise translate_error(exc, kind) from exc
            logger.warning(
                "%s failed (attempt %d, %s), retrying in %.2fs", description, attempt, kind, delay
            )
        await asyncio.sleep(delay)
        attempt += 1
