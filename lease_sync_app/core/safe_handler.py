import logging
from functools import wraps

from fastapi import HTTPException, Request

from .exceptions import (
    ConcurrencyConflictError,
    MigrationRequiredError,
    NotFoundError,
    SyncUnavailableError,
    SyncValidationError,
)
from .friendly_msg import get_friendly_message

logger = logging.getLogger(__name__)

STATUS_FOR_ERROR = (
    (NotFoundError, 404),
    (ConcurrencyConflictError, 409),
    (MigrationRequiredError, 409),
    (SyncValidationError, 422),
    (SyncUnavailableError, 503),
)


def _status_for(error: Exception) -> int | None:
    for exc_type, status_code in STATUS_FOR_ERROR:
        if isinstance(error, exc_type):
            return status_code
    return None


def _detail_for(error: Exception):
    if isinstance(error, SyncValidationError):
        return {"message": str(error), "errors": error.errors}
    return str(error)


def _describe(request: Request | None) -> str:
    if request is None:
        return ""
    client_ip = request.client.host if request.client else "unknown"
    trace_id = request.headers.get("X-Request-ID", "none")
    return f"TraceID={trace_id} | Path: {request.url.path} | Client: {client_ip} | "


def safe_handler(func):
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request: Request | None = None
        for arg in list(args) + list(kwargs.values()):
            if isinstance(arg, Request):
                request = arg
                break

        try:
            return await func(*args, **kwargs)
        except HTTPException as e:
            logger.warning(
                f"[HTTPException] {_describe(request)}{e.status_code}: {e.detail}"
            )
            raise
        except Exception as e:
            status_code = _status_for(e)
            if status_code is not None:
                logger.warning(
                    f"[{type(e).__name__}] {_describe(request)}in {func.__name__}: "
                    f"{status_code} - {e}"
                )
                raise HTTPException(status_code=status_code, detail=_detail_for(e))

            logger.error(
                f"[Unhandled Error] {_describe(request)}in {func.__name__} | Error: {e}",
                exc_info=True,
            )
            raise HTTPException(status_code=500, detail=get_friendly_message(e))

    return wrapper
