from fastapi import HTTPException
from fastapi.responses import JSONResponse

from app.models import RpcFailure
from app.services.distance_estimator import CoordinateValidationError
from app.services.request_store import (
    PinLockedError,
    RequestStoreConflictError,
    RequestStoreNotFoundError,
    RequestStorePermissionError,
)


def request_error_status(exc: ValueError) -> int:
    if isinstance(exc, CoordinateValidationError):
        return 400
    if isinstance(exc, RequestStoreNotFoundError):
        return 404
    if isinstance(exc, RequestStorePermissionError):
        return 403
    if isinstance(exc, PinLockedError):
        return 429
    if isinstance(exc, RequestStoreConflictError):
        return 409
    return 400


def raise_request_http_error(exc: ValueError) -> None:
    raise HTTPException(status_code=request_error_status(exc), detail=str(exc))


def rpc_failure(exc: ValueError) -> JSONResponse:
    """``{success: false, error}`` body for the RPC-style endpoints."""
    return JSONResponse(
        status_code=request_error_status(exc),
        content=RpcFailure(error=str(exc)).model_dump(),
    )
