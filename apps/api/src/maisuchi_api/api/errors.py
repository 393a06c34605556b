"""Translate loyalty failures into typed JSON error bodies."""

from __future__ import annotations

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from loguru import logger

from maisuchi_api.services.loyalty.errors import (
    ConcurrencyConflictError,
    DailyLimitExceededError,
    ExpiredRewardError,
    InsufficientPointsError,
    LoyaltyError,
    NotFoundError,
    StorageError,
    ValidationError,
)

# Most specific first; subclasses must precede their parents.
_STATUS_BY_ERROR: tuple[tuple[type[LoyaltyError], int], ...] = (
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (ExpiredRewardError, status.HTTP_410_GONE),
    (InsufficientPointsError, status.HTTP_409_CONFLICT),
    (DailyLimitExceededError, status.HTTP_409_CONFLICT),
    (ConcurrencyConflictError, status.HTTP_409_CONFLICT),
    (StorageError, status.HTTP_503_SERVICE_UNAVAILABLE),
)


def status_for(error: LoyaltyError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def error_body(error: LoyaltyError) -> dict[str, object]:
    return {
        "success": False,
        "error": error.code,
        "message": error.message,
        "details": jsonable_encoder(error.context),
    }


async def loyalty_error_handler(request: Request, exc: LoyaltyError) -> JSONResponse:
    status_code = status_for(exc)
    log = logger.warning if status_code >= 500 else logger.info
    log("Loyalty request rejected", route=request.url.path, error=exc.code, status=status_code)
    return JSONResponse(error_body(exc), status_code=status_code)


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(LoyaltyError, loyalty_error_handler)


__all__ = ["error_body", "register_error_handlers", "status_for"]
