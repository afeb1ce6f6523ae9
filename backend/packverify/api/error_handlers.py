"""
Custom exception handlers for FastAPI.
Provides clear, actionable error messages for validation and server errors,
plus the structured errors returned for billing outcomes.
"""

from typing import Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from fastapi.exception_handlers import RequestValidationError
from fastapi.exceptions import HTTPException
from starlette.status import (
    HTTP_403_FORBIDDEN,
    HTTP_404_NOT_FOUND,
    HTTP_422_UNPROCESSABLE_ENTITY,
    HTTP_500_INTERNAL_SERVER_ERROR,
)

from packverify.core.config import settings
from packverify.models.enums import DebitStatus
from packverify.models.tables import User

try:
    import sentry_sdk  # type: ignore
    _SENTRY_AVAILABLE = True
except Exception:  # pragma: no cover - optional
    _SENTRY_AVAILABLE = False


def debit_error(status: DebitStatus, user: Optional[User] = None, required: Optional[int] = None) -> HTTPException:
    """HTTP error for a refused debit; quota details are included when known."""
    if status is DebitStatus.USER_NOT_FOUND:
        return HTTPException(status_code=HTTP_404_NOT_FOUND, detail={"error": "User not found"})
    detail = {"error": "Quota exceeded"}
    if user is not None:
        detail.update({"quota_total": user.quota_total, "quota_used": user.quota_used})
    if required:
        detail["required"] = required
    return HTTPException(status_code=HTTP_403_FORBIDDEN, detail=detail)


def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "Validation error",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def generic_exception_handler(request: Request, exc: Exception):
    # Best-effort capture to Sentry if configured
    if _SENTRY_AVAILABLE and settings.SENTRY_DSN:
        try:
            sentry_sdk.capture_exception(exc)
        except Exception:
            pass
    return JSONResponse(
        status_code=HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "details": str(exc) if settings.ENVIRONMENT == "development" else None,
        },
    )
