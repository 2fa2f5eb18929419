"""
Application error kinds.

Services raise these; the handlers registered in ``register_exception_handlers``
turn them into JSON responses of the shape::

    {"error": {"kind": ..., "code": ..., "message": ..., "reason": ..., "details": ...}}
"""

import logging
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    UNAUTHENTICATED = "unauthenticated"
    FORBIDDEN = "forbidden"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    EXPIRED = "expired"
    RATE_LIMITED = "rate_limited"
    TRANSPORT_FAILED = "transport_failed"
    INTERNAL = "internal"


class ForbiddenReason(str, Enum):
    NOT_ADMIN = "not_admin"
    NOT_MEMBER = "not_member"
    ROLE_INSUFFICIENT = "role_insufficient"
    TENANT_UNIT_MISMATCH = "tenant_unit_mismatch"
    INACTIVE_USER = "inactive_user"
    INACTIVE_RESOURCE = "inactive_resource"


class AppError(Exception):
    kind: ErrorKind = ErrorKind.INTERNAL
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code: str = "internal_error"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(AppError):
    kind = ErrorKind.VALIDATION
    status_code = status.HTTP_400_BAD_REQUEST
    default_code = "invalid_request"


class UnauthenticatedError(AppError):
    kind = ErrorKind.UNAUTHENTICATED
    status_code = status.HTTP_401_UNAUTHORIZED
    default_code = "unauthenticated"


class ForbiddenError(AppError):
    kind = ErrorKind.FORBIDDEN
    status_code = status.HTTP_403_FORBIDDEN
    default_code = "forbidden"

    def __init__(
        self,
        reason: ForbiddenReason,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message or f"Access denied: {reason.value}", code=reason.value, details=details)
        self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["reason"] = self.reason.value
        return body


class NotFoundError(AppError):
    kind = ErrorKind.NOT_FOUND
    status_code = status.HTTP_404_NOT_FOUND
    default_code = "not_found"


class ConflictError(AppError):
    kind = ErrorKind.CONFLICT
    status_code = status.HTTP_409_CONFLICT
    default_code = "conflict"


class ExpiredError(AppError):
    kind = ErrorKind.EXPIRED
    status_code = status.HTTP_410_GONE
    default_code = "expired"


class RateLimitedError(AppError):
    kind = ErrorKind.RATE_LIMITED
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = "rate_limited"


class TransportError(AppError):
    kind = ErrorKind.TRANSPORT_FAILED
    status_code = status.HTTP_502_BAD_GATEWAY
    default_code = "transport_failed"


class InternalError(AppError):
    kind = ErrorKind.INTERNAL
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_code = "internal_error"


def error_response(error: AppError) -> JSONResponse:
    headers = None
    if isinstance(error, RateLimitedError) and "retry_after_seconds" in error.details:
        headers = {"Retry-After": str(int(error.details["retry_after_seconds"]))}
    return JSONResponse(
        status_code=error.status_code,
        content={"error": error.to_dict()},
        headers=headers,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc)


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return error_response(InternalError("An internal error occurred", code="database_error"))


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
