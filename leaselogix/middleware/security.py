"""
Security middleware.

Implements:
- Rate limiting with slowapi (public invitation endpoints)
- Security headers (OWASP recommended)
- Request/response audit logging
"""

import logging
import time
import uuid
from typing import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from leaselogix.core.config import get_settings
from leaselogix.core.errors import ErrorKind

logger = logging.getLogger(__name__)


# =============================================================================
# RATE LIMITING
# =============================================================================

def get_client_ip(request: Request) -> str:
    """Get client IP, accounting for proxies."""
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip
    return get_remote_address(request)


limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=get_settings().rate_limit_storage_uri,
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the API error shape."""
    logger.warning("Rate limit exceeded: IP=%s, path=%s", get_client_ip(request), request.url.path)
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": {
                "kind": ErrorKind.RATE_LIMITED.value,
                "code": "rate_limit_exceeded",
                "message": "Too many requests. Please try again later.",
                "details": {"limit": str(exc.detail), "retry_after_seconds": 60},
            }
        },
        headers={"Retry-After": "60"},
    )


# =============================================================================
# SECURITY HEADERS MIDDLEWARE
# =============================================================================

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Adds OWASP-recommended security headers."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Permissions-Policy"] = "geolocation=(), microphone=(), camera=()"
        # Invitation verification responses carry personal data
        response.headers["Cache-Control"] = "no-store"

        if get_settings().environment == "production":
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
        return response


# =============================================================================
# AUDIT LOGGING MIDDLEWARE
# =============================================================================

class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """Logs every request with its outcome and duration."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())[:8]
        start_time = time.time()
        request.state.request_id = request_id
        client_ip = get_client_ip(request)
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error("[%s] %s %s -> ERROR IP=%s error=%s", request_id, request.method, path, client_ip, e)
            raise

        duration_ms = int((time.time() - start_time) * 1000)
        line = "[%s] %s %s -> %s (%sms) IP=%s"
        args = (request_id, request.method, path, response.status_code, duration_ms, client_ip)
        if response.status_code >= 500:
            logger.error(line, *args)
        elif response.status_code >= 400:
            logger.warning(line, *args)
        else:
            logger.info(line, *args)

        response.headers["X-Request-ID"] = request_id
        return response


# =============================================================================
# SETUP FUNCTION
# =============================================================================

def setup_security_middleware(app: FastAPI) -> None:
    """Configure all security middleware."""
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SecurityHeadersMiddleware)
    app.add_middleware(AuditLoggingMiddleware)
    logger.info("Security middleware configured")
