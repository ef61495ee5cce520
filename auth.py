"""
Authentication Middleware - inbound API key validation and rate limiting.

Callers (the Genesys integration, scripts) present the gateway API key in
either `X-API-Key` or `Authorization: Bearer <key>`. This is unrelated to the
bearer token the gateway itself uses towards TDX.

Rules:
    - /api/* is protected; health, root, metrics and docs are public.
    - development with no API_KEY configured: auth skipped (logged).
    - any other environment with no API_KEY configured: 500.
    - missing or wrong key: 401.
    - ADMIN_API_KEY additionally unlocks the cache admin endpoints.

Keys are compared in constant time and only ever logged truncated.
"""

import logging
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse

from config import Settings
from rate_limiter import TokenBucketRateLimiter

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {"/", "/health", "/health/detailed", "/metrics", "/docs", "/redoc", "/openapi.json"}
PROTECTED_PREFIX = "/api/"


def extract_api_key(request: Request) -> Optional[str]:
    """Read the key from X-API-Key, else from an Authorization bearer header."""
    api_key = request.headers.get("X-API-Key")
    if api_key:
        return api_key

    authorization = request.headers.get("Authorization", "")
    if authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


class APIKeyAuth:
    """API key authentication with an optional admin role."""

    def __init__(self, settings: Settings, rate_limiter: Optional[TokenBucketRateLimiter] = None):
        self.rate_limiter = rate_limiter
        self.api_key = settings.api_key
        self.admin_key = settings.admin_api_key
        self.development = settings.is_development

        if not self.api_key:
            if self.development:
                logger.warning("Development mode: API_KEY not set, API key authentication skipped")
            else:
                logger.error("API_KEY not configured - protected endpoints will answer 500")
        else:
            logger.info(f"API key authentication enabled (admin key: {'yes' if self.admin_key else 'no'})")

    def _validate_key(self, api_key: str) -> tuple[bool, str]:
        """Return (is_valid, role) where role is "admin" or "user"."""
        if self.admin_key and secrets.compare_digest(api_key, self.admin_key):
            return True, "admin"
        if self.api_key and secrets.compare_digest(api_key, self.api_key):
            return True, "user"
        return False, ""

    async def check_rate_limit(self, request: Request) -> None:
        """
        Consume one request from the caller's bucket (keyed by client IP).

        Raises:
            HTTPException(429) when the bucket is empty
        """
        if not self.rate_limiter:
            return

        allowed, rate_info = await self.rate_limiter.check_rate_limit(_client_host(request))
        if not allowed:
            logger.warning(f"Rate limited: {_client_host(request)} {request.method} {request.url.path}")
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many requests from this IP, please try again later.",
                headers={
                    "X-RateLimit-Limit": str(rate_info["limit"]),
                    "X-RateLimit-Remaining": str(rate_info["remaining"]),
                    "X-RateLimit-Reset": str(rate_info["reset_at"]),
                    "Retry-After": str(max(0, rate_info["reset_at"] - int(datetime.now(timezone.utc).timestamp())))
                }
            )
        request.state.rate_limit_info = rate_info

    def authenticate_request(self, request: Request) -> str:
        """
        Validate the caller's API key and return its role.

        Raises:
            HTTPException(500) if no key is configured outside development
            HTTPException(401) if the key is missing or invalid
        """
        if not self.api_key and not self.admin_key:
            if self.development:
                request.state.role = "user"
                return "user"
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Authentication not properly configured"
            )

        api_key = extract_api_key(request)
        if not api_key:
            logger.warning(f"Missing API key: {_client_host(request)} {request.method} {request.url.path}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="API key required. Provide key in X-API-Key header or Authorization: Bearer {key}",
                headers={"WWW-Authenticate": "ApiKey"}
            )

        is_valid, role = self._validate_key(api_key)
        if not is_valid:
            logger.warning(f"Invalid API key: {api_key[:4]}... (len={len(api_key)}) from {_client_host(request)}")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid API key",
                headers={"WWW-Authenticate": "ApiKey"}
            )

        request.state.role = role
        logger.debug(f"Authenticated {_client_host(request)} as {role}")
        return role

    def require_admin(self, request: Request) -> None:
        """
        Require admin role for an endpoint.

        Raises:
            HTTPException(403) if not admin
        """
        role = getattr(request.state, "role", None)

        if role != "admin":
            logger.warning(f"Forbidden: {request.url.path} requires admin, got {role}")
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Admin access required"
            )


_ERROR_TITLES = {
    401: "Unauthorized",
    403: "Forbidden",
    429: "Too Many Requests",
    500: "Server Configuration Error",
}


def _error_response(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": _ERROR_TITLES.get(exc.status_code, "Error"),
            "message": exc.detail,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
        },
        headers=exc.headers or {}
    )


async def auth_middleware(request: Request, call_next, auth: Optional[APIKeyAuth]):
    """
    Rate limit then authenticate every /api/* request.

    Public routes (PUBLIC_PATHS, anything outside /api/) pass straight
    through. Failures are answered here without reaching the endpoint.
    """
    if auth is None or request.url.path in PUBLIC_PATHS or not request.url.path.startswith(PROTECTED_PREFIX):
        return await call_next(request)

    try:
        await auth.check_rate_limit(request)
        auth.authenticate_request(request)
    except HTTPException as exc:
        return _error_response(request, exc)

    response = await call_next(request)

    if hasattr(request.state, "rate_limit_info"):
        info = request.state.rate_limit_info
        response.headers["X-RateLimit-Limit"] = str(info["limit"])
        response.headers["X-RateLimit-Remaining"] = str(info["remaining"])
        response.headers["X-RateLimit-Reset"] = str(info["reset_at"])

    return response
