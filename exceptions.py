"""
Domain exceptions for the TDX gateway.

The upstream client and the knowledge service raise these; main.py maps them
to HTTP responses. Nothing here knows about the status codes we send to
our own callers.
"""

import asyncio
from typing import Optional


class GatewayError(Exception):
    """Base exception for all gateway domain errors."""
    pass


class AuthError(GatewayError):
    """
    No way to obtain a TDX bearer token.

    Raised when no authentication method is configured or the login call
    failed. Maps to: 500 (configuration failure).
    """

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.upstream_status = upstream_status


class TDXServiceError(GatewayError):
    """
    An upstream call failed for any reason other than "not found".

    Carries the upstream status/reason when the upstream answered at all.
    Maps to: 502 Bad Gateway.
    """

    kind = "TDX_SERVICE_ERROR"

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        upstream_status_text: Optional[str] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.upstream_status = upstream_status
        self.upstream_status_text = upstream_status_text
        self.cause = cause

    @classmethod
    def wrap(cls, message: str, error: BaseException) -> "TDXServiceError":
        """Build the service error for a failed upstream call."""
        if isinstance(error, asyncio.TimeoutError):
            return TDXTimeoutError(message, cause=error)
        if isinstance(error, UpstreamHTTPError):
            return cls(
                message,
                upstream_status=error.status,
                upstream_status_text=error.reason,
                cause=error,
            )
        return cls(message, cause=error)


class TDXTimeoutError(TDXServiceError):
    """Upstream call exceeded the configured timeout. Maps to: 504 Gateway Timeout."""
    pass


class TDXConnectionError(GatewayError):
    """Connectivity probe against TDX failed. Health endpoints report 503."""
    pass


class UpstreamHTTPError(GatewayError):
    """Raw non-2xx answer from TDX, before it is wrapped by an operation."""

    def __init__(self, status: int, reason: Optional[str], message: str, url: str):
        super().__init__(f"HTTP {status}: {message}")
        self.status = status
        self.reason = reason
        self.url = url
