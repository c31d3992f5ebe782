from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - validation_error (400)
    - upstream_timeout (503)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed (401).

    Subclasses name the internal cause. Callers only ever see ``public_message``;
    the concrete class and ``reason`` are for logs.
    """

    status_code = 401
    error_code = "unauthorized"
    public_message = "authentication failed"

    def __init__(self, reason: str = "", *, detail: Optional[dict] = None) -> None:
        super().__init__(self.public_message, detail=detail)
        self.reason = reason or type(self).__name__


class InvalidCredential(AuthenticationError):
    """Unknown login or wrong secret; the two are indistinguishable."""


class InvalidToken(AuthenticationError):
    """Signature, algorithm, expiry, issuer, audience or revocation check failed."""


class ReuseDetected(AuthenticationError):
    """A refresh token was redeemed twice; the subject's chain is revoked."""


class SessionNotFound(AuthenticationError):
    """Session absent, expired, or bound to a different client."""


class OAuthStateMismatch(AuthenticationError):
    """OAuth callback state unknown, expired or already consumed."""


class AuthenticationFailed(AuthenticationError):
    """Generic failure of a multi-step flow (e.g. code exchange)."""


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class CsrfMismatch(ForbiddenError):
    """Anti-forgery token missing or not issued for this session."""

    def __init__(self, reason: str = "") -> None:
        super().__init__("missing or invalid CSRF token")
        self.reason = reason or "csrf_mismatch"


class UpstreamTimeout(ServiceError):
    """An external collaborator did not answer in time (503, retryable)."""

    status_code = 503
    error_code = "upstream_timeout"
    retryable = True

    def __init__(self, upstream: str, timeout: float) -> None:
        super().__init__(
            "upstream did not respond in time",
            detail={"retry": True},
        )
        self.upstream = upstream
        self.timeout = timeout


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredential",
    "InvalidToken",
    "ReuseDetected",
    "SessionNotFound",
    "OAuthStateMismatch",
    "AuthenticationFailed",
    "ForbiddenError",
    "CsrfMismatch",
    "UpstreamTimeout",
    "ServerError",
]
