from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - validation_error (400)
    - conflict (400)
    - unauthorized (401)
    - token_expired (401)
    - token_revoked (401)
    - invalid_token (403)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email that is already registered (400)."""
    status_code = 400
    error_code = "conflict"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class TokenExpiredError(AuthenticationError):
    """Bearer token signature is valid but its lifetime has passed (401)."""
    error_code = "token_expired"


class TokenRevokedError(AuthenticationError):
    """Bearer token belongs to a session that was logged out (401)."""
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class TokenInvalidError(ServiceError):
    """Bearer token is malformed, tampered with or signed elsewhere (403)."""
    status_code = 403
    error_code = "invalid_token"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "ConflictError",
    "AuthenticationError",
    "TokenExpiredError",
    "TokenRevokedError",
    "ForbiddenError",
    "TokenInvalidError",
    "NotFoundError",
    "RateLimitedError",
    "ServerError",
]
