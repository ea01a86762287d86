from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for session and auth service exceptions.

    Each subclass carries an HTTP-style ``status_code`` and a stable
    ``error_code`` so callers can map failures onto their transport:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
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
    """Input validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credentials missing, invalid or no longer usable (401)."""
    status_code = 401
    error_code = "unauthorized"


class MalformedTokenError(AuthenticationError):
    """Token cannot be parsed, has a bad header or signature, or the wrong issuer."""
    error_code = "invalid_token"


class TokenExpiredError(AuthenticationError):
    """Token is outside its validity window."""
    error_code = "token_expired"


class NotFoundError(ServiceError):
    """Requested resource not found or not owned by the caller (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class InternalError(ServiceError):
    """Infrastructure failure surfaced with a generic message (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "MalformedTokenError",
    "TokenExpiredError",
    "NotFoundError",
    "ConflictError",
    "InternalError",
]
