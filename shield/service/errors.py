from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that clients can branch on:
    - invalid_credentials (401)
    - token_invalid (401)
    - token_expired (401)
    - session_not_found (401)
    - validation_error (400)
    - store_unavailable (503)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Email or secret did not match; never says which."""
    error_code = "invalid_credentials"


class TokenInvalidError(AuthenticationError):
    """Token was malformed or its signature did not verify."""
    error_code = "token_invalid"


class TokenExpiredError(AuthenticationError):
    error_code = "token_expired"


class SessionNotFoundError(AuthenticationError):
    """The session named by a token no longer exists."""
    error_code = "session_not_found"


class StoreUnavailableError(ServiceError):
    """Transaction or infrastructure fault in the backing store (503)."""
    status_code = 503
    error_code = "store_unavailable"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "TokenExpiredError",
    "SessionNotFoundError",
    "StoreUnavailableError",
    "ServerError",
]
