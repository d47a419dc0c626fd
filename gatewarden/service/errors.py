from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the response envelope:
    - unauthorized (401)
    - forbidden (403)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
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
    """Unknown login or wrong one-time code (401)."""


class SessionError(AuthenticationError):
    """Session token did not validate.

    Subclasses tell the failures apart for logging; the HTTP layer renders
    them all with the same message.
    """


class SessionNotFound(SessionError):
    pass


class SessionExpired(SessionError):
    pass


class OriginMismatch(SessionError):
    """Token presented from an IP other than the one bound at issuance."""


class ForbiddenError(ServiceError):
    """Origin or device is not trusted (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class EntropyError(ServerError):
    """Secure randomness is unavailable; the operation is aborted."""


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "SessionError",
    "SessionNotFound",
    "SessionExpired",
    "OriginMismatch",
    "ForbiddenError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "EntropyError",
]
