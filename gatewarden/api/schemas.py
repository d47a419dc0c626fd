from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})

# Hex SHA-256 plus slack for clients that report their own hash format
MAX_FINGERPRINT_LENGTH = 256


def _normalize_login(value: str) -> str:
    # Strip zero-width characters before NFKC so lookalike logins collapse
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned).strip()


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    login: str = Field(..., min_length=1, max_length=128)
    totp_code: str = Field(..., min_length=1, max_length=10)
    fingerprint: Optional[str] = Field(default=None, max_length=MAX_FINGERPRINT_LENGTH)

    @field_validator("login")
    @classmethod
    def _validate_login(cls, value: str) -> str:
        normalized = _normalize_login(value)
        if not normalized:
            raise ValueError("login must not be blank")
        return normalized

    @field_validator("totp_code")
    @classmethod
    def _strip_code(cls, value: str) -> str:
        return value.strip().replace(" ", "")


class LoginResponse(BaseModel):
    account_id: str
    session_expires_at: datetime


class StatusResponse(BaseModel):
    authenticated: bool = True
    account_id: str
    ip: str
    expires_at: datetime


class RegisterFingerprintRequest(BaseModel):
    fingerprint: str = Field(..., min_length=1, max_length=MAX_FINGERPRINT_LENGTH)


class RegisterFingerprintResponse(BaseModel):
    fingerprint: str
    registered: bool = True


class LogoutResponse(BaseModel):
    logged_out: bool = True
