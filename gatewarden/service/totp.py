from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import time
from typing import Optional, Tuple
from urllib.parse import quote, urlencode

from gatewarden.logging import get_logger
from gatewarden.service.errors import EntropyError

logger = get_logger(__name__)

SECRET_BYTES = 20
DIGITS = 6
INTERVAL_SECONDS = 30
# One adjacent step either side for client clock skew
SKEW_STEPS = 1


def generate_secret() -> str:
    """Return a fresh 160-bit base32 secret without padding."""
    try:
        raw = os.urandom(SECRET_BYTES)
    except (NotImplementedError, OSError) as exc:
        logger.error("totp_entropy_unavailable", error=str(exc))
        raise EntropyError("secure randomness unavailable") from exc
    return base64.b32encode(raw).decode("ascii").rstrip("=")


def _decode_secret(secret: str) -> Optional[bytes]:
    normalized = secret.strip().replace(" ", "").upper()
    if not normalized:
        return None
    padded = normalized + "=" * ((8 - len(normalized) % 8) % 8)
    try:
        return base64.b32decode(padded, True)
    except (binascii.Error, ValueError):
        return None


def code_at(secret: str, timestamp: float) -> str:
    """Return the one-time code for ``timestamp``, or "" for a malformed secret."""
    key = _decode_secret(secret)
    if key is None:
        logger.warning("totp_secret_invalid")
        return ""
    counter = int(timestamp // INTERVAL_SECONDS).to_bytes(8, "big")
    digest = hmac.new(key, counter, hashlib.sha1).digest()
    offset = digest[-1] & 0x0F
    code_int = (int.from_bytes(digest[offset : offset + 4], "big") & 0x7FFFFFFF) % (
        10**DIGITS
    )
    return str(code_int).zfill(DIGITS)


def verify(secret: str, code: str, *, at: Optional[float] = None) -> bool:
    if not code or len(code) != DIGITS or not code.isdigit():
        return False
    now = time.time() if at is None else at
    for step in range(-SKEW_STEPS, SKEW_STEPS + 1):
        generated = code_at(secret, now + step * INTERVAL_SECONDS)
        # Constant-time comparison
        if generated and hmac.compare_digest(generated, code):
            return True
    return False


class TOTPVerifier:
    """Provisions and checks RFC 6238 codes (HMAC-SHA1, 6 digits, 30 s)."""

    def __init__(self, issuer: str) -> None:
        self.issuer = issuer

    def provision(self, login: str) -> Tuple[str, str]:
        secret = generate_secret()
        return secret, self.enrollment_uri(login, secret)

    def enrollment_uri(self, login: str, secret: str) -> str:
        label = quote(f"{self.issuer}:{login}", safe=":@")
        params = urlencode(
            {
                "secret": secret,
                "issuer": self.issuer,
                "algorithm": "SHA1",
                "digits": DIGITS,
                "period": INTERVAL_SECONDS,
            },
            quote_via=quote,
        )
        return f"otpauth://totp/{label}?{params}"

    def verify(self, secret: str, code: str, *, at: Optional[float] = None) -> bool:
        return verify(secret, code, at=at)

    def code_at(self, secret: str, timestamp: float) -> str:
        return code_at(secret, timestamp)
