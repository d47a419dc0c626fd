from __future__ import annotations

import base64
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from gatewarden.logging import get_logger
from gatewarden.service.errors import (
    EntropyError,
    OriginMismatch,
    SessionExpired,
    SessionNotFound,
)
from gatewarden.storage.common import GatewayStore
from gatewarden.storage.models import Account, Session, utcnow

logger = get_logger(__name__)

TOKEN_BYTES = 32


@dataclass(frozen=True)
class Identity:
    """Authenticated caller resolved from a valid session."""

    account_id: str
    session_id: str
    ip: str
    expires_at: datetime


def generate_token() -> str:
    try:
        raw = secrets.token_bytes(TOKEN_BYTES)
    except (NotImplementedError, OSError) as exc:
        logger.error("session_entropy_unavailable", error=str(exc))
        raise EntropyError("secure randomness unavailable") from exc
    return base64.b32encode(raw).decode("ascii").rstrip("=")


class SessionManager:
    """Issues and validates opaque session tokens bound to account and origin IP."""

    def __init__(
        self, store: GatewayStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def issue(
        self, account: Account, fingerprint: str, origin_ip: str, ttl: timedelta
    ) -> Session:
        session = Session.new(
            account.id,
            generate_token(),
            fingerprint=fingerprint,
            ip=origin_ip,
            ttl_seconds=int(ttl.total_seconds()),
            now=self._clock(),
        )
        # Store errors propagate; the token is never handed out unpersisted
        stored = self.store.create_session(session)
        logger.info(
            "session_issued",
            account_id=account.id,
            session_id=stored.id,
            expires_at=stored.expires_at.isoformat(),
        )
        return stored

    def validate(self, token: Optional[str], presented_ip: str) -> Identity:
        """Resolve ``token`` to an :class:`Identity`.

        Checks run in a fixed order: existence, expiry, then origin IP.
        The device fingerprint bound at issuance is not compared here.
        """

        if not token:
            raise SessionNotFound("invalid session")
        session = self.store.get_session_by_token(token)
        if session is None:
            raise SessionNotFound("invalid session")
        if session.is_expired(self._clock()):
            raise SessionExpired("invalid session", detail={"session_id": session.id})
        if presented_ip != session.ip:
            raise OriginMismatch("invalid session", detail={"session_id": session.id})
        return Identity(
            account_id=session.account_id,
            session_id=session.id,
            ip=session.ip,
            expires_at=session.expires_at,
        )

    def revoke(self, session_id: str) -> None:
        self.store.delete_session(session_id)
        logger.info("session_revoked", session_id=session_id)

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        removed = self.store.purge_expired_sessions(now or self._clock())
        if removed:
            logger.info("sessions_purged", count=removed)
        return removed
