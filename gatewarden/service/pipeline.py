"""Per-request access decisions.

Each step returns a :class:`Verdict` instead of raising so callers can log or
render denials uniformly. Any store failure inside a step denies with
``UNAVAILABLE``; the gateway fails closed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from gatewarden.logging import get_logger
from gatewarden.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    OriginMismatch,
    RateLimitedError,
    ServerError,
    SessionError,
    ValidationError,
)
from gatewarden.service.fingerprint import FingerprintService
from gatewarden.service.rate_limit import RateLimiter
from gatewarden.service.sessions import Identity, SessionManager
from gatewarden.service.totp import TOTPVerifier
from gatewarden.service.trust import IPTrustStore
from gatewarden.storage.common import GatewayStore
from gatewarden.storage.errors import ConstraintViolation, StoreError
from gatewarden.storage.models import Session, utcnow

logger = get_logger(__name__)


class DenyReason(str, Enum):
    RATE_LIMITED = "rate_limited"
    UNTRUSTED_ORIGIN = "untrusted_origin"
    INVALID_CREDENTIALS = "invalid_credentials"
    INVALID_SESSION = "invalid_session"
    ORIGIN_MISMATCH = "origin_mismatch"
    UNAVAILABLE = "unavailable"


_DENY_ERRORS = {
    DenyReason.RATE_LIMITED: (RateLimitedError, "too many requests"),
    DenyReason.UNTRUSTED_ORIGIN: (ForbiddenError, "access denied"),
    DenyReason.INVALID_CREDENTIALS: (InvalidCredentialsError, "invalid credentials"),
    # Both session denials share one message so callers cannot probe which check failed
    DenyReason.INVALID_SESSION: (AuthenticationError, "invalid session"),
    DenyReason.ORIGIN_MISMATCH: (AuthenticationError, "invalid session"),
    DenyReason.UNAVAILABLE: (ServerError, "service unavailable"),
}


@dataclass(frozen=True)
class Verdict:
    allowed: bool
    reason: Optional[DenyReason] = None
    identity: Optional[Identity] = None
    session: Optional[Session] = None

    @classmethod
    def allow(
        cls, identity: Optional[Identity] = None, session: Optional[Session] = None
    ) -> "Verdict":
        return cls(True, identity=identity, session=session)

    @classmethod
    def deny(cls, reason: DenyReason) -> "Verdict":
        return cls(False, reason=reason)

    def raise_for_deny(self) -> None:
        if self.allowed or self.reason is None:
            return
        error_cls, message = _DENY_ERRORS[self.reason]
        raise error_cls(message, detail={"reason": self.reason.value})


class AccessPipeline:
    def __init__(
        self,
        store: GatewayStore,
        *,
        limiter: RateLimiter,
        ip_trust: IPTrustStore,
        fingerprints: FingerprintService,
        sessions: SessionManager,
        verifier: TOTPVerifier,
        session_ttl: timedelta,
        allowed_ip: Optional[str] = None,
        auto_trust_fingerprints: bool = True,
    ) -> None:
        self.store = store
        self.limiter = limiter
        self.ip_trust = ip_trust
        self.fingerprints = fingerprints
        self.sessions = sessions
        self.verifier = verifier
        self.session_ttl = session_ttl
        self.allowed_ip = allowed_ip
        self.auto_trust_fingerprints = auto_trust_fingerprints

    def check_rate(self, ip: str) -> Verdict:
        if self.limiter.allow(ip):
            return Verdict.allow()
        return Verdict.deny(DenyReason.RATE_LIMITED)

    def check_origin(self, ip: str, fingerprint: str) -> Verdict:
        if self.allowed_ip and ip == self.allowed_ip:
            return Verdict.allow()
        try:
            if self.ip_trust.is_trusted(ip):
                return Verdict.allow()
            if self.fingerprints.find_trusting_account(fingerprint) is not None:
                return Verdict.allow()
        except StoreError as exc:
            return self._unavailable("check_origin", exc)
        logger.warning("origin_denied", ip=ip)
        return Verdict.deny(DenyReason.UNTRUSTED_ORIGIN)

    def login(self, login: str, code: str, fingerprint: str, ip: str) -> Verdict:
        """Verify ``code`` and open a session bound to ``ip``.

        The session row is written first; IP and device trust follow it. A
        store failure at any later step revokes the session and drops any
        IP trust this call created, so a denied login leaves no trust behind.
        """

        try:
            account = self.store.get_account_by_login(login)
        except StoreError as exc:
            return self._unavailable("login", exc)
        if account is None or not self.verifier.verify(account.totp_secret, code):
            logger.warning("login_failed", ip=ip)
            return Verdict.deny(DenyReason.INVALID_CREDENTIALS)

        try:
            session = self.sessions.issue(account, fingerprint, ip, self.session_ttl)
        except (StoreError, ConstraintViolation) as exc:
            return self._unavailable("login", exc)

        ip_was_trusted = True
        try:
            ip_was_trusted = self.ip_trust.is_trusted(ip)
            self.ip_trust.trust_temporarily(ip, self.session_ttl)
            if (
                self.auto_trust_fingerprints
                and fingerprint
                and not self.fingerprints.is_trusted(account, fingerprint)
            ):
                account = self.fingerprints.trust(account, fingerprint)
        except (StoreError, ConstraintViolation) as exc:
            self._rollback_login(session.id, ip, drop_ip=not ip_was_trusted)
            return self._unavailable("login", exc)

        try:
            self.store.record_account_login(account.id, ip, utcnow())
        except StoreError as exc:
            # Bookkeeping only; the login itself is already committed
            logger.warning("login_bookkeeping_failed", account_id=account.id, error=str(exc))

        identity = Identity(
            account_id=account.id,
            session_id=session.id,
            ip=ip,
            expires_at=session.expires_at,
        )
        logger.info("login_succeeded", account_id=account.id, ip=ip)
        return Verdict.allow(identity, session)

    def _rollback_login(self, session_id: str, ip: str, *, drop_ip: bool) -> None:
        try:
            self.sessions.revoke(session_id)
            if drop_ip:
                self.ip_trust.untrust_if_temporary(ip)
        except StoreError as exc:
            logger.error("login_rollback_failed", session_id=session_id, error=str(exc))

    def authenticate(self, token: Optional[str], ip: str) -> Verdict:
        try:
            identity = self.sessions.validate(token, ip)
        except OriginMismatch as exc:
            logger.warning("session_origin_mismatch", ip=ip, **exc.detail)
            return Verdict.deny(DenyReason.ORIGIN_MISMATCH)
        except SessionError as exc:
            logger.info("session_rejected", ip=ip, error=type(exc).__name__)
            return Verdict.deny(DenyReason.INVALID_SESSION)
        except StoreError as exc:
            return self._unavailable("authenticate", exc)
        return Verdict.allow(identity)

    def logout(self, identity: Identity, ip: str) -> Verdict:
        try:
            self.sessions.revoke(identity.session_id)
            self.ip_trust.untrust_if_temporary(ip)
        except StoreError as exc:
            return self._unavailable("logout", exc)
        logger.info("logout_succeeded", account_id=identity.account_id, ip=ip)
        return Verdict.allow(identity)

    def register_fingerprint(self, identity: Identity, fingerprint: str) -> Verdict:
        """Trust ``fingerprint`` for the caller's account.

        Raises :class:`ValidationError` for an empty fingerprint and
        :class:`ConflictError` when it is already trusted.
        """

        if not fingerprint:
            raise ValidationError("fingerprint is required", detail={"field": "fingerprint"})
        try:
            account = self.store.get_account(identity.account_id)
            if account is None:
                return Verdict.deny(DenyReason.INVALID_SESSION)
            if self.fingerprints.is_trusted(account, fingerprint):
                raise ConflictError("fingerprint already registered")
            self.fingerprints.trust(account, fingerprint)
        except StoreError as exc:
            return self._unavailable("register_fingerprint", exc)
        return Verdict.allow(identity)

    @staticmethod
    def _unavailable(step: str, exc: Exception) -> Verdict:
        logger.error(
            "store_failure",
            step=step,
            error=str(exc),
            error_type=type(exc).__name__,
        )
        return Verdict.deny(DenyReason.UNAVAILABLE)


__all__ = ["AccessPipeline", "DenyReason", "Verdict"]
