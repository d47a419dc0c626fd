"""Store contract and helpers shared between memory and postgres implementations.

The services depend only on :class:`GatewayStore`. Lookups return ``None``
when a record does not exist; failures to reach the backend raise
:class:`~gatewarden.storage.errors.StoreError`.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Protocol

from gatewarden.storage.models import Account, Session, TrustedIP


class GatewayStore(Protocol):
    # accounts
    def create_account(self, login: str, totp_secret: str) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_login(self, login: str) -> Optional[Account]: ...

    def find_account_by_fingerprint(self, fingerprint: str) -> Optional[Account]: ...

    def add_account_fingerprint(
        self, account_id: str, fingerprint: str
    ) -> Optional[Account]: ...

    def record_account_login(
        self, account_id: str, ip: str, at: datetime
    ) -> None: ...

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def get_session_by_token(self, token: str) -> Optional[Session]: ...

    def delete_session(self, session_id: str) -> None: ...

    def purge_expired_sessions(self, now: datetime) -> int: ...

    # ip trust
    def get_trusted_ip(self, ip: str) -> Optional[TrustedIP]: ...

    def upsert_trusted_ip(
        self, ip: str, expires_at: datetime, *, permanent: bool = False
    ) -> TrustedIP: ...

    def delete_temporary_ip(self, ip: str) -> bool: ...

    def purge_expired_ips(self, now: datetime) -> int: ...

    def verify_connection(self) -> None: ...


def unique_fingerprints(values: Iterable[str]) -> List[str]:
    """Drop duplicates and blanks while keeping first-seen order."""
    seen: set[str] = set()
    result: List[str] = []
    for value in values:
        if not value or value in seen:
            continue
        seen.add(value)
        result.append(value)
    return result


def ensure_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older rows) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def merge_trusted_ip(
    existing: Optional[TrustedIP], ip: str, expires_at: datetime, permanent: bool
) -> TrustedIP:
    """Resolve an upsert against the current record.

    A permanent record stays permanent; a temporary record takes the later
    of the two expiries.
    """
    if existing is None:
        return TrustedIP(ip=ip, expires_at=expires_at, permanent=permanent)
    return TrustedIP(
        ip=ip,
        expires_at=max(ensure_utc(existing.expires_at), expires_at),
        permanent=existing.permanent or permanent,
        created_at=existing.created_at,
    )
