from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    login: str
    totp_secret: str
    fingerprints: List[str] = field(default_factory=list)
    last_ip: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def has_fingerprint(self, fingerprint: str) -> bool:
        return fingerprint in self.fingerprints


@dataclass
class Session:
    id: str
    account_id: str
    fingerprint: str
    ip: str
    token: str
    created_at: datetime
    expires_at: datetime

    @classmethod
    def new(
        cls,
        account_id: str,
        token: str,
        *,
        fingerprint: str,
        ip: str,
        ttl_seconds: int,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            fingerprint=fingerprint,
            ip=ip,
            token=token,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at


@dataclass
class TrustedIP:
    ip: str
    expires_at: datetime
    permanent: bool = False
    created_at: datetime = field(default_factory=utcnow)

    def is_active(self, now: Optional[datetime] = None) -> bool:
        # Permanent records never consult their expiry
        if self.permanent:
            return True
        return (now or utcnow()) < self.expires_at
