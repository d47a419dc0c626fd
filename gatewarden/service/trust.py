from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from gatewarden.logging import get_logger
from gatewarden.storage.common import GatewayStore
from gatewarden.storage.models import TrustedIP, utcnow

logger = get_logger(__name__)

# Far enough out that no caller compares against it; permanent records skip expiry
_PERMANENT_EXPIRY = datetime(9999, 12, 31, tzinfo=timezone.utc)


class IPTrustStore:
    """Allow-list of origin IPs with expiring and permanent entries."""

    def __init__(
        self, store: GatewayStore, *, clock: Callable[[], datetime] = utcnow
    ) -> None:
        self.store = store
        self._clock = clock

    def is_trusted(self, ip: str) -> bool:
        if not ip:
            return False
        record = self.store.get_trusted_ip(ip)
        return record is not None and record.is_active(self._clock())

    def trust_temporarily(self, ip: str, ttl: timedelta) -> TrustedIP:
        record = self.store.upsert_trusted_ip(ip, self._clock() + ttl)
        logger.info(
            "ip_trusted",
            ip=ip,
            permanent=record.permanent,
            expires_at=record.expires_at.isoformat(),
        )
        return record

    def trust_permanently(self, ip: str) -> TrustedIP:
        record = self.store.upsert_trusted_ip(ip, _PERMANENT_EXPIRY, permanent=True)
        logger.info("ip_trusted", ip=ip, permanent=True)
        return record

    def untrust_if_temporary(self, ip: str) -> bool:
        removed = self.store.delete_temporary_ip(ip)
        if removed:
            logger.info("ip_untrusted", ip=ip)
        return removed

    def purge_expired(self, now: Optional[datetime] = None) -> int:
        return self.store.purge_expired_ips(now or self._clock())
