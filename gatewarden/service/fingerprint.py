"""Device fingerprints derived from request headers.

A fingerprint is a heuristic identifier, not a secret: it narrows which
devices may reach the login form but never authenticates on its own.
"""

from __future__ import annotations

import hashlib
from dataclasses import astuple, dataclass
from typing import Mapping, Optional

from gatewarden.logging import get_logger
from gatewarden.storage.common import GatewayStore
from gatewarden.storage.models import Account

logger = get_logger(__name__)

# Order is part of the hash; changing it invalidates every stored fingerprint
FINGERPRINT_HEADERS = (
    "user-agent",
    "accept-language",
    "sec-ch-ua",
    "sec-ch-ua-platform",
    "sec-ch-ua-mobile",
)


@dataclass(frozen=True)
class FingerprintAttributes:
    user_agent: str = ""
    accept_language: str = ""
    sec_ch_ua: str = ""
    sec_ch_ua_platform: str = ""
    sec_ch_ua_mobile: str = ""

    @classmethod
    def from_headers(cls, headers: Mapping[str, str]) -> "FingerprintAttributes":
        lowered = {key.lower(): value for key, value in headers.items()}
        return cls(*(lowered.get(name, "") or "" for name in FINGERPRINT_HEADERS))


def compute_fingerprint(attributes: FingerprintAttributes) -> str:
    digest = hashlib.sha256()
    for component in astuple(attributes):
        encoded = component.encode("utf-8")
        # Length prefix keeps ("ab", "c") and ("a", "bc") apart
        digest.update(len(encoded).to_bytes(4, "big"))
        digest.update(encoded)
    return digest.hexdigest()


class FingerprintService:
    def __init__(self, store: GatewayStore) -> None:
        self.store = store

    @staticmethod
    def is_trusted(account: Account, fingerprint: str) -> bool:
        return bool(fingerprint) and account.has_fingerprint(fingerprint)

    def trust(self, account: Account, fingerprint: str) -> Account:
        """Add ``fingerprint`` to the account's trusted set; no-op when present."""

        if self.is_trusted(account, fingerprint):
            return account
        updated = self.store.add_account_fingerprint(account.id, fingerprint)
        if updated is None:
            return account
        logger.info("fingerprint_trusted", account_id=account.id)
        return updated

    def find_trusting_account(self, fingerprint: str) -> Optional[Account]:
        if not fingerprint:
            return None
        return self.store.find_account_by_fingerprint(fingerprint)
