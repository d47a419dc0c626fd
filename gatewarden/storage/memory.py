from __future__ import annotations

import base64
import hashlib
import json
import os
import secrets
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from cryptography.fernet import Fernet, InvalidToken

from gatewarden.logging import get_logger
from gatewarden.storage.common import ensure_utc, merge_trusted_ip, unique_fingerprints
from gatewarden.storage.errors import ConstraintViolation, StoreError
from gatewarden.storage.models import Account, Session, TrustedIP


class MemoryStore:
    """In-memory backing store with a JSON snapshot under ``fs_root``.

    TOTP secrets are Fernet-encrypted in the snapshot; the in-memory
    records hold them in the clear.
    """

    def __init__(
        self,
        fs_root: str = "/tmp/gatewarden",
        *,
        secret_key: str | None = None,
        persist: bool = True,
    ) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        self.trusted_ips: Dict[str, TrustedIP] = {}
        # RLock for all data operations; nested acquisitions within a thread are allowed
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
        self._secret_cipher = self._build_secret_cipher(secret_key)

        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "gateway_store.json"

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    def _build_secret_cipher(self, key_material: str | None) -> Fernet:
        material = key_material or os.getenv("SECRET_ENCRYPTION_KEY")
        if not material:
            key_path = self.fs_root / ".secret_key"
            try:
                material = key_path.read_text().strip() if key_path.exists() else None
            except OSError:
                material = None
            if not material:
                material = secrets.token_urlsafe(64)
                if self.persist:
                    try:
                        key_path.write_text(material)
                        os.chmod(key_path, 0o600)
                    except OSError as exc:
                        raise RuntimeError("Unable to persist secret encryption key") from exc
        return Fernet(self._derive_cipher_key(material))

    def _encrypt_secret(self, secret: str) -> str:
        return self._secret_cipher.encrypt(secret.encode()).decode()

    def _decrypt_secret(self, secret: str) -> str:
        try:
            return self._secret_cipher.decrypt(secret.encode()).decode()
        except InvalidToken as exc:
            self.logger.error("totp_secret_decrypt_failed")
            raise StoreError("stored secret cannot be decrypted") from exc

    def verify_connection(self) -> None:
        if self.persist and not self.fs_root.is_dir():
            raise StoreError("state directory missing", {"path": str(self.fs_root)})

    # accounts
    def create_account(self, login: str, totp_secret: str) -> Account:
        with self._data_lock:
            if any(existing.login == login for existing in self.accounts.values()):
                raise ConstraintViolation("login already exists", {"field": "login"})
            account = Account(id=str(uuid.uuid4()), login=login, totp_secret=totp_secret)
            self.accounts[account.id] = account
            self._persist_state()
            return self._copy_account(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return self._copy_account(account) if account else None

    def get_account_by_login(self, login: str) -> Optional[Account]:
        with self._data_lock:
            account = next((a for a in self.accounts.values() if a.login == login), None)
            return self._copy_account(account) if account else None

    def find_account_by_fingerprint(self, fingerprint: str) -> Optional[Account]:
        if not fingerprint:
            return None
        with self._data_lock:
            account = next(
                (a for a in self.accounts.values() if fingerprint in a.fingerprints),
                None,
            )
            return self._copy_account(account) if account else None

    def add_account_fingerprint(
        self, account_id: str, fingerprint: str
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if fingerprint not in account.fingerprints:
                account.fingerprints = unique_fingerprints(
                    [*account.fingerprints, fingerprint]
                )
                self._persist_state()
            return self._copy_account(account)

    def record_account_login(self, account_id: str, ip: str, at: datetime) -> None:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return
            account.last_ip = ip
            account.last_login_at = at
            self._persist_state()

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation(
                    "account does not exist", {"account_id": session.account_id}
                )
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation("session token collision", {"field": "token"})
            self.sessions[session.id] = session
            self._persist_state()
            return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            return next((s for s in self.sessions.values() if s.token == token), None)

    def delete_session(self, session_id: str) -> None:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.is_expired(now)]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    # ip trust
    def get_trusted_ip(self, ip: str) -> Optional[TrustedIP]:
        with self._data_lock:
            return self.trusted_ips.get(ip)

    def upsert_trusted_ip(
        self, ip: str, expires_at: datetime, *, permanent: bool = False
    ) -> TrustedIP:
        with self._data_lock:
            record = merge_trusted_ip(
                self.trusted_ips.get(ip), ip, expires_at, permanent
            )
            self.trusted_ips[ip] = record
            self._persist_state()
            return record

    def delete_temporary_ip(self, ip: str) -> bool:
        with self._data_lock:
            record = self.trusted_ips.get(ip)
            if record is None or record.permanent:
                return False
            self.trusted_ips.pop(ip, None)
            self._persist_state()
            return True

    def purge_expired_ips(self, now: datetime) -> int:
        with self._data_lock:
            stale = [ip for ip, rec in self.trusted_ips.items() if not rec.is_active(now)]
            for ip in stale:
                self.trusted_ips.pop(ip, None)
            if stale:
                self._persist_state()
            return len(stale)

    @staticmethod
    def _copy_account(account: Account) -> Account:
        # Callers must not mutate the stored record outside the lock
        return Account(
            id=account.id,
            login=account.login,
            totp_secret=account.totp_secret,
            fingerprints=list(account.fingerprints),
            last_ip=account.last_ip,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )

    # snapshot
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "trusted_ips": [
                self._serialize_trusted_ip(r) for r in self.trusted_ips.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreError(f"failed to load in-memory state: {exc}") from exc
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.trusted_ips = {
            r["ip"]: self._deserialize_trusted_ip(r)
            for r in data.get("trusted_ips", [])
        }
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_account(self, account: Account) -> dict:
        return {
            "id": account.id,
            "login": account.login,
            "totp_secret": self._encrypt_secret(account.totp_secret),
            "fingerprints": list(account.fingerprints),
            "last_ip": account.last_ip,
            "last_login_at": self._serialize_datetime(account.last_login_at),
            "created_at": self._serialize_datetime(account.created_at),
        }

    def _deserialize_account(self, data: dict) -> Account:
        return Account(
            id=str(data["id"]),
            login=data["login"],
            totp_secret=self._decrypt_secret(data["totp_secret"]),
            fingerprints=unique_fingerprints(data.get("fingerprints") or []),
            last_ip=data.get("last_ip"),
            last_login_at=self._deserialize_datetime(data.get("last_login_at")),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "account_id": session.account_id,
            "fingerprint": session.fingerprint,
            "ip": session.ip,
            "token": session.token,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            account_id=data["account_id"],
            fingerprint=data.get("fingerprint", ""),
            ip=data["ip"],
            token=data["token"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_trusted_ip(self, record: TrustedIP) -> dict:
        return {
            "ip": record.ip,
            "expires_at": self._serialize_datetime(record.expires_at),
            "permanent": record.permanent,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_trusted_ip(self, data: dict) -> TrustedIP:
        return TrustedIP(
            ip=data["ip"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            permanent=bool(data.get("permanent", False)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
