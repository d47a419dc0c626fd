from __future__ import annotations

import contextlib
import json
import uuid
from datetime import datetime
from typing import Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from gatewarden.logging import get_logger
from gatewarden.storage.common import ensure_utc, unique_fingerprints
from gatewarden.storage.errors import ConstraintViolation, StoreError
from gatewarden.storage.models import Account, Session, TrustedIP

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS gateway_account (
        id TEXT PRIMARY KEY,
        login TEXT NOT NULL UNIQUE,
        totp_secret TEXT NOT NULL,
        fingerprints JSONB NOT NULL DEFAULT '[]'::jsonb,
        last_ip VARCHAR(45),
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gateway_session (
        id TEXT PRIMARY KEY,
        account_id TEXT NOT NULL REFERENCES gateway_account(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        fingerprint TEXT NOT NULL,
        ip VARCHAR(45) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS gateway_session_expires_idx ON gateway_session (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS gateway_trusted_ip (
        ip VARCHAR(45) PRIMARY KEY,
        expires_at TIMESTAMPTZ NOT NULL,
        permanent BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed gateway store.

    Every public method runs as a single autocommitted statement (or a short
    transaction), so callers see read-committed isolation per operation.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        try:
            self.pool = ConnectionPool(
                self.dsn,
                min_size=min_size,
                max_size=max_size,
                kwargs={"row_factory": dict_row, "autocommit": False},
                open=True,
            )
        except (psycopg.OperationalError, PoolTimeout) as exc:
            raise StoreError("database unavailable", {"error": str(exc)}) from exc
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, psycopg.InterfaceError, PoolTimeout) as exc:
            self.logger.error("store_unavailable", error=str(exc))
            raise StoreError("database unavailable", {"error_type": type(exc).__name__}) from exc

    def _ensure_schema(self) -> None:
        """Create gateway tables when missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        self.logger.info("store_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(self, login: str, totp_secret: str) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO gateway_account (id, login, totp_secret, fingerprints)
                    VALUES (%s, %s, %s, '[]'::jsonb)
                    RETURNING *
                    """,
                    (account_id, login, totp_secret),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("login already exists", {"field": "login"})
        return self._row_to_account(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gateway_account WHERE id = %s", (account_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_login(self, login: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gateway_account WHERE login = %s", (login,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def find_account_by_fingerprint(self, fingerprint: str) -> Optional[Account]:
        if not fingerprint:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gateway_account WHERE fingerprints @> %s::jsonb LIMIT 1",
                (json.dumps([fingerprint]),),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def add_account_fingerprint(
        self, account_id: str, fingerprint: str
    ) -> Optional[Account]:
        encoded = json.dumps([fingerprint])
        with self._connect() as conn:
            # Containment guard keeps the append idempotent under concurrent logins
            row = conn.execute(
                """
                UPDATE gateway_account
                SET fingerprints = fingerprints || %s::jsonb
                WHERE id = %s AND NOT fingerprints @> %s::jsonb
                RETURNING *
                """,
                (encoded, account_id, encoded),
            ).fetchone()
            if row is None:
                row = conn.execute(
                    "SELECT * FROM gateway_account WHERE id = %s", (account_id,)
                ).fetchone()
        return self._row_to_account(row) if row else None

    def record_account_login(self, account_id: str, ip: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE gateway_account SET last_ip = %s, last_login_at = %s WHERE id = %s",
                (ip, at, account_id),
            )

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO gateway_session (id, account_id, token, fingerprint, ip, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.token,
                        session.fingerprint,
                        session.ip,
                        session.created_at,
                        session.expires_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "account does not exist", {"account_id": session.account_id}
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token collision", {"field": "token"})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gateway_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gateway_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM gateway_session WHERE id = %s", (session_id,))

    def purge_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gateway_session WHERE expires_at <= %s", (now,)
            )
            return result.rowcount

    # ip trust
    def get_trusted_ip(self, ip: str) -> Optional[TrustedIP]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM gateway_trusted_ip WHERE ip = %s", (ip,)
            ).fetchone()
        return self._row_to_trusted_ip(row) if row else None

    def upsert_trusted_ip(
        self, ip: str, expires_at: datetime, *, permanent: bool = False
    ) -> TrustedIP:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO gateway_trusted_ip (ip, expires_at, permanent)
                VALUES (%s, %s, %s)
                ON CONFLICT (ip) DO UPDATE
                SET expires_at = GREATEST(gateway_trusted_ip.expires_at, EXCLUDED.expires_at),
                    permanent = gateway_trusted_ip.permanent OR EXCLUDED.permanent
                RETURNING *
                """,
                (ip, expires_at, permanent),
            ).fetchone()
        return self._row_to_trusted_ip(row)

    def delete_temporary_ip(self, ip: str) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gateway_trusted_ip WHERE ip = %s AND permanent = FALSE",
                (ip,),
            )
            return result.rowcount > 0

    def purge_expired_ips(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM gateway_trusted_ip WHERE permanent = FALSE AND expires_at <= %s",
                (now,),
            )
            return result.rowcount

    # row mapping
    @staticmethod
    def _row_to_account(row: dict) -> Account:
        fingerprints = row.get("fingerprints") or []
        if isinstance(fingerprints, str):
            fingerprints = json.loads(fingerprints)
        last_login_at = row.get("last_login_at")
        return Account(
            id=str(row["id"]),
            login=row["login"],
            totp_secret=row["totp_secret"],
            fingerprints=unique_fingerprints(fingerprints),
            last_ip=row.get("last_ip"),
            last_login_at=ensure_utc(last_login_at) if last_login_at else None,
            created_at=ensure_utc(row["created_at"]),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            fingerprint=row["fingerprint"],
            ip=row["ip"],
            token=row["token"],
            created_at=ensure_utc(row["created_at"]),
            expires_at=ensure_utc(row["expires_at"]),
        )

    @staticmethod
    def _row_to_trusted_ip(row: dict) -> TrustedIP:
        return TrustedIP(
            ip=row["ip"],
            expires_at=ensure_utc(row["expires_at"]),
            permanent=bool(row.get("permanent", False)),
            created_at=ensure_utc(row["created_at"]),
        )
