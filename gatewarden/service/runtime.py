from __future__ import annotations

import threading
from datetime import timedelta
from typing import Optional
from urllib.parse import urlparse, urlunparse

from gatewarden.config import get_settings, reset_settings_cache
from gatewarden.logging import get_logger
from gatewarden.service.fingerprint import FingerprintService
from gatewarden.service.pipeline import AccessPipeline
from gatewarden.service.rate_limit import RateConfig, RateLimiter
from gatewarden.service.sessions import SessionManager
from gatewarden.service.totp import TOTPVerifier
from gatewarden.service.trust import IPTrustStore
from gatewarden.storage.memory import MemoryStore
from gatewarden.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a DSN for logging."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        logger.info(
            "runtime_init_started",
            store_type=store_type,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store = (
                MemoryStore(
                    fs_root=self.settings.shared_fs_root,
                    secret_key=self.settings.secret_encryption_key,
                )
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                database_url=_mask_url_password(self.settings.database_url),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        session_ttl = timedelta(seconds=self.settings.session_ttl_seconds)
        self.verifier = TOTPVerifier(self.settings.totp_issuer)
        self.fingerprints = FingerprintService(self.store)
        self.ip_trust = IPTrustStore(self.store)
        self.sessions = SessionManager(self.store)
        self.limiter = RateLimiter(
            RateConfig(
                rate=self.settings.rate_limit_per_second,
                burst=self.settings.rate_limit_burst,
            ),
            sweep_interval=self.settings.rate_limit_sweep_seconds,
        )
        self.pipeline = AccessPipeline(
            self.store,
            limiter=self.limiter,
            ip_trust=self.ip_trust,
            fingerprints=self.fingerprints,
            sessions=self.sessions,
            verifier=self.verifier,
            session_ttl=session_ttl,
            allowed_ip=self.settings.allowed_ip,
            auto_trust_fingerprints=self.settings.auto_trust_fingerprints,
        )
        logger.info(
            "runtime_init_completed",
            store_type=store_type,
            allowed_ip_configured=bool(self.settings.allowed_ip),
            session_ttl_seconds=self.settings.session_ttl_seconds,
        )

    def start_background(self) -> None:
        self.limiter.start()

    def stop_background(self) -> None:
        self.limiter.stop()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: the unlocked read is the fast path once the
    runtime exists, the locked re-check prevents two threads building it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""

    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.stop_background()
            if isinstance(runtime.store, PostgresStore):
                runtime.store.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
