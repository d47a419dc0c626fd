from __future__ import annotations

import os
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator


class SameSitePolicy(str, Enum):
    """Cross-site policy applied to the session cookie."""

    STRICT = "strict"
    LAX = "lax"
    NONE = "none"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the gateway."""

    database_url: str = env_field(
        "postgresql://localhost:5432/gatewarden", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/gatewarden", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Allow runtime resets between test cases",
    )

    # Origin trust
    allowed_ip: str | None = env_field(
        None,
        "ALLOWED_IP",
        description="Static IP that always passes the origin gate",
    )
    trust_proxy_headers: bool = env_field(
        False,
        "TRUST_PROXY_HEADERS",
        description="Resolve client IP from X-Forwarded-For / X-Real-IP",
    )
    auto_trust_fingerprints: bool = env_field(
        True,
        "AUTO_TRUST_FINGERPRINTS",
        description="Trust a new device fingerprint after a successful login",
    )

    # Sessions and cookie
    session_ttl_minutes: int = env_field(3 * 60, "SESSION_TTL_MINUTES", gt=0)
    cookie_name: str = env_field("gateway_session", "COOKIE_NAME")
    cookie_secure: bool = env_field(True, "COOKIE_SECURE")
    cookie_http_only: bool = env_field(True, "COOKIE_HTTP_ONLY")
    cookie_same_site: SameSitePolicy = env_field(
        SameSitePolicy.STRICT, "COOKIE_SAME_SITE"
    )

    # Credentials
    totp_issuer: str = env_field("Gateway Service", "TOTP_ISSUER")
    secret_encryption_key: str | None = env_field(
        None,
        "SECRET_ENCRYPTION_KEY",
        description="Key material for encrypting TOTP secrets at rest",
    )

    # Rate limiting
    rate_limit_per_second: float = env_field(10.0, "RATE_LIMIT_PER_SECOND", gt=0)
    rate_limit_burst: int = env_field(20, "RATE_LIMIT_BURST", ge=1)
    rate_limit_sweep_seconds: int = env_field(5 * 60, "RATE_LIMIT_SWEEP_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @field_validator("cookie_same_site", mode="before")
    @classmethod
    def _normalize_same_site(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("allowed_ip", mode="before")
    @classmethod
    def _blank_allowed_ip(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def session_ttl_seconds(self) -> int:
        return self.session_ttl_minutes * 60


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
