import pytest
from pydantic import ValidationError

from gatewarden.config import SameSitePolicy, Settings, get_settings, reset_settings_cache


def test_defaults():
    settings = Settings()
    assert settings.session_ttl_seconds == 3 * 60 * 60
    assert settings.cookie_name == "gateway_session"
    assert settings.cookie_same_site is SameSitePolicy.STRICT
    assert settings.totp_issuer == "Gateway Service"
    assert settings.rate_limit_per_second == 10
    assert settings.rate_limit_burst == 20
    assert settings.rate_limit_sweep_seconds == 300
    assert settings.trust_proxy_headers is False
    assert settings.auto_trust_fingerprints is True
    assert settings.allowed_ip is None


def test_from_env_reads_declared_names(monkeypatch):
    monkeypatch.setenv("ALLOWED_IP", "203.0.113.7")
    monkeypatch.setenv("COOKIE_SAME_SITE", " Lax ")
    monkeypatch.setenv("SESSION_TTL_MINUTES", "30")
    monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")
    settings = Settings.from_env()
    assert settings.allowed_ip == "203.0.113.7"
    assert settings.cookie_same_site is SameSitePolicy.LAX
    assert settings.session_ttl_seconds == 1800
    assert settings.trust_proxy_headers is True


def test_blank_allowed_ip_means_unset(monkeypatch):
    monkeypatch.setenv("ALLOWED_IP", "  ")
    assert Settings.from_env().allowed_ip is None


@pytest.mark.parametrize(
    "env,value",
    [
        ("COOKIE_SAME_SITE", "sometimes"),
        ("SESSION_TTL_MINUTES", "0"),
        ("RATE_LIMIT_BURST", "0"),
        ("RATE_LIMIT_PER_SECOND", "-1"),
    ],
)
def test_invalid_values_rejected(monkeypatch, env, value):
    monkeypatch.setenv(env, value)
    with pytest.raises(ValidationError):
        Settings.from_env()
    # The runtime reset after each test re-reads the environment
    monkeypatch.delenv(env)
    assert Settings.from_env()


def test_settings_cache_resets(monkeypatch):
    reset_settings_cache()
    first = get_settings()
    assert get_settings() is first
    monkeypatch.setenv("TOTP_ISSUER", "Home Lab")
    reset_settings_cache()
    assert get_settings().totp_issuer == "Home Lab"
