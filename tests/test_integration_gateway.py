import time

import pytest
from fastapi.testclient import TestClient

from gatewarden.app import app
from gatewarden.service.runtime import get_runtime, reset_runtime_for_tests
from gatewarden.service.totp import code_at
from gatewarden.storage.errors import StoreError

# TestClient reports this as the socket peer
CLIENT_HOST = "testclient"

BROWSER_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Firefox/126.0",
    "Accept-Language": "en-GB,en;q=0.8",
}


def _create_account(login="alice"):
    runtime = get_runtime()
    secret, _uri = runtime.verifier.provision(login)
    account = runtime.store.create_account(login, secret)
    return account, secret


def _login(client, login, secret, **extra):
    body = {"login": login, "totp_code": code_at(secret, time.time()), **extra}
    return client.post("/login", json=body, headers=BROWSER_HEADERS)


@pytest.fixture
def allowed_client(monkeypatch):
    monkeypatch.setenv("ALLOWED_IP", CLIENT_HOST)
    reset_runtime_for_tests()
    return TestClient(app)


def test_untrusted_origin_is_forbidden():
    client = TestClient(app)
    _create_account()
    resp = client.post("/login", json={"login": "alice", "totp_code": "123456"})
    assert resp.status_code == 403
    body = resp.json()
    assert body["status"] == "error"
    assert body["error"]["code"] == "forbidden"


def test_login_sets_session_cookie_and_status_works(allowed_client):
    account, secret = _create_account()

    resp = _login(allowed_client, "alice", secret)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["account_id"] == account.id
    cookie_header = resp.headers["set-cookie"]
    assert "gateway_session=" in cookie_header
    assert "HttpOnly" in cookie_header
    assert "samesite=strict" in cookie_header.lower()
    assert "Max-Age=10800" in cookie_header

    status = allowed_client.get("/status")
    assert status.status_code == 200
    payload = status.json()["data"]
    assert payload["authenticated"] is True
    assert payload["account_id"] == account.id
    assert payload["ip"] == CLIENT_HOST


def test_login_without_body_fingerprint_trusts_header_fingerprint(allowed_client):
    from gatewarden.service.fingerprint import FingerprintAttributes, compute_fingerprint

    account, secret = _create_account()
    assert _login(allowed_client, "alice", secret).status_code == 200

    expected = compute_fingerprint(FingerprintAttributes.from_headers(BROWSER_HEADERS))
    stored = get_runtime().store.get_account(account.id)
    assert stored.fingerprints == [expected]


def test_body_fingerprint_takes_precedence(allowed_client):
    account, secret = _create_account()
    assert _login(allowed_client, "alice", secret, fingerprint="client-fp").status_code == 200
    assert get_runtime().store.get_account(account.id).fingerprints == ["client-fp"]


def test_wrong_code_is_unauthorized(allowed_client):
    _create_account()
    resp = allowed_client.post(
        "/login", json={"login": "alice", "totp_code": "abcdef"}, headers=BROWSER_HEADERS
    )
    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"
    assert "set-cookie" not in resp.headers
    assert get_runtime().store.sessions == {}


def test_failed_session_insert_sets_no_cookie_and_trusts_nothing(allowed_client, monkeypatch):
    account, secret = _create_account()
    store = get_runtime().store

    def _fail(_session):
        raise StoreError("database unavailable")

    monkeypatch.setattr(store, "create_session", _fail)
    resp = _login(allowed_client, "alice", secret, fingerprint="fp-new")

    assert resp.status_code == 500
    assert resp.json()["error"]["code"] == "server_error"
    assert "set-cookie" not in resp.headers
    assert store.get_account(account.id).fingerprints == []
    assert store.get_trusted_ip(CLIENT_HOST) is None


def test_status_without_cookie_is_unauthorized(allowed_client):
    resp = allowed_client.get("/status")
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "invalid session"


def test_logout_clears_cookie_and_session(allowed_client):
    _account, secret = _create_account()
    assert _login(allowed_client, "alice", secret).status_code == 200

    resp = allowed_client.get("/logout")
    assert resp.status_code == 200
    assert resp.json()["data"] == {"logged_out": True}
    assert 'gateway_session=""' in resp.headers["set-cookie"] or "Max-Age=0" in resp.headers["set-cookie"]

    assert get_runtime().store.sessions == {}
    assert allowed_client.get("/status").status_code == 401


def test_logout_accepts_post(allowed_client):
    _account, secret = _create_account()
    assert _login(allowed_client, "alice", secret).status_code == 200
    assert allowed_client.post("/logout").status_code == 200


def test_register_fingerprint_and_duplicate(allowed_client):
    account, secret = _create_account()
    assert _login(allowed_client, "alice", secret, fingerprint="fp-1").status_code == 200

    first = allowed_client.post("/register-fingerprint", json={"fingerprint": "fp-2"})
    assert first.status_code == 200
    assert get_runtime().store.get_account(account.id).fingerprints == ["fp-1", "fp-2"]

    dup = allowed_client.post("/register-fingerprint", json={"fingerprint": "fp-2"})
    assert dup.status_code == 409
    assert dup.json()["error"]["code"] == "conflict"


def test_login_trusts_ip_temporarily_and_device_opens_gate(monkeypatch):
    monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")
    monkeypatch.setenv("ALLOWED_IP", "198.51.100.1")
    reset_runtime_for_tests()
    client = TestClient(app)
    _account, secret = _create_account()

    headers = {**BROWSER_HEADERS, "X-Forwarded-For": "198.51.100.1, 10.0.0.1"}
    body = {"login": "alice", "totp_code": code_at(secret, time.time())}
    assert client.post("/login", json=body, headers=headers).status_code == 200

    record = get_runtime().store.get_trusted_ip("198.51.100.1")
    assert record is not None and not record.permanent

    # Same browser from an unknown address passes the gate on its fingerprint
    same_device = {**BROWSER_HEADERS, "X-Real-IP": "203.0.113.50"}
    resp = client.post(
        "/login", json={"login": "alice", "totp_code": "abcdef"}, headers=same_device
    )
    assert resp.status_code == 401

    other_device = {"User-Agent": "curl/8.0", "X-Real-IP": "203.0.113.50"}
    resp = client.post(
        "/login", json={"login": "alice", "totp_code": "abcdef"}, headers=other_device
    )
    assert resp.status_code == 403



def test_session_cookie_rejected_from_other_ip(monkeypatch):
    monkeypatch.setenv("TRUST_PROXY_HEADERS", "true")
    monkeypatch.setenv("ALLOWED_IP", "198.51.100.1")
    reset_runtime_for_tests()
    client = TestClient(app)
    _account, secret = _create_account()
    runtime = get_runtime()
    runtime.ip_trust.trust_permanently("203.0.113.9")

    headers = {**BROWSER_HEADERS, "X-Forwarded-For": "198.51.100.1"}
    body = {"login": "alice", "totp_code": code_at(secret, time.time())}
    assert client.post("/login", json=body, headers=headers).status_code == 200

    moved = {**BROWSER_HEADERS, "X-Forwarded-For": "203.0.113.9"}
    resp = client.get("/status", headers=moved)
    assert resp.status_code == 401
    assert resp.json()["error"]["message"] == "invalid session"


def test_proxy_headers_ignored_by_default(allowed_client):
    headers = {"X-Forwarded-For": "203.0.113.99"}
    # Peer address is the allowed static IP, so the spoofed header changes nothing
    resp = allowed_client.get("/status", headers=headers)
    assert resp.status_code == 401


def test_rate_limit_returns_429(monkeypatch):
    monkeypatch.setenv("ALLOWED_IP", CLIENT_HOST)
    monkeypatch.setenv("RATE_LIMIT_BURST", "3")
    monkeypatch.setenv("RATE_LIMIT_PER_SECOND", "0.001")
    reset_runtime_for_tests()
    client = TestClient(app)
    codes = [client.get("/status").status_code for _ in range(4)]
    assert codes[:3] == [401, 401, 401]
    assert codes[3] == 429
    assert client.get("/status").json()["error"]["code"] == "rate_limited"


def test_invalid_body_is_validation_error(allowed_client):
    resp = allowed_client.post("/login", json={"login": "alice"})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "validation_error"


def test_healthz_skips_gateway_checks(monkeypatch):
    monkeypatch.setenv("RATE_LIMIT_BURST", "1")
    monkeypatch.setenv("RATE_LIMIT_PER_SECOND", "0.001")
    reset_runtime_for_tests()
    client = TestClient(app)
    for _ in range(3):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert resp.json()["store"] == "memory"


def test_response_headers(allowed_client):
    resp = allowed_client.get("/status", headers={"X-Request-ID": "req-123"})
    assert resp.headers["X-Request-ID"] == "req-123"
    assert resp.headers["X-Frame-Options"] == "DENY"
    assert resp.headers["Cache-Control"] == "no-store"
    assert resp.json()["request_id"] == "req-123"


def test_lifespan_starts_and_stops_sweeper():
    with TestClient(app):
        assert get_runtime().limiter.running
    assert not get_runtime().limiter.running
