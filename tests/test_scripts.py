import sys
from urllib.parse import urlparse

import pytest

from scripts.create_account import create_account, render_qr
from gatewarden.service.runtime import get_runtime


def test_create_account_persists_and_refuses_duplicates():
    result = create_account("alice")
    assert result["status"] == "created"
    assert urlparse(result["uri"]).scheme == "otpauth"

    stored = get_runtime().store.get_account_by_login("alice")
    assert stored.id == result["account_id"]
    assert stored.totp_secret == result["secret"]

    assert create_account("alice")["status"] == "exists"


def test_dry_run_creates_nothing():
    result = create_account("bob", dry_run=True)
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_account_by_login("bob") is None


def test_render_qr_prints_blocks(capsys):
    render_qr("otpauth://totp/Gateway%20Service:alice?secret=JBSWY3DPEHPK3PXP")
    out = capsys.readouterr().out
    assert len(out.splitlines()) > 10


def test_trust_ip_cli(monkeypatch, capsys):
    from scripts import trust_ip

    monkeypatch.setattr(sys, "argv", ["trust_ip.py", "203.0.113.7"])
    trust_ip.main()
    assert get_runtime().ip_trust.is_trusted("203.0.113.7")
    assert get_runtime().store.get_trusted_ip("203.0.113.7").permanent

    monkeypatch.setattr(sys, "argv", ["trust_ip.py", "203.0.113.7", "--check"])
    trust_ip.main()
    assert "203.0.113.7: trusted" in capsys.readouterr().out


def test_trust_ip_cli_rejects_garbage(monkeypatch):
    from scripts import trust_ip

    monkeypatch.setattr(sys, "argv", ["trust_ip.py", "not-an-ip"])
    with pytest.raises(SystemExit):
        trust_ip.main()
