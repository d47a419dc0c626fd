import hashlib

from gatewarden.service.fingerprint import (
    FingerprintAttributes,
    FingerprintService,
    compute_fingerprint,
)

CHROME_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) Chrome/124.0",
    "Accept-Language": "en-US,en;q=0.9",
    "Sec-Ch-Ua": '"Chromium";v="124"',
    "Sec-Ch-Ua-Platform": '"Linux"',
    "Sec-Ch-Ua-Mobile": "?0",
}


def test_from_headers_is_case_insensitive_and_fills_missing():
    attrs = FingerprintAttributes.from_headers({"user-agent": "curl/8.0"})
    assert attrs.user_agent == "curl/8.0"
    assert attrs.accept_language == ""
    assert attrs.sec_ch_ua_mobile == ""


def test_fingerprint_is_stable_sha256_hex():
    attrs = FingerprintAttributes.from_headers(CHROME_HEADERS)
    first = compute_fingerprint(attrs)
    second = compute_fingerprint(FingerprintAttributes.from_headers(dict(CHROME_HEADERS)))
    assert first == second
    assert len(first) == 64
    int(first, 16)


def test_fingerprint_changes_with_any_component():
    base = compute_fingerprint(FingerprintAttributes.from_headers(CHROME_HEADERS))
    for header in CHROME_HEADERS:
        changed = {**CHROME_HEADERS, header: CHROME_HEADERS[header] + "x"}
        assert compute_fingerprint(FingerprintAttributes.from_headers(changed)) != base


def test_length_prefix_separates_shifted_components():
    left = FingerprintAttributes(user_agent="ab", accept_language="c")
    right = FingerprintAttributes(user_agent="a", accept_language="bc")
    assert compute_fingerprint(left) != compute_fingerprint(right)


def test_plain_concatenation_is_not_used():
    attrs = FingerprintAttributes(user_agent="ua")
    assert compute_fingerprint(attrs) != hashlib.sha256(b"ua").hexdigest()


def test_trust_then_is_trusted_and_idempotent(store):
    service = FingerprintService(store)
    account = store.create_account("alice", "JBSWY3DPEHPK3PXP")

    updated = service.trust(account, "fp-1")
    assert service.is_trusted(updated, "fp-1")
    assert len(updated.fingerprints) == 1

    again = service.trust(updated, "fp-1")
    assert again.fingerprints == ["fp-1"]
    assert store.get_account(account.id).fingerprints == ["fp-1"]


def test_trust_with_stale_account_does_not_duplicate(store):
    service = FingerprintService(store)
    account = store.create_account("alice", "JBSWY3DPEHPK3PXP")
    service.trust(account, "fp-1")

    # The caller still holds the pre-trust snapshot
    service.trust(account, "fp-1")
    assert store.get_account(account.id).fingerprints == ["fp-1"]


def test_empty_fingerprint_is_never_trusted(store):
    service = FingerprintService(store)
    account = store.create_account("alice", "JBSWY3DPEHPK3PXP")
    assert not service.is_trusted(account, "")
    assert service.find_trusting_account("") is None


def test_find_trusting_account(store):
    service = FingerprintService(store)
    alice = store.create_account("alice", "JBSWY3DPEHPK3PXP")
    store.create_account("bob", "JBSWY3DPEHPK3PXQ")
    service.trust(alice, "fp-alice")

    found = service.find_trusting_account("fp-alice")
    assert found is not None and found.id == alice.id
    assert service.find_trusting_account("fp-unknown") is None
