import base64

import pytest

from hns_sync.crypto import decrypt_credentials, decrypt_secret, encrypt_credentials, encrypt_secret


def test_secret_roundtrip_uses_fresh_salt():
    first = encrypt_secret("unit-test-secret", "change-me-password")
    second = encrypt_secret("unit-test-secret", "change-me-password")

    assert first != second
    assert decrypt_secret("unit-test-secret", first) == "change-me-password"


def test_wrong_key_or_tampering_is_rejected():
    token = encrypt_secret("unit-test-secret", "change-me-password")

    with pytest.raises(ValueError):
        decrypt_secret("another-secret", token)

    tampered = ("A" if token[0] != "A" else "B") + token[1:]
    with pytest.raises(ValueError):
        decrypt_secret("unit-test-secret", tampered)

    with pytest.raises(ValueError):
        decrypt_secret("unit-test-secret", "c2hvcnQ=")


def test_credentials_payload():
    token = encrypt_credentials(
        "unit-test-secret",
        username="tech",
        password="secret",
        login_url="https://portal.test/start/login.jsp",
        created_at="2026-10-19T15:00:00+00:00",
    )

    payload = decrypt_credentials("unit-test-secret", token)

    assert payload["username"] == "tech"
    assert payload["password"] == "secret"
    assert payload["login_url"].endswith("login.jsp")


def test_credentials_without_password_are_rejected():
    token = encrypt_secret("unit-test-secret", '{"username": "tech"}')

    with pytest.raises(ValueError):
        decrypt_credentials("unit-test-secret", token)


def test_key_stream_does_not_repeat_across_blocks():
    token = encrypt_secret("unit-test-secret", "x" * 96)
    raw = base64.urlsafe_b64decode(token.encode("utf-8"))
    cipher_bytes = raw[16:-32]

    assert len(cipher_bytes) == 96
    assert len({cipher_bytes[0:32], cipher_bytes[32:64], cipher_bytes[64:96]}) == 3
    assert decrypt_secret("unit-test-secret", token) == "x" * 96
