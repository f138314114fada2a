"""Encrypt/decrypt portal credentials stored in the key-value store."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os

_SALT_BYTES = 16
_TAG_BYTES = 32
_BLOCK_BYTES = 32


def _key_stream(secret_key: str, salt: bytes, length: int) -> bytes:
    """SHA-256 blocks over salt, key and a block counter."""

    seed = salt + secret_key.encode("utf-8")
    blocks = []
    for counter in range((length + _BLOCK_BYTES - 1) // _BLOCK_BYTES):
        blocks.append(hashlib.sha256(seed + counter.to_bytes(8, "big")).digest())
    return b"".join(blocks)[:length]


def _xor(data: bytes, key_stream: bytes) -> bytes:
    return bytes(b ^ k for b, k in zip(data, key_stream))


def _tag(secret_key: str, payload: bytes) -> bytes:
    return hmac.new(secret_key.encode("utf-8"), payload, hashlib.sha256).digest()


def encrypt_secret(secret_key: str, plaintext: str) -> str:
    salt = os.urandom(_SALT_BYTES)
    data = plaintext.encode("utf-8")
    cipher_bytes = _xor(data, _key_stream(secret_key, salt, len(data)))
    body = salt + cipher_bytes
    return base64.urlsafe_b64encode(body + _tag(secret_key, body)).decode("utf-8")


def decrypt_secret(secret_key: str, ciphertext: str) -> str:
    raw = base64.urlsafe_b64decode(ciphertext.encode("utf-8"))
    if len(raw) < _SALT_BYTES + _TAG_BYTES:
        raise ValueError("ciphertext too short")
    body, tag = raw[:-_TAG_BYTES], raw[-_TAG_BYTES:]
    if not hmac.compare_digest(tag, _tag(secret_key, body)):
        raise ValueError("ciphertext failed integrity check")
    salt, cipher_bytes = body[:_SALT_BYTES], body[_SALT_BYTES:]
    return _xor(cipher_bytes, _key_stream(secret_key, salt, len(cipher_bytes))).decode("utf-8")


def encrypt_credentials(secret_key: str, *, username: str, password: str, login_url: str, created_at: str) -> str:
    payload = {
        "username": username,
        "password": password,
        "login_url": login_url,
        "created_at": created_at,
    }
    return encrypt_secret(secret_key, json.dumps(payload))


def decrypt_credentials(secret_key: str, ciphertext: str) -> dict[str, str]:
    """Return the stored credential payload; raises ValueError on tampering or junk."""

    try:
        payload = json.loads(decrypt_secret(secret_key, ciphertext))
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ValueError("credential payload is not valid JSON") from exc
    if not isinstance(payload, dict) or not payload.get("username") or not payload.get("password"):
        raise ValueError("credential payload is missing username/password")
    return payload
