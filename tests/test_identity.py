"""Tests for identity-compatible password hashes."""
from __future__ import annotations

import base64

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from storectl.identity import hash_password


def test_hash_password_produces_v3_header() -> None:
    """The encoded hash starts with the format marker and PRF identifier."""
    encoded = hash_password("S3cure!pass", iterations=1000, salt=b"\x01" * 16)
    raw = base64.b64decode(encoded)

    assert raw[0] == 0x01
    assert int.from_bytes(raw[1:5], "big") == 2
    assert int.from_bytes(raw[5:9], "big") == 1000
    assert int.from_bytes(raw[9:13], "big") == 16
    assert len(raw) == 13 + 16 + 32


def test_hash_password_embeds_pbkdf2_subkey() -> None:
    """The trailing bytes are the PBKDF2-HMAC-SHA512 key of the password and salt."""
    salt = b"\x07" * 16
    raw = base64.b64decode(hash_password("S3cure!pass", iterations=1000, salt=salt))
    kdf = PBKDF2HMAC(algorithm=hashes.SHA512(), length=32, salt=salt, iterations=1000)

    assert raw[13:29] == salt
    assert raw[29:] == kdf.derive(b"S3cure!pass")


def test_salts_are_random_by_default() -> None:
    """Two hashes of the same password differ."""
    assert hash_password("same", iterations=1000) != hash_password("same", iterations=1000)


def test_empty_password_is_rejected() -> None:
    """Empty passwords cannot be hashed."""
    with pytest.raises(ValueError):
        hash_password("")
