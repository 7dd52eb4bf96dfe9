"""Password hashes compatible with the web application's identity store.

The application verifies passwords with the version 3 identity hash format::

    0x01 | PRF (uint32 BE) | iterations (uint32 BE) | salt length (uint32 BE)
         | salt | derived key

encoded as base64.
"""
from __future__ import annotations

import base64
import os
import struct

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

FORMAT_MARKER = 0x01
PRF_HMACSHA512 = 2
DEFAULT_ITERATIONS = 100_000
SALT_SIZE = 16
SUBKEY_SIZE = 32


def hash_password(
    password: str,
    *,
    iterations: int = DEFAULT_ITERATIONS,
    salt: bytes | None = None,
) -> str:
    """Return the base64 identity hash of *password*."""
    if not password:
        raise ValueError("Password must not be empty.")
    salt = os.urandom(SALT_SIZE) if salt is None else salt
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=SUBKEY_SIZE,
        salt=salt,
        iterations=iterations,
    )
    subkey = kdf.derive(password.encode("utf-8"))
    header = struct.pack(">BIII", FORMAT_MARKER, PRF_HMACSHA512, iterations, len(salt))
    return base64.b64encode(header + salt + subkey).decode("ascii")


__all__ = ["hash_password"]
