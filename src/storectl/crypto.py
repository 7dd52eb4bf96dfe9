"""Secret codecs used for encrypted store values.

Secrets such as the database connection string are stored as opaque blobs
(``ConnectionStringEncrypted``). The codec is a narrow capability so a host
specific protection API can replace the default Fernet implementation.
"""
from __future__ import annotations

import base64
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken


class SecretCodecError(RuntimeError):
    """Raised when a secret cannot be encrypted or decrypted."""


class SecretCodec(Protocol):
    """Encrypt and decrypt opaque secret blobs."""

    def encrypt(self, data: bytes) -> bytes:
        """Return an opaque blob protecting *data*."""

    def decrypt(self, blob: bytes) -> bytes:
        """Return the plaintext protected by *blob*."""


@dataclass(slots=True)
class FernetSecretCodec:
    """Secret codec backed by a machine-local Fernet key file."""

    key_file: Path

    def _fernet(self, *, create: bool) -> Fernet:
        path = Path(self.key_file)
        if not path.exists():
            if not create:
                raise SecretCodecError(f"Secret key file {path} does not exist.")
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "wb") as handle:
                handle.write(Fernet.generate_key())
        try:
            return Fernet(path.read_bytes().strip())
        except (ValueError, OSError) as exc:
            raise SecretCodecError(f"Secret key file {path} is unusable: {exc}") from exc

    def encrypt(self, data: bytes) -> bytes:
        """Encrypt *data*, creating the key file on first use."""
        return self._fernet(create=True).encrypt(data)

    def decrypt(self, blob: bytes) -> bytes:
        """Decrypt *blob* produced by :meth:`encrypt`."""
        try:
            return self._fernet(create=False).decrypt(blob)
        except InvalidToken as exc:
            raise SecretCodecError("Encrypted value could not be decrypted.") from exc


def encrypt_text(codec: SecretCodec, plaintext: str) -> str:
    """Return *plaintext* protected by *codec* as a base64 string."""
    return base64.b64encode(codec.encrypt(plaintext.encode("utf-8"))).decode("ascii")


def decrypt_text(codec: SecretCodec, encoded: str) -> str:
    """Reverse :func:`encrypt_text`."""
    try:
        blob = base64.b64decode(encoded.encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        raise SecretCodecError("Encrypted value is not valid base64.") from exc
    return codec.decrypt(blob).decode("utf-8")


__all__ = [
    "FernetSecretCodec",
    "SecretCodec",
    "SecretCodecError",
    "decrypt_text",
    "encrypt_text",
]
