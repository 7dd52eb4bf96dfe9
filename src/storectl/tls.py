"""Self-signed certificates for HTTPS site bindings."""
from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

DEFAULT_VALIDITY_DAYS = 3 * 365


class TLSConfigurationError(RuntimeError):
    """Raised when certificate material cannot be produced."""


@dataclass(frozen=True)
class SiteCertificate:
    """A PKCS#12 bundle ready to import into the machine certificate store."""

    pfx_path: Path
    password: str
    friendly_name: str
    thumbprint: str
    not_valid_after: datetime


def generate_site_certificate(
    site_name: str,
    destination_dir: Path,
    *,
    product_name: str = "EcommerceStarter",
    hostname: str = "localhost",
    validity_days: int = DEFAULT_VALIDITY_DAYS,
) -> SiteCertificate:
    """Create a self-signed certificate for *hostname* and write it as a PFX."""
    if validity_days <= 0:
        raise TLSConfigurationError("Certificate validity must be a positive number of days.")

    friendly_name = f"{product_name}-{site_name}"
    now = datetime.now(UTC)
    not_after = now + timedelta(days=validity_days)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(minutes=5))
        .not_valid_after(not_after)
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH]),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    password = secrets.token_urlsafe(24)
    payload = pkcs12.serialize_key_and_certificates(
        name=friendly_name.encode("utf-8"),
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password.encode("utf-8")),
    )

    try:
        destination_dir.mkdir(parents=True, exist_ok=True)
        pfx_path = destination_dir / f"{friendly_name}.pfx"
        fd = os.open(pfx_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
    except OSError as exc:
        raise TLSConfigurationError(f"Unable to write certificate bundle: {exc}") from exc

    thumbprint = cert.fingerprint(hashes.SHA1()).hex().upper()  # noqa: S303 - store thumbprint
    return SiteCertificate(
        pfx_path=pfx_path,
        password=password,
        friendly_name=friendly_name,
        thumbprint=thumbprint,
        not_valid_after=not_after,
    )


__all__ = ["SiteCertificate", "TLSConfigurationError", "generate_site_certificate"]
