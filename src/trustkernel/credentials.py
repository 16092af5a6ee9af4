"""TLS credential bundles — PEM certificate + private key, validated as a pair.

A ``CredentialBundle`` is immutable.  The server installs a new one by
swapping a single reference, so an admission in flight keeps using the
bundle it started with.
"""

from __future__ import annotations

import datetime
import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from trustkernel.errors import CredentialError

logger = logging.getLogger(__name__)


def _public_der(public_key) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


@dataclass(frozen=True)
class CredentialBundle:
    cert_pem: bytes
    key_pem: bytes
    fingerprint: str  # SHA-256 of the DER certificate, hex

    def __repr__(self) -> str:
        return f"<CredentialBundle fingerprint={self.fingerprint[:16]}…>"

    @classmethod
    def from_pem(cls, cert_pem: bytes | str, key_pem: bytes | str) -> CredentialBundle:
        """Parse and cross-check a certificate and its private key.

        Raises:
            CredentialError: either PEM is unparseable or the key does not
                belong to the certificate.
        """
        if isinstance(cert_pem, str):
            cert_pem = cert_pem.encode()
        if isinstance(key_pem, str):
            key_pem = key_pem.encode()
        try:
            cert = x509.load_pem_x509_certificate(cert_pem)
        except ValueError as exc:
            raise CredentialError(f"certificate is not valid PEM: {exc}") from None
        try:
            key = serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as exc:
            raise CredentialError(f"private key is not valid unencrypted PEM: {exc}") from None

        if _public_der(key.public_key()) != _public_der(cert.public_key()):
            raise CredentialError("private key does not match the certificate")

        fingerprint = cert.fingerprint(hashes.SHA256()).hex()
        return cls(cert_pem=cert_pem, key_pem=key_pem, fingerprint=fingerprint)

    @classmethod
    def from_files(cls, cert_path: Path, key_path: Path) -> CredentialBundle:
        try:
            return cls.from_pem(Path(cert_path).read_bytes(), Path(key_path).read_bytes())
        except OSError as exc:
            raise CredentialError(f"cannot read credentials: {exc}") from None


def generate_self_signed(common_name: str = "trustkernel", validity_days: int = 30) -> tuple[bytes, bytes]:
    """Generate a self-signed ECDSA P-256 certificate for bootstrapping.

    Returns (cert_pem, key_pem).
    """
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "trustkernel"),
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )

    now = datetime.datetime.now(datetime.timezone.utc)
    # Backdate by a minute to tolerate clock skew between peers.
    not_before = now - datetime.timedelta(seconds=60)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before)
        .not_valid_after(now + datetime.timedelta(days=validity_days))
        .add_extension(
            x509.SubjectAlternativeName([x509.DNSName(common_name)]),
            critical=False,
        )
        .add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    )
    logger.info(
        "Generated self-signed certificate for %s (sha256=%s…)",
        common_name,
        hashlib.sha256(cert.public_bytes(serialization.Encoding.DER)).hexdigest()[:16],
    )
    return cert_pem, key_pem
