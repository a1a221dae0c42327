"""Certificate utility functions for key generation, serialization and expiry checks."""

import secrets
import string
import uuid
from datetime import datetime, timedelta, timezone

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

PASSWORD_LENGTH = 12
_PASSWORD_FIRST_CHARS = string.ascii_letters
_PASSWORD_CHARS = string.ascii_letters + string.digits


def generate_private_key(key_size: int = 4096) -> RSAPrivateKey:
    """Generate RSA private key with specified size."""
    return rsa.generate_private_key(
        public_exponent=65537,
        key_size=key_size,
    )


def serialize_private_key(key: RSAPrivateKey) -> bytes:
    """Serialize private key to PEM format (PKCS8, no encryption)."""
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )


def deserialize_private_key(pem_data: bytes) -> RSAPrivateKey:
    """Deserialize private key from PEM bytes."""
    key = serialization.load_pem_private_key(pem_data, password=None)
    if not isinstance(key, RSAPrivateKey):
        raise ValueError("expected RSA private key")
    return key


def serialize_certificate(cert: x509.Certificate) -> bytes:
    """Serialize certificate to PEM format."""
    return cert.public_bytes(serialization.Encoding.PEM)


def deserialize_certificate(data: bytes) -> x509.Certificate:
    """Deserialize certificate from PEM or DER bytes.

    Raises:
        ValueError: If the bytes are not an X.509 certificate
    """
    if not data:
        raise ValueError("empty certificate data")
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def try_deserialize_certificate(data: bytes | None) -> x509.Certificate | None:
    """Return the parsed certificate, or None when it is absent or unparseable."""
    if not data:
        return None
    try:
        return deserialize_certificate(data)
    except ValueError:
        return None


def certificate_matches_key(cert: x509.Certificate, key_pem: bytes) -> bool:
    """True when the certificate carries the public half of the PEM private key.

    Raises:
        ValueError: If the key is not an RSA private key
    """
    der, spki = serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    key_public = deserialize_private_key(key_pem).public_key().public_bytes(der, spki)
    return key_public == cert.public_key().public_bytes(der, spki)


def serialize_csr(csr: x509.CertificateSigningRequest) -> bytes:
    """Serialize CSR to PEM format."""
    return csr.public_bytes(serialization.Encoding.PEM)


def deserialize_csr(pem_data: bytes) -> x509.CertificateSigningRequest:
    """Deserialize CSR from PEM bytes."""
    return x509.load_pem_x509_csr(pem_data)


def generate_serial_number() -> int:
    """Generate certificate serial number from UUID4 (128 bits, ~122 random)."""
    return uuid.uuid4().int


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    """Generate a random store password of letters and digits starting with a letter."""
    first = secrets.choice(_PASSWORD_FIRST_CHARS)
    rest = "".join(secrets.choice(_PASSWORD_CHARS) for _ in range(length - 1))
    return first + rest


def renewal_period_begins(cert: x509.Certificate, renewal_days: int) -> datetime:
    """Return the instant at which the certificate enters its renewal window."""
    return cert.not_valid_after_utc - timedelta(days=renewal_days)


def in_renewal_window(cert: x509.Certificate, renewal_days: int, now: datetime) -> bool:
    """True when ``notAfter - renewal_days <= now``."""
    return renewal_period_begins(cert, renewal_days) <= now


def is_expired(cert: x509.Certificate, now: datetime) -> bool:
    """True when ``notAfter < now``."""
    return cert.not_valid_after_utc < now


def archive_alias(timestamp: datetime) -> str:
    """Return the alias an archived CA certificate is stored under.

    The timestamp is rendered as ``YYYY-MM-DDTHH-MM-SS[.ffffff]Z`` so the
    alias contains no colons.
    """
    timestamp = timestamp.astimezone(timezone.utc)
    stamp = timestamp.strftime("%Y-%m-%dT%H-%M-%S")
    if timestamp.microsecond:
        stamp += f".{timestamp.microsecond:06d}".rstrip("0")
    return f"ca-{stamp}Z.crt"
