"""In-memory certificate tooling: key/cert generation, CSR signing and PKCS12 stores.

Every operation takes and returns PEM or PKCS12 bytes, so no working files
are ever written.
"""

from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.serialization import pkcs12

from fleet_ca.lib.cert_utils import (
    deserialize_certificate,
    deserialize_csr,
    deserialize_private_key,
    generate_private_key,
    serialize_certificate,
    serialize_csr,
    serialize_private_key,
)
from fleet_ca.lib.certificate_builder import CertificateBuilder
from fleet_ca.lib.errors import (
    CryptoBackendUnavailableError,
    FleetCaError,
    IssuanceError,
    TrustStoreError,
)
from fleet_ca.lib.subject import Subject


@contextmanager
def _tooling_errors(
    operation: str, error_cls: type[FleetCaError] = IssuanceError
) -> Iterator[None]:
    try:
        yield
    except UnsupportedAlgorithm as e:
        raise CryptoBackendUnavailableError(f"{operation}: {e}") from e
    except (ValueError, TypeError) as e:
        raise error_cls(f"{operation} failed: {e}") from e


class CertTooling:
    """Certificate tooling backed by the ``cryptography`` package."""

    def __init__(self, key_size: int = 4096) -> None:
        """Initialize tooling.

        Args:
            key_size: RSA key size for every generated key
        """
        self.key_size = key_size

    def generate_self_signed(
        self, subject: Subject, validity_days: int, now: datetime
    ) -> tuple[bytes, bytes]:
        """Generate a new key and a self-signed CA certificate for it.

        Returns:
            Tuple of (key_pem, cert_pem)
        """
        with _tooling_errors("generate self-signed certificate"):
            key = generate_private_key(self.key_size)
            cert = CertificateBuilder.build_ca(subject, key, validity_days, now)
            return serialize_private_key(key), serialize_certificate(cert)

    def renew_self_signed(
        self, key_pem: bytes, subject: Subject, validity_days: int, now: datetime
    ) -> bytes:
        """Issue a new self-signed CA certificate for an existing key."""
        with _tooling_errors("renew self-signed certificate"):
            key = deserialize_private_key(key_pem)
            cert = CertificateBuilder.build_ca(subject, key, validity_days, now)
            return serialize_certificate(cert)

    def generate_csr(self, subject: Subject) -> tuple[bytes, bytes]:
        """Generate a new key and a CSR for it.

        Returns:
            Tuple of (key_pem, csr_pem)
        """
        with _tooling_errors("generate CSR"):
            key = generate_private_key(self.key_size)
            csr = CertificateBuilder.build_csr(subject, key)
            return serialize_private_key(key), serialize_csr(csr)

    def sign_csr(
        self,
        csr_pem: bytes,
        signing_key_pem: bytes,
        signing_cert_pem: bytes,
        subject: Subject,
        validity_days: int,
        now: datetime,
    ) -> bytes:
        """Sign a CSR with a CA key, certifying the alternative names of ``subject``."""
        with _tooling_errors("sign CSR"):
            csr = deserialize_csr(csr_pem)
            issuer_key = deserialize_private_key(signing_key_pem)
            issuer_cert = deserialize_certificate(signing_cert_pem)
            cert = CertificateBuilder.build_leaf(
                csr=csr,
                issuer_cert=issuer_cert,
                issuer_key=issuer_key,
                subject=subject,
                validity_days=validity_days,
                now=now,
            )
            return serialize_certificate(cert)

    def package_keystore(self, key_pem: bytes, cert_pem: bytes, alias: str, password: str) -> bytes:
        """Package a key and its certificate into a password protected PKCS12 keystore."""
        with _tooling_errors("package keystore"):
            return pkcs12.serialize_key_and_certificates(
                name=alias.encode(),
                key=deserialize_private_key(key_pem),
                cert=deserialize_certificate(cert_pem),
                cas=None,
                encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
            )

    def truststore_aliases(self, store: bytes | None, password: str) -> dict[str, x509.Certificate]:
        """Return the certificates of a PKCS12 truststore keyed by alias.

        An empty or missing store holds no certificates.
        """
        if not store:
            return {}
        with _tooling_errors("read truststore", TrustStoreError):
            loaded = pkcs12.load_pkcs12(store, password.encode())
        entries: dict[str, x509.Certificate] = {}
        bags = [loaded.cert] if loaded.cert is not None else []
        bags.extend(loaded.additional_certs)
        for index, bag in enumerate(bags):
            alias = bag.friendly_name.decode() if bag.friendly_name else f"cert-{index}"
            entries[alias] = bag.certificate
        return entries

    def _write_truststore(self, entries: dict[str, x509.Certificate], password: str) -> bytes:
        if not entries:
            return b""
        with _tooling_errors("write truststore", TrustStoreError):
            return pkcs12.serialize_key_and_certificates(
                name=None,
                key=None,
                cert=None,
                cas=[
                    pkcs12.PKCS12Certificate(cert, alias.encode())
                    for alias, cert in entries.items()
                ],
                encryption_algorithm=serialization.BestAvailableEncryption(password.encode()),
            )

    def add_to_truststore(
        self, cert_pem: bytes, alias: str, store: bytes | None, password: str
    ) -> bytes:
        """Insert or replace the certificate stored under ``alias``."""
        entries = self.truststore_aliases(store, password)
        with _tooling_errors("add to truststore", TrustStoreError):
            entries[alias] = deserialize_certificate(cert_pem)
        return self._write_truststore(entries, password)

    def remove_from_truststore(
        self, aliases: Iterable[str], store: bytes | None, password: str
    ) -> bytes:
        """Remove every given alias in one rewrite; unknown aliases are ignored."""
        entries = self.truststore_aliases(store, password)
        for alias in aliases:
            entries.pop(alias, None)
        return self._write_truststore(entries, password)
