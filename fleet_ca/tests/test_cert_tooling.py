"""Tests for CertTooling."""

from datetime import datetime
from unittest.mock import patch

import pytest
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.serialization import pkcs12

from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.cert_utils import deserialize_certificate, deserialize_private_key
from fleet_ca.lib.errors import CryptoBackendUnavailableError, IssuanceError, TrustStoreError
from fleet_ca.lib.subject import build_subject


@pytest.fixture
def two_certs(tooling: CertTooling, now: datetime) -> tuple[bytes, bytes]:
    _, first = tooling.generate_self_signed(build_subject("first"), 30, now)
    _, second = tooling.generate_self_signed(build_subject("second"), 30, now)
    return first, second


class TestSelfSigned:
    """Tests for self-signed generation and renewal."""

    def test_generate_self_signed_returns_matching_pair(
        self, tooling: CertTooling, now: datetime
    ) -> None:
        """The certificate's public key belongs to the returned private key."""
        key_pem, cert_pem = tooling.generate_self_signed(build_subject("ca v0"), 365, now)

        key = deserialize_private_key(key_pem)
        cert = deserialize_certificate(cert_pem)
        assert key.key_size == 2048
        assert cert.public_key().public_numbers() == key.public_key().public_numbers()

    def test_renew_keeps_key(self, tooling: CertTooling, now: datetime) -> None:
        """renew_self_signed issues a new certificate for the same key."""
        subject = build_subject("ca v0")
        key_pem, cert_pem = tooling.generate_self_signed(subject, 365, now)

        renewed_pem = tooling.renew_self_signed(key_pem, subject, 365, now)

        old = deserialize_certificate(cert_pem)
        new = deserialize_certificate(renewed_pem)
        assert new.serial_number != old.serial_number
        assert new.public_key().public_numbers() == old.public_key().public_numbers()

    def test_renew_with_garbage_key_raises_issuance_error(
        self, tooling: CertTooling, now: datetime
    ) -> None:
        """Malformed input is reported as IssuanceError."""
        with pytest.raises(IssuanceError, match="renew self-signed certificate"):
            tooling.renew_self_signed(b"not a key", build_subject("ca"), 365, now)

    def test_backend_failure_raises_crypto_backend_error(
        self, tooling: CertTooling, now: datetime
    ) -> None:
        """UnsupportedAlgorithm from the backend maps to CryptoBackendUnavailableError."""
        with (
            patch(
                "fleet_ca.lib.cert_tooling.generate_private_key",
                side_effect=UnsupportedAlgorithm("no RSA"),
            ),
            pytest.raises(CryptoBackendUnavailableError),
        ):
            tooling.generate_self_signed(build_subject("ca"), 365, now)


class TestSignCsr:
    """Tests for CSR generation and signing."""

    def test_signed_certificate_is_issued_by_signer(
        self, tooling: CertTooling, created_ca, now: datetime
    ) -> None:
        """sign_csr returns a certificate issued by the signing CA."""
        subject = build_subject("broker-0", "io.fleet", ["broker-0.brokers"])
        _, csr_pem = tooling.generate_csr(subject)

        cert_pem = tooling.sign_csr(
            csr_pem, created_ca.current_key, created_ca.current_cert, subject, 365, now
        )

        deserialize_certificate(cert_pem).verify_directly_issued_by(
            deserialize_certificate(created_ca.current_cert)
        )

    def test_garbage_csr_raises_issuance_error(
        self, tooling: CertTooling, created_ca, now: datetime
    ) -> None:
        with pytest.raises(IssuanceError, match="sign CSR"):
            tooling.sign_csr(
                b"garbage", created_ca.current_key, created_ca.current_cert, build_subject("x"), 1, now
            )


class TestKeystore:
    """Tests for PKCS12 keystore packaging."""

    def test_package_keystore_roundtrip(self, tooling: CertTooling, now: datetime) -> None:
        """The keystore holds key and certificate under the alias, protected by the password."""
        key_pem, cert_pem = tooling.generate_self_signed(build_subject("leaf"), 30, now)

        store = tooling.package_keystore(key_pem, cert_pem, "broker-0", "Secret123456")

        loaded = pkcs12.load_pkcs12(store, b"Secret123456")
        assert loaded.key is not None
        assert loaded.cert is not None
        assert loaded.cert.friendly_name == b"broker-0"
        assert loaded.cert.certificate == deserialize_certificate(cert_pem)

    def test_wrong_password_is_rejected(self, tooling: CertTooling, now: datetime) -> None:
        key_pem, cert_pem = tooling.generate_self_signed(build_subject("leaf"), 30, now)
        store = tooling.package_keystore(key_pem, cert_pem, "broker-0", "Secret123456")

        with pytest.raises(ValueError):
            pkcs12.load_pkcs12(store, b"wrong")


class TestTruststore:
    """Tests for truststore maintenance."""

    def test_add_creates_store(self, tooling: CertTooling, two_certs: tuple[bytes, bytes]) -> None:
        """Adding to a missing store creates it with the single alias."""
        first, _ = two_certs

        store = tooling.add_to_truststore(first, "ca.crt", None, "Passw0rd")

        aliases = tooling.truststore_aliases(store, "Passw0rd")
        assert list(aliases) == ["ca.crt"]
        assert aliases["ca.crt"] == deserialize_certificate(first)

    def test_add_replaces_same_alias(
        self, tooling: CertTooling, two_certs: tuple[bytes, bytes]
    ) -> None:
        """Adding an alias twice keeps one entry with the latest certificate."""
        first, second = two_certs
        store = tooling.add_to_truststore(first, "ca.crt", None, "Passw0rd")

        store = tooling.add_to_truststore(second, "ca.crt", store, "Passw0rd")

        aliases = tooling.truststore_aliases(store, "Passw0rd")
        assert list(aliases) == ["ca.crt"]
        assert aliases["ca.crt"] == deserialize_certificate(second)

    def test_remove_ignores_unknown_aliases(
        self, tooling: CertTooling, two_certs: tuple[bytes, bytes]
    ) -> None:
        first, second = two_certs
        store = tooling.add_to_truststore(first, "ca.crt", None, "Passw0rd")
        store = tooling.add_to_truststore(second, "old.crt", store, "Passw0rd")

        store = tooling.remove_from_truststore(["old.crt", "missing.crt"], store, "Passw0rd")

        assert list(tooling.truststore_aliases(store, "Passw0rd")) == ["ca.crt"]

    def test_removing_last_alias_leaves_empty_store(
        self, tooling: CertTooling, two_certs: tuple[bytes, bytes]
    ) -> None:
        """An emptied store is represented by empty bytes."""
        first, _ = two_certs
        store = tooling.add_to_truststore(first, "ca.crt", None, "Passw0rd")

        store = tooling.remove_from_truststore(["ca.crt"], store, "Passw0rd")

        assert store == b""
        assert tooling.truststore_aliases(store, "Passw0rd") == {}

    def test_unreadable_store_raises_trust_store_error(self, tooling: CertTooling) -> None:
        with pytest.raises(TrustStoreError, match="read truststore"):
            tooling.truststore_aliases(b"not pkcs12", "Passw0rd")
