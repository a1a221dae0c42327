"""Certificate builder for X.509 CA and leaf certificate construction."""

from datetime import datetime, timedelta

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.x509.oid import ExtendedKeyUsageOID

from fleet_ca.lib.cert_utils import generate_serial_number
from fleet_ca.lib.subject import Subject


def _validity(now: datetime, validity_days: int) -> tuple[datetime, datetime]:
    not_before = now.replace(microsecond=0)
    return not_before, not_before + timedelta(days=validity_days)


class CertificateBuilder:
    """Builds X.509 certificates for self-managed CAs and the leaves they sign."""

    @staticmethod
    def build_ca(
        subject: Subject,
        private_key: RSAPrivateKey,
        validity_days: int,
        now: datetime,
    ) -> x509.Certificate:
        """Build a self-signed CA certificate.

        Args:
            subject: Subject of the certificate, also used as issuer
            private_key: RSA private key for signing
            validity_days: Certificate validity period in days
            now: Start of the validity period

        Returns:
            Self-signed X.509 certificate with CA extensions
        """
        name = subject.to_x509_name()
        not_before, not_after = _validity(now, validity_days)
        public_key = private_key.public_key()

        builder = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(public_key)
            .serial_number(generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=True, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(public_key),
                critical=False,
            )
        )

        return builder.sign(private_key, hashes.SHA256())

    @staticmethod
    def build_csr(subject: Subject, private_key: RSAPrivateKey) -> x509.CertificateSigningRequest:
        """Build a CSR carrying the subject name and its alternative names."""
        builder = x509.CertificateSigningRequestBuilder().subject_name(subject.to_x509_name())
        san = subject.to_san_extension()
        if san is not None:
            builder = builder.add_extension(san, critical=False)
        return builder.sign(private_key, hashes.SHA256())

    @staticmethod
    def build_leaf(
        csr: x509.CertificateSigningRequest,
        issuer_cert: x509.Certificate,
        issuer_key: RSAPrivateKey,
        subject: Subject,
        validity_days: int,
        now: datetime,
    ) -> x509.Certificate:
        """Build an end-entity certificate from a CSR, signed by a CA.

        The subject name comes from the CSR, the alternative names from
        ``subject``, so the signer decides which names are certified.

        Args:
            csr: Certificate signing request
            issuer_cert: CA certificate (issuer)
            issuer_key: CA private key for signing
            subject: Desired subject including alternative names
            validity_days: Certificate validity period in days
            now: Start of the validity period

        Returns:
            X.509 end-entity certificate usable for TLS server and client auth

        Raises:
            ValueError: If CSR signature is invalid or its key is not RSA
        """
        if not csr.is_signature_valid:
            raise ValueError("CSR signature validation failed")

        public_key = csr.public_key()
        if not isinstance(public_key, RSAPublicKey):
            raise ValueError("CSR public key must be RSA type")

        not_before, not_after = _validity(now, validity_days)

        builder = (
            x509.CertificateBuilder()
            .subject_name(csr.subject)
            .issuer_name(issuer_cert.subject)
            .public_key(public_key)
            .serial_number(generate_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(
                x509.BasicConstraints(ca=False, path_length=None),
                critical=True,
            )
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=True,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=False,
            )
            .add_extension(
                x509.ExtendedKeyUsage(
                    [ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]
                ),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(issuer_key.public_key()),
                critical=False,
            )
        )

        san = subject.to_san_extension()
        if san is not None:
            builder = builder.add_extension(san, critical=False)

        return builder.sign(issuer_key, hashes.SHA256())
