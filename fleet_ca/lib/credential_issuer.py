"""Issue one credential: self-signed CA material or a CA-signed leaf."""

from datetime import datetime, timezone

from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.cert_utils import generate_password
from fleet_ca.lib.constants import CA_CRT
from fleet_ca.lib.logging_config import LOGGER
from fleet_ca.lib.models import CertificateAuthority, Credential
from fleet_ca.lib.subject import Subject, build_subject


def issue(
    subject: Subject,
    validity_days: int,
    signing_key: bytes | None = None,
    signing_cert: bytes | None = None,
    *,
    tooling: CertTooling | None = None,
    now: datetime | None = None,
) -> Credential:
    """Issue a new credential for ``subject``.

    Without a signer this produces self-signed CA material whose truststore
    holds the new certificate under ``ca.crt``. With a signer it generates a
    fresh key and CSR, signs the CSR and packages key and certificate into a
    PKCS12 keystore aliased by the subject's common name.

    Every call generates its own store password.

    Args:
        subject: Desired subject of the certificate
        validity_days: Certificate validity period in days
        signing_key: PEM private key of the signing CA
        signing_cert: PEM certificate of the signing CA
        tooling: Certificate tooling, defaults to CertTooling()
        now: Start of the validity period, defaults to the current time

    Returns:
        Credential for the subject

    Raises:
        ValueError: If only one of signing_key and signing_cert is given
        IssuanceError: If generation, signing or packaging fails
    """
    if (signing_key is None) != (signing_cert is None):
        raise ValueError("signing_key and signing_cert must be given together")

    tooling = tooling or CertTooling()
    now = now or datetime.now(timezone.utc)
    password = generate_password()

    if signing_key is None or signing_cert is None:
        LOGGER.debug("Generating self-signed certificate %s", subject.common_name)
        key_pem, cert_pem = tooling.generate_self_signed(subject, validity_days, now)
        trust_store = tooling.add_to_truststore(cert_pem, CA_CRT, None, password)
        return Credential(
            private_key=key_pem,
            certificate=cert_pem,
            trust_store=trust_store,
            store_password=password,
        )

    LOGGER.debug(
        "Generating certificate %s with SAN %s",
        subject.common_name,
        [san.value for san in subject.alt_names],
    )
    key_pem, csr_pem = tooling.generate_csr(subject)
    cert_pem = tooling.sign_csr(csr_pem, signing_key, signing_cert, subject, validity_days, now)
    key_store = tooling.package_keystore(key_pem, cert_pem, subject.common_name, password)
    return Credential(
        private_key=key_pem,
        certificate=cert_pem,
        key_store=key_store,
        store_password=password,
    )


def issue_signed_by(
    ca: CertificateAuthority,
    common_name: str,
    organization: str | None = None,
    *,
    tooling: CertTooling | None = None,
    now: datetime | None = None,
) -> Credential:
    """Issue a single-component credential (no alternative names) signed by ``ca``.

    Raises:
        ValueError: If the CA has no key or certificate yet
    """
    if ca.current_key is None or ca.current_cert is None:
        raise ValueError(f"CA {ca.common_name} has no key and certificate to sign with")
    return issue(
        build_subject(common_name, organization),
        ca.validity_days,
        ca.current_key,
        ca.current_cert,
        tooling=tooling,
        now=now,
    )


def repackage_keystore(
    private_key: bytes,
    certificate: bytes,
    alias: str,
    *,
    tooling: CertTooling | None = None,
) -> Credential:
    """Wrap an existing key and certificate into a new keystore with a new password."""
    tooling = tooling or CertTooling()
    password = generate_password()
    key_store = tooling.package_keystore(private_key, certificate, alias, password)
    return Credential(
        private_key=private_key,
        certificate=certificate,
        key_store=key_store,
        store_password=password,
    )
