"""CA lifecycle: decide whether a CA is created, renewed or re-keyed and apply it.

``reconcile_ca`` is a pure function of its inputs: it reads the CA value,
the force flags, the maintenance window and ``now``, and returns the decision
together with the resulting CA value. Persisting the result is up to the
caller.
"""

from dataclasses import replace
from datetime import datetime

from cryptography import x509

from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.cert_utils import (
    archive_alias,
    certificate_matches_key,
    in_renewal_window,
    renewal_period_begins,
    try_deserialize_certificate,
)
from fleet_ca.lib.constants import CA_CRT, CA_KEY, CA_STORE, CA_STORE_PASSWORD
from fleet_ca.lib.credential_issuer import issue
from fleet_ca.lib.logging_config import LOGGER
from fleet_ca.lib.models import (
    CLUSTER_CA,
    CaKind,
    CaReconcileResult,
    CertificateAuthority,
    ExpirationPolicy,
    RenewalType,
)
from fleet_ca.lib.renewal_messages import describe_renewal
from fleet_ca.lib.subject import Subject, build_subject, subject_from_certificate
from fleet_ca.lib.truststore_sync import add_to_trust_store, purge_expired


def ca_subject(ca: CertificateAuthority, key_generation: int) -> Subject:
    """Subject of a CA certificate issued for the given key generation."""
    # Old and new CA certificates must differ in subject DN while both are trusted
    return build_subject(f"{ca.common_name} v{key_generation}", ca.organization)


def needs_renewal(cert: x509.Certificate, renewal_days: int, now: datetime) -> bool:
    """True once the certificate has entered its renewal window."""
    LOGGER.debug(
        "Certificate %s expires on %s, renewal period begins on %s",
        cert.subject.rfc4514_string(),
        cert.not_valid_after_utc.isoformat(),
        renewal_period_begins(cert, renewal_days).isoformat(),
    )
    return in_renewal_window(cert, renewal_days, now)


def _issued_for_other_key(ca: CertificateAuthority, cert: x509.Certificate | None) -> bool:
    if cert is None or ca.current_key is None:
        return False
    try:
        return not certificate_matches_key(cert, ca.current_key)
    except ValueError:
        LOGGER.warning("%s: data.%s is not a PEM RSA private key", ca.common_name, CA_KEY)
        return False


def _window_or_postponed(renewal_type: RenewalType, maintenance_window_open: bool) -> RenewalType:
    return renewal_type if maintenance_window_open else RenewalType.POSTPONED


def decide_renewal(
    ca: CertificateAuthority,
    force_renew: bool,
    force_replace: bool,
    maintenance_window_open: bool,
    now: datetime,
) -> tuple[RenewalType, str | None]:
    """Decide what has to happen to a self-managed CA.

    The checks run in a fixed order and the first one that matches wins:
    missing key, missing certificate, force-renew, force-replace, renewal
    window. A certificate issued for another key counts as missing, so a
    pass interrupted between the certificate and key writes is repaired
    with the persisted key. A certificate that cannot be parsed skips the
    renewal window check.

    Returns:
        Tuple of (renewal type, reason or None for NOOP)
    """
    if not ca.has_key:
        return RenewalType.CREATE, f"CA key is missing or lacking data.{CA_KEY}"

    if not ca.has_cert:
        return RenewalType.RENEW_CERT, f"CA certificate is missing or lacking data.{CA_CRT}"

    current_cert = try_deserialize_certificate(ca.current_cert)
    if _issued_for_other_key(ca, current_cert):
        return RenewalType.RENEW_CERT, f"CA certificate in data.{CA_CRT} does not match the CA key"

    if force_renew:
        return (
            _window_or_postponed(RenewalType.RENEW_CERT, maintenance_window_open),
            "CA certificate record is annotated with force-renew",
        )

    if force_replace:
        return (
            _window_or_postponed(RenewalType.REPLACE_KEY, maintenance_window_open),
            "CA key record is annotated with force-replace",
        )

    if current_cert is not None and needs_renewal(current_cert, ca.renewal_days, now):
        reason = (
            "Within renewal period for CA certificate "
            f"(expires on {current_cert.not_valid_after_utc.isoformat()})"
        )
        if ca.expiration_policy is ExpirationPolicy.REPLACE_KEY:
            return _window_or_postponed(RenewalType.REPLACE_KEY, maintenance_window_open), reason
        return _window_or_postponed(RenewalType.RENEW_CERT, maintenance_window_open), reason

    return RenewalType.NOOP, None


def _log_renewal_state(
    kind: CaKind,
    renewal_type: RenewalType,
    reason: str | None,
    key_record: str,
    cert_record: str,
) -> None:
    description = describe_renewal(renewal_type, key_record, cert_record)
    context = {"ca": kind.name, "decision": renewal_type.value}
    if renewal_type is RenewalType.POSTPONED:
        LOGGER.warning("%s: %s: %s", kind.name, description, reason, extra=context)
    elif renewal_type is RenewalType.NOOP:
        LOGGER.debug(
            "%s: The CA certificate in %s already exists and does not need renewing",
            kind.name,
            cert_record,
            extra=context,
        )
    else:
        LOGGER.debug("%s: %s: %s", kind.name, description, reason, extra=context)


def _create(
    ca: CertificateAuthority, tooling: CertTooling, now: datetime
) -> tuple[dict[str, bytes], dict[str, bytes]]:
    subject = ca_subject(ca, ca.key_generation)
    credential = issue(subject, ca.validity_days, tooling=tooling, now=now)
    if credential.trust_store is None or credential.store_password is None:
        raise RuntimeError("self-signed credential without truststore")
    key_data = {CA_KEY: credential.private_key}
    cert_data = {
        CA_CRT: credential.certificate,
        CA_STORE: credential.trust_store,
        CA_STORE_PASSWORD: credential.store_password.encode("ascii"),
    }
    return key_data, cert_data


def _replace_key(
    ca: CertificateAuthority, key_generation: int, tooling: CertTooling, now: datetime
) -> tuple[dict[str, bytes], dict[str, bytes]]:
    cert_data = dict(ca.cert_data)
    old_cert_pem = cert_data.pop(CA_CRT, None)
    old_cert = try_deserialize_certificate(old_cert_pem)
    if old_cert_pem and old_cert is not None:
        alias = archive_alias(old_cert.not_valid_after_utc)
        cert_data = add_to_trust_store(cert_data, alias, old_cert_pem, tooling=tooling)
        cert_data[alias] = old_cert_pem
    elif old_cert_pem:
        LOGGER.warning("Current CA certificate is not an X.509 certificate; not archiving it")

    key_pem, cert_pem = tooling.generate_self_signed(
        ca_subject(ca, key_generation), ca.validity_days, now
    )
    cert_data = add_to_trust_store(cert_data, CA_CRT, cert_pem, tooling=tooling)
    cert_data[CA_CRT] = cert_pem
    return {CA_KEY: key_pem}, cert_data


def _renew_cert(ca: CertificateAuthority, tooling: CertTooling, now: datetime) -> dict[str, bytes]:
    key_pem = ca.current_key
    if key_pem is None:
        raise RuntimeError("cannot renew a CA certificate without a key")
    existing = try_deserialize_certificate(ca.current_cert)
    subject = (
        subject_from_certificate(existing)
        if existing is not None and not _issued_for_other_key(ca, existing)
        else ca_subject(ca, ca.key_generation)
    )
    LOGGER.debug("Renewing CA with subject %s", subject.common_name)
    cert_pem = tooling.renew_self_signed(key_pem, subject, ca.validity_days, now)
    cert_data = add_to_trust_store(ca.cert_data, CA_CRT, cert_pem, tooling=tooling)
    cert_data[CA_CRT] = cert_pem
    return cert_data


def _observe_external(ca: CertificateAuthority, kind: CaKind, now: datetime) -> CaReconcileResult:
    changed = kind.change_detector(ca.cert_generation)
    current_cert = try_deserialize_certificate(ca.current_cert)

    if current_cert is None:
        LOGGER.warning(
            "%s: The certificate (data.%s) and the private key (data.%s) need to be "
            "configured with a PEM-format certificate and key",
            kind.name,
            CA_CRT,
            CA_KEY,
            extra={"ca": kind.name},
        )
    elif in_renewal_window(current_cert, ca.renewal_days, now):
        LOGGER.warning(
            "%s: The certificate (data.%s) needs to be renewed and it is not configured "
            "to automatically renew. It expires on %s",
            kind.name,
            CA_CRT,
            current_cert.not_valid_after_utc.isoformat(),
            extra={"ca": kind.name},
        )

    if not changed:
        return CaReconcileResult(RenewalType.NOOP, ca)

    reason = "Dependent records were issued under another CA certificate generation"
    LOGGER.warning(
        "%s: %s (current generation %d)",
        kind.name,
        reason,
        ca.cert_generation,
        extra={"ca": kind.name, "decision": RenewalType.REPLACE_KEY.value},
    )
    return CaReconcileResult(RenewalType.REPLACE_KEY, ca, reason=reason)


def reconcile_ca(
    ca: CertificateAuthority,
    force_renew: bool,
    force_replace: bool,
    maintenance_window_open: bool,
    now: datetime,
    *,
    kind: CaKind = CLUSTER_CA,
    tooling: CertTooling | None = None,
    key_record: str | None = None,
    cert_record: str | None = None,
) -> CaReconcileResult:
    """Create, renew or re-key a CA as needed and return the resulting CA.

    A CA that is not self-managed is only observed: its material is returned
    untouched and the decision is REPLACE_KEY when the kind's change detector
    reports dependents issued under another generation, NOOP otherwise.

    For a self-managed CA the certificate generation is bumped on RENEW_CERT
    and REPLACE_KEY, the key generation on REPLACE_KEY only. Expired and
    unparseable certificates are purged once at the end of every pass.

    Args:
        ca: Current CA state
        force_renew: The certificate record requests a renewal
        force_replace: The key record requests a key replacement
        maintenance_window_open: Disruptive operations may run now
        now: Current instant
        kind: CA kind capabilities, used for drift detection and logging
        tooling: Certificate tooling, defaults to CertTooling()
        key_record: Name of the key record, for messages
        cert_record: Name of the certificate record, for messages

    Returns:
        CaReconcileResult with decision, updated CA and purged entry count

    Raises:
        IssuanceError: If new CA material cannot be generated
        TrustStoreError: If the truststore cannot be read or rewritten
    """
    if not ca.self_managed:
        return _observe_external(ca, kind, now)

    tooling = tooling or CertTooling()
    key_record = key_record or f"{kind.name} key"
    cert_record = cert_record or f"{kind.name} certificate"

    renewal_type, reason = decide_renewal(
        ca, force_renew, force_replace, maintenance_window_open, now
    )
    _log_renewal_state(kind, renewal_type, reason, key_record, cert_record)

    cert_generation = ca.cert_generation
    key_generation = ca.key_generation

    if renewal_type is RenewalType.CREATE:
        key_data, cert_data = _create(ca, tooling, now)
    elif renewal_type is RenewalType.REPLACE_KEY:
        cert_generation += 1
        key_generation += 1
        key_data, cert_data = _replace_key(ca, key_generation, tooling, now)
    elif renewal_type is RenewalType.RENEW_CERT:
        cert_generation += 1
        key_data = dict(ca.key_data)
        cert_data = _renew_cert(ca, tooling, now)
    else:
        key_data = dict(ca.key_data)
        cert_data = dict(ca.cert_data)
        current_cert_pem = ca.current_cert
        # Records written by older versions may carry no truststore
        if (
            CA_STORE not in cert_data
            and current_cert_pem is not None
            and try_deserialize_certificate(current_cert_pem) is not None
        ):
            cert_data = add_to_trust_store(cert_data, CA_CRT, current_cert_pem, tooling=tooling)

    cert_data, removed_count = purge_expired(cert_data, now, tooling=tooling)

    if removed_count:
        LOGGER.info(
            "%s: %d expired CA certificates removed",
            kind.name,
            removed_count,
            extra={"ca": kind.name},
        )
    if renewal_type not in (RenewalType.NOOP, RenewalType.POSTPONED):
        LOGGER.debug(
            "%s: %s",
            kind.name,
            describe_renewal(renewal_type, key_record, cert_record, done=True),
            extra={"ca": kind.name, "decision": renewal_type.value},
        )

    updated = replace(
        ca,
        key_data=key_data,
        cert_data=cert_data,
        cert_generation=cert_generation,
        key_generation=key_generation,
    )
    return CaReconcileResult(renewal_type, updated, removed_count, reason)
