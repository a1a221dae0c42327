"""Per-replica leaf credentials: copy what is still valid, issue the rest.

Each index is decided on its own, so scaling down truncates the set and
scaling up extends it without touching the credentials of other replicas.
"""

from collections.abc import Callable
from datetime import datetime, timezone

from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.cert_utils import in_renewal_window, try_deserialize_certificate
from fleet_ca.lib.credential_issuer import issue, issue_signed_by, repackage_keystore
from fleet_ca.lib.errors import IssuanceError
from fleet_ca.lib.logging_config import LOGGER
from fleet_ca.lib.models import (
    ROTATING_RENEWAL_TYPES,
    CertificateAuthority,
    Credential,
    DependentCredentialSet,
    RenewalType,
)
from fleet_ca.lib.subject import (
    Subject,
    build_subject,
    certificate_alt_names,
    subject_from_certificate,
)


def regeneration_reasons(
    credential: Credential,
    subject: Subject,
    renewal_days: int,
    maintenance_window_open: bool,
    now: datetime,
) -> list[str]:
    """Return why an existing credential has to be reissued, empty when it can be kept."""
    cert = try_deserialize_certificate(credential.certificate)
    if cert is None:
        return ["certificate cannot be parsed"]

    reasons: list[str] = []
    current_names = frozenset(certificate_alt_names(cert))
    desired_names = subject.san_set()
    if current_names != desired_names:
        LOGGER.debug(
            "Alternate subjects for %s differ - current: %s; desired: %s",
            subject.common_name,
            sorted(san.value for san in current_names),
            sorted(san.value for san in desired_names),
        )
        reasons.append("DNS names changed")

    if maintenance_window_open and in_renewal_window(cert, renewal_days, now):
        reasons.append("certificate is expiring")

    return reasons


def _reusable_count(
    existing_set: DependentCredentialSet | None,
    ca: CertificateAuthority,
    ca_decision: RenewalType,
    desired_replica_count: int,
) -> int:
    if existing_set is None or not existing_set.credentials:
        return 0

    if ca_decision in ROTATING_RENEWAL_TYPES:
        LOGGER.debug(
            "%s: CA decision %s invalidates all existing certificates",
            existing_set.group,
            ca_decision.value,
            extra={"group": existing_set.group, "decision": ca_decision.value},
        )
        return 0

    mirrored = existing_set.ca_cert_generation
    if mirrored is not None and mirrored != ca.cert_generation:
        LOGGER.info(
            "%s: certificates were issued under CA certificate generation %d, current is %d; "
            "regenerating all of them",
            existing_set.group,
            mirrored,
            ca.cert_generation,
            extra={"group": existing_set.group},
        )
        return 0

    return min(len(existing_set.credentials), desired_replica_count)


def issue_or_reuse(
    desired_replica_count: int,
    subject_fn: Callable[[int], Subject],
    existing_set: DependentCredentialSet | None,
    ca: CertificateAuthority,
    ca_decision: RenewalType,
    maintenance_window_open: bool,
    *,
    group: str | None = None,
    now: datetime | None = None,
    tooling: CertTooling | None = None,
) -> DependentCredentialSet:
    """Produce exactly one credential per replica index in ``[0, desired_replica_count)``.

    Existing credentials are copied unless their alternative names changed,
    they are expiring while the maintenance window is open, or they cannot be
    parsed. Nothing is reused when the CA was created, renewed or re-keyed in
    this pass, or when the set was issued under another CA certificate
    generation. Entries lacking a keystore are repackaged first.

    Args:
        desired_replica_count: Number of replicas that need a credential
        subject_fn: Desired subject for a replica index
        existing_set: Credentials currently stored for the group, if any
        ca: CA state after this pass's lifecycle decision
        ca_decision: Lifecycle decision taken for the CA in this pass
        maintenance_window_open: Expiring certificates may be replaced now
        group: Group name, defaults to the existing set's group
        now: Current instant, defaults to the current time
        tooling: Certificate tooling, defaults to CertTooling()

    Returns:
        DependentCredentialSet mirroring the CA's certificate generation

    Raises:
        ValueError: If the replica count is negative or the CA cannot sign
        IssuanceError: If a credential cannot be issued
    """
    if desired_replica_count < 0:
        raise ValueError(f"desired_replica_count must not be negative, got {desired_replica_count}")
    ca_key = ca.current_key
    ca_cert = ca.current_cert
    if ca_key is None or ca_cert is None:
        raise ValueError(f"CA {ca.common_name} has no key and certificate to sign with")

    now = now or datetime.now(timezone.utc)
    tooling = tooling or CertTooling()
    if group is None:
        group = existing_set.group if existing_set is not None else ""

    def fresh(subject: Subject) -> Credential:
        return issue(subject, ca.validity_days, ca_key, ca_cert, tooling=tooling, now=now)

    existing_count = _reusable_count(existing_set, ca, ca_decision, desired_replica_count)
    credentials: dict[int, Credential] = {}

    # scale down copies only the requested number of replicas
    for index in range(existing_count):
        subject = subject_fn(index)
        current = existing_set.credentials.get(index) if existing_set is not None else None
        if current is None:
            LOGGER.debug(
                "%s: certificate for replica %d to generate: certificate added",
                group,
                index,
                extra={"group": group, "replica": index},
            )
            credentials[index] = fresh(subject)
            continue

        reasons = regeneration_reasons(
            current, subject, ca.renewal_days, maintenance_window_open, now
        )
        if not reasons and not current.is_packaged:
            # written by an older version without keystore and password
            try:
                current = repackage_keystore(
                    current.private_key, current.certificate, subject.common_name, tooling=tooling
                )
            except IssuanceError:
                reasons.append("stored key cannot be packaged")

        if reasons:
            LOGGER.debug(
                "%s: certificate for replica %d needs to be regenerated because: %s",
                group,
                index,
                ", ".join(reasons),
                extra={"group": group, "replica": index},
            )
            credentials[index] = fresh(subject)
        else:
            credentials[index] = current

    # scale up issues certificates for the added replicas
    for index in range(existing_count, desired_replica_count):
        LOGGER.debug(
            "%s: certificate for replica %d to generate",
            group,
            index,
            extra={"group": group, "replica": index},
        )
        credentials[index] = fresh(subject_fn(index))

    return DependentCredentialSet(
        group=group,
        credentials=credentials,
        ca_cert_generation=ca.cert_generation,
    )


def issue_or_reuse_component(
    common_name: str,
    existing_set: DependentCredentialSet | None,
    ca: CertificateAuthority,
    ca_decision: RenewalType,
    maintenance_window_open: bool,
    *,
    organization: str | None = None,
    now: datetime | None = None,
    tooling: CertTooling | None = None,
) -> Credential:
    """Keep or reissue the single credential of a component such as an operator or exporter.

    The credential carries no alternative names. ``existing_set`` holds it
    under index 0 and is reused on the same terms as a replica's credential;
    a changed common name also forces a new one.

    Raises:
        ValueError: If the CA cannot sign
        IssuanceError: If a credential cannot be issued
    """
    now = now or datetime.now(timezone.utc)
    tooling = tooling or CertTooling()
    subject = build_subject(common_name, organization)

    current = None
    if _reusable_count(existing_set, ca, ca_decision, 1) and existing_set is not None:
        current = existing_set.credentials.get(0)

    if current is not None:
        reasons = regeneration_reasons(
            current, subject, ca.renewal_days, maintenance_window_open, now
        )
        cert = try_deserialize_certificate(current.certificate)
        if cert is not None and subject_from_certificate(cert).common_name != common_name:
            reasons.append("common name changed")
        if not reasons and not current.is_packaged:
            try:
                current = repackage_keystore(
                    current.private_key, current.certificate, common_name, tooling=tooling
                )
            except IssuanceError:
                reasons.append("stored key cannot be packaged")
        if not reasons:
            return current
        LOGGER.debug(
            "%s: certificate needs to be regenerated because: %s",
            common_name,
            ", ".join(reasons),
            extra={"group": common_name},
        )

    return issue_signed_by(ca, common_name, organization, tooling=tooling, now=now)
