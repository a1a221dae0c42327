"""Mapping between stored records and CA / dependent credential values."""

from collections.abc import Callable, Iterable

from fleet_ca.lib.config import CaConfig
from fleet_ca.lib.constants import (
    ANNO_CA_CERT_GENERATION,
    ANNO_CA_KEY_GENERATION,
    ANNO_FORCE_RENEW,
    ANNO_FORCE_REPLACE,
    CA_KEY,
    CRT_SUFFIX,
    INIT_GENERATION,
    KEY_SUFFIX,
    LEGACY_CLUSTER_CA_KEY,
    PASSWORD_SUFFIX,
    STORE_SUFFIX,
)
from fleet_ca.lib.errors import MissingRecordValueError
from fleet_ca.lib.logging_config import LOGGER
from fleet_ca.lib.models import (
    CaReconcileResult,
    CertificateAuthority,
    Credential,
    DependentCredentialSet,
    RenewalType,
)
from fleet_ca.lib.record_store import Record

_NEW_CERTIFICATE = (RenewalType.CREATE, RenewalType.RENEW_CERT, RenewalType.REPLACE_KEY)
_NEW_KEY = (RenewalType.CREATE, RenewalType.REPLACE_KEY)


def _boolean_annotation(record: Record | None, name: str) -> bool:
    if record is None:
        return False
    return record.annotations.get(name, "false").strip().lower() == "true"


def _int_annotation(record: Record, name: str) -> int | None:
    raw = record.annotations.get(name)
    if raw is None:
        return None
    try:
        return int(raw)
    except ValueError as e:
        raise ValueError(
            f"record {record.namespace}/{record.name} has a non-integer {name} annotation: {raw!r}"
        ) from e


def _generation(record: Record | None, name: str) -> int:
    if record is None:
        return INIT_GENERATION
    value = _int_annotation(record, name)
    if value is None:
        LOGGER.warning(
            "Record %s/%s has no %s annotation, assuming generation %d",
            record.namespace,
            record.name,
            name,
            INIT_GENERATION,
            extra={"record": f"{record.namespace}/{record.name}"},
        )
        return INIT_GENERATION
    return value


def adapt_legacy_key_record(
    cert_record: Record | None, key_record: Record | None
) -> tuple[Record | None, Record | None]:
    """Adapt records that store the CA key under ``cluster-ca.key``.

    The key is copied to ``ca.key`` and the certificate record is annotated
    with force-renew so the certificate is reissued. The inputs are not
    modified.

    Returns:
        Tuple of (cert record, key record), copies when adapted
    """
    if key_record is None or LEGACY_CLUSTER_CA_KEY not in key_record.data:
        return cert_record, key_record

    LOGGER.info(
        "Record %s/%s stores the CA key as %s; moving it to %s",
        key_record.namespace,
        key_record.name,
        LEGACY_CLUSTER_CA_KEY,
        CA_KEY,
        extra={"record": f"{key_record.namespace}/{key_record.name}"},
    )
    adapted_key = key_record.copy()
    adapted_key.data[CA_KEY] = adapted_key.data.pop(LEGACY_CLUSTER_CA_KEY)

    if cert_record is None:
        return None, adapted_key
    adapted_cert = cert_record.copy()
    adapted_cert.annotations[ANNO_FORCE_RENEW] = "true"
    return adapted_cert, adapted_key


def force_flags(cert_record: Record | None, key_record: Record | None) -> tuple[bool, bool]:
    """Read the force-renew and force-replace annotations.

    Returns:
        Tuple of (force_renew, force_replace)
    """
    return (
        _boolean_annotation(cert_record, ANNO_FORCE_RENEW),
        _boolean_annotation(key_record, ANNO_FORCE_REPLACE),
    )


def ca_from_records(
    config: CaConfig, cert_record: Record | None, key_record: Record | None
) -> CertificateAuthority:
    """Build the CA value from its certificate and key records.

    Missing records yield empty material, which the lifecycle engine turns
    into CREATE or RENEW_CERT.
    """
    key_data: dict[str, bytes] = {}
    if key_record is not None and key_record.data.get(CA_KEY):
        key_data[CA_KEY] = key_record.data[CA_KEY]

    return CertificateAuthority(
        common_name=config.common_name,
        validity_days=config.validity_days,
        renewal_days=config.renewal_days,
        expiration_policy=config.expiration_policy,
        self_managed=config.generate_ca,
        organization=config.organization,
        key_data=key_data,
        cert_data=dict(cert_record.data) if cert_record is not None else {},
        cert_generation=_generation(cert_record, ANNO_CA_CERT_GENERATION),
        key_generation=_generation(key_record, ANNO_CA_KEY_GENERATION),
    )


def ca_to_records(
    result: CaReconcileResult,
    config: CaConfig,
    namespace: str,
    previous_cert: Record | None = None,
    previous_key: Record | None = None,
) -> tuple[Record, Record]:
    """Build the certificate and key records to persist after a lifecycle pass.

    A force annotation is dropped once its operation has been performed:
    force-renew by any decision that issued a new certificate, force-replace
    only by CREATE or REPLACE_KEY. Otherwise it is carried over, so a
    postponed request, or a key replacement preempted by a certificate
    repair, runs on a later pass.

    Returns:
        Tuple of (cert record, key record)
    """
    ca = result.ca
    renewed = result.renewal_type in _NEW_CERTIFICATE
    rekeyed = result.renewal_type in _NEW_KEY

    cert_annotations = {ANNO_CA_CERT_GENERATION: str(ca.cert_generation)}
    if not renewed and previous_cert is not None and ANNO_FORCE_RENEW in previous_cert.annotations:
        cert_annotations[ANNO_FORCE_RENEW] = previous_cert.annotations[ANNO_FORCE_RENEW]

    key_annotations = {ANNO_CA_KEY_GENERATION: str(ca.key_generation)}
    if not rekeyed and previous_key is not None and ANNO_FORCE_REPLACE in previous_key.annotations:
        key_annotations[ANNO_FORCE_REPLACE] = previous_key.annotations[ANNO_FORCE_REPLACE]

    return (
        Record(namespace, config.cert_record_name, dict(ca.cert_data), cert_annotations),
        Record(namespace, config.key_record_name, dict(ca.key_data), key_annotations),
    )


def credential_set_from_record(
    record: Record | None,
    replica_name_fn: Callable[[int], str],
    annotation: str,
    group: str | None = None,
) -> DependentCredentialSet | None:
    """Load the per-replica credentials of a group.

    The number of replicas is taken from the number of ``.crt`` entries;
    indexes whose certificate is absent are left out so they get reissued.

    Args:
        record: Stored record of the group, or None
        replica_name_fn: Entry name prefix for a replica index
        annotation: Annotation mirroring the issuing CA's certificate generation
        group: Group name, defaults to the record name

    Raises:
        MissingRecordValueError: If a replica has a certificate but no key
    """
    if record is None:
        return None

    count = sum(1 for name in record.data if name.endswith(CRT_SUFFIX))
    credentials: dict[int, Credential] = {}
    for index in range(count):
        prefix = replica_name_fn(index)
        certificate = record.data.get(prefix + CRT_SUFFIX)
        if not certificate:
            continue
        password = record.data.get(prefix + PASSWORD_SUFFIX)
        credentials[index] = Credential(
            private_key=record.require(prefix + KEY_SUFFIX),
            certificate=certificate,
            key_store=record.data.get(prefix + STORE_SUFFIX) or None,
            store_password=password.decode("ascii") if password else None,
        )

    return DependentCredentialSet(
        group=group or record.name,
        credentials=credentials,
        ca_cert_generation=_int_annotation(record, annotation),
    )


def credential_set_to_record(
    credential_set: DependentCredentialSet,
    namespace: str,
    name: str,
    replica_name_fn: Callable[[int], str],
    annotation: str,
) -> Record:
    """Build the record persisting a group's credentials and mirrored CA generation."""
    data: dict[str, bytes] = {}
    for index, credential in sorted(credential_set.credentials.items()):
        prefix = replica_name_fn(index)
        data[prefix + KEY_SUFFIX] = credential.private_key
        data[prefix + CRT_SUFFIX] = credential.certificate
        if credential.key_store:
            data[prefix + STORE_SUFFIX] = credential.key_store
        if credential.store_password:
            data[prefix + PASSWORD_SUFFIX] = credential.store_password.encode("ascii")

    annotations = {}
    if credential_set.ca_cert_generation is not None:
        annotations[annotation] = str(credential_set.ca_cert_generation)
    return Record(namespace, name, data, annotations)


def generation_change_detector(
    annotation: str, records: Iterable[Record | None]
) -> Callable[[int], bool]:
    """Detector reporting whether any record was issued under another CA certificate generation.

    Records without the annotation are ignored.
    """
    annotated = (_int_annotation(record, annotation) for record in records if record is not None)
    generations = [value for value in annotated if value is not None]

    def changed(cert_generation: int) -> bool:
        return any(generation != cert_generation for generation in generations)

    return changed
