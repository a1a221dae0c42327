"""One reconciliation pass: load records, run the engines, persist the results."""

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from fleet_ca.lib.ca_lifecycle import reconcile_ca
from fleet_ca.lib.ca_records import (
    adapt_legacy_key_record,
    ca_from_records,
    ca_to_records,
    credential_set_from_record,
    credential_set_to_record,
    force_flags,
    generation_change_detector,
)
from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.config import CaConfig
from fleet_ca.lib.constants import CA_CRT, CA_KEY
from fleet_ca.lib.errors import MissingRecordValueError
from fleet_ca.lib.logging_config import LOGGER
from fleet_ca.lib.models import (
    CLUSTER_CA,
    CaKind,
    CaReconcileResult,
    Credential,
    DependentCredentialSet,
)
from fleet_ca.lib.record_store import Record, RecordStore
from fleet_ca.lib.replica_issuance import issue_or_reuse, issue_or_reuse_component
from fleet_ca.lib.subject import Subject


@dataclass(frozen=True)
class DependentGroup:
    """A group of replicas whose leaf credentials are signed by the CA.

    ``name`` is also the name of the record holding the group's credentials.
    """

    name: str
    replicas: int
    subject_fn: Callable[[int], Subject]
    replica_name_fn: Callable[[int], str]


@dataclass(frozen=True)
class ComponentIdentity:
    """A single component, e.g. an operator or metrics exporter, with one CA-signed credential.

    The credential is stored in record ``name`` under ``<common_name>.key``,
    ``.crt``, ``.p12`` and ``.password``.
    """

    name: str
    common_name: str
    organization: str | None = None

    def entry_name(self, index: int) -> str:
        return self.common_name


@dataclass
class ReconcileOutcome:
    ca_result: CaReconcileResult
    groups: dict[str, DependentCredentialSet] = field(default_factory=dict)
    components: dict[str, Credential] = field(default_factory=dict)


def _unchanged(previous: Record | None, record: Record) -> bool:
    return (
        previous is not None
        and previous.data == record.data
        and previous.annotations == record.annotations
    )


class CaReconciler:
    """Runs the CA lifecycle and per-replica issuance against a record store."""

    def __init__(
        self,
        store: RecordStore,
        namespace: str,
        config: CaConfig,
        *,
        kind: CaKind = CLUSTER_CA,
        tooling: CertTooling | None = None,
    ) -> None:
        self.store = store
        self.namespace = namespace
        self.config = config
        self.kind = kind
        self.tooling = tooling or CertTooling(key_size=config.key_size)

    def _put_if_changed(self, previous: Record | None, record: Record) -> None:
        context = {"record": f"{record.namespace}/{record.name}"}
        if _unchanged(previous, record):
            LOGGER.debug("Record %s is unchanged", context["record"], extra=context)
            return
        self.store.put(record)
        LOGGER.info("Stored record %s", context["record"], extra=context)

    def _require(self, record: Record | None, name: str, key: str) -> None:
        if record is None:
            raise MissingRecordValueError(self.namespace, name, key)
        record.require(key)

    def reconcile(
        self,
        maintenance_window_open: bool,
        now: datetime | None = None,
        *,
        dependent_records: Sequence[Record | None] = (),
    ) -> CaReconcileResult:
        """Run the CA lifecycle engine once and persist the CA records.

        Records of an externally managed CA are read but never written.

        Args:
            maintenance_window_open: Disruptive operations may run now
            now: Current instant, defaults to the current time
            dependent_records: Records signed by this CA, used to detect
                generation drift of an externally managed CA

        Returns:
            CaReconcileResult of the pass

        Raises:
            MissingRecordValueError: If an externally managed CA lacks its
                certificate or key record, or the value they must carry
        """
        now = now or datetime.now(timezone.utc)
        config = self.config
        cert_record = self.store.get(self.namespace, config.cert_record_name)
        key_record = self.store.get(self.namespace, config.key_record_name)

        stored_cert, stored_key = cert_record, key_record
        cert_record, key_record = adapt_legacy_key_record(cert_record, key_record)
        if not config.generate_ca:
            self._require(cert_record, config.cert_record_name, CA_CRT)
            self._require(key_record, config.key_record_name, CA_KEY)

        force_renew, force_replace = force_flags(cert_record, key_record)
        ca = ca_from_records(config, cert_record, key_record)

        kind = self.kind
        if not ca.self_managed:
            kind = replace(
                kind,
                change_detector=generation_change_detector(
                    kind.dependent_generation_annotation, dependent_records
                ),
            )

        result = reconcile_ca(
            ca,
            force_renew,
            force_replace,
            maintenance_window_open,
            now,
            kind=kind,
            tooling=self.tooling,
            key_record=config.key_record_name,
            cert_record=config.cert_record_name,
        )

        if ca.self_managed:
            new_cert, new_key = ca_to_records(
                result, config, self.namespace, cert_record, key_record
            )
            # certificate record first, then key record
            self._put_if_changed(stored_cert, new_cert)
            self._put_if_changed(stored_key, new_key)

        LOGGER.info(
            "%s: reconciled with %s (cert generation %d, key generation %d)",
            kind.name,
            result.renewal_type.value,
            result.ca.cert_generation,
            result.ca.key_generation,
            extra={"ca": kind.name, "decision": result.renewal_type.value},
        )
        return result

    def reconcile_group(
        self,
        group: DependentGroup,
        ca_result: CaReconcileResult,
        maintenance_window_open: bool,
        now: datetime | None = None,
        *,
        existing_record: Record | None = None,
    ) -> DependentCredentialSet:
        """Issue or reuse the credentials of one dependent group and persist them.

        Args:
            group: The dependent group
            ca_result: Result of this pass's CA lifecycle run
            maintenance_window_open: Expiring certificates may be replaced now
            now: Current instant, defaults to the current time
            existing_record: Already loaded record of the group, fetched when None

        Returns:
            The group's credential set after this pass
        """
        now = now or datetime.now(timezone.utc)
        annotation = self.kind.dependent_generation_annotation
        if existing_record is None:
            existing_record = self.store.get(self.namespace, group.name)

        existing_set = credential_set_from_record(
            existing_record, group.replica_name_fn, annotation, group.name
        )
        credential_set = issue_or_reuse(
            group.replicas,
            group.subject_fn,
            existing_set,
            ca_result.ca,
            ca_result.renewal_type,
            maintenance_window_open,
            group=group.name,
            now=now,
            tooling=self.tooling,
        )
        record = credential_set_to_record(
            credential_set, self.namespace, group.name, group.replica_name_fn, annotation
        )
        self._put_if_changed(existing_record, record)
        return credential_set

    def reconcile_component(
        self,
        component: ComponentIdentity,
        ca_result: CaReconcileResult,
        maintenance_window_open: bool,
        now: datetime | None = None,
        *,
        existing_record: Record | None = None,
    ) -> Credential:
        """Issue or reuse the credential of one component and persist it."""
        now = now or datetime.now(timezone.utc)
        annotation = self.kind.dependent_generation_annotation
        if existing_record is None:
            existing_record = self.store.get(self.namespace, component.name)

        existing_set = credential_set_from_record(
            existing_record, component.entry_name, annotation, component.name
        )
        credential = issue_or_reuse_component(
            component.common_name,
            existing_set,
            ca_result.ca,
            ca_result.renewal_type,
            maintenance_window_open,
            organization=component.organization,
            now=now,
            tooling=self.tooling,
        )
        credential_set = DependentCredentialSet(
            group=component.name,
            credentials={0: credential},
            ca_cert_generation=ca_result.ca.cert_generation,
        )
        record = credential_set_to_record(
            credential_set, self.namespace, component.name, component.entry_name, annotation
        )
        self._put_if_changed(existing_record, record)
        return credential

    def reconcile_all(
        self,
        groups: Sequence[DependentGroup],
        maintenance_window_open: bool,
        now: datetime | None = None,
        *,
        components: Sequence[ComponentIdentity] = (),
    ) -> ReconcileOutcome:
        """Reconcile the CA, then every dependent group, then every component."""
        now = now or datetime.now(timezone.utc)
        records = {
            name: self.store.get(self.namespace, name)
            for name in [group.name for group in groups] + [c.name for c in components]
        }

        ca_result = self.reconcile(
            maintenance_window_open, now, dependent_records=list(records.values())
        )
        outcome = ReconcileOutcome(ca_result)
        for group in groups:
            outcome.groups[group.name] = self.reconcile_group(
                group,
                ca_result,
                maintenance_window_open,
                now,
                existing_record=records[group.name],
            )
        for component in components:
            outcome.components[component.name] = self.reconcile_component(
                component,
                ca_result,
                maintenance_window_open,
                now,
                existing_record=records[component.name],
            )
        return outcome
