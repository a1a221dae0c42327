"""Tests for the per-replica issuance engine."""

from collections.abc import Callable
from dataclasses import replace
from datetime import datetime, timedelta

import pytest

from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.cert_utils import deserialize_certificate
from fleet_ca.lib.models import CertificateAuthority, Credential, DependentCredentialSet, RenewalType
from fleet_ca.lib.replica_issuance import (
    issue_or_reuse,
    issue_or_reuse_component,
    regeneration_reasons,
)
from fleet_ca.lib.subject import (
    Subject,
    build_subject,
    certificate_alt_names,
    subject_from_certificate,
)


@pytest.fixture
def issued(
    tooling: CertTooling,
    created_ca: CertificateAuthority,
    subject_fn: Callable[[int], Subject],
    now: datetime,
) -> Callable[[int], DependentCredentialSet]:
    """Issue a fresh set of the given size signed by the created CA."""

    def issue_set(count: int) -> DependentCredentialSet:
        return issue_or_reuse(
            count, subject_fn, None, created_ca, RenewalType.NOOP, True,
            group="brokers", now=now, tooling=tooling,
        )

    return issue_set


def _same(first: Credential, second: Credential) -> bool:
    return first.certificate == second.certificate and first.private_key == second.private_key


class TestFirstIssuance:
    """Tests for groups without stored credentials."""

    def test_issues_one_credential_per_replica(
        self,
        issued: Callable[[int], DependentCredentialSet],
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
    ) -> None:
        credential_set = issued(3)

        assert sorted(credential_set.credentials) == [0, 1, 2]
        assert credential_set.group == "brokers"
        assert credential_set.ca_cert_generation == created_ca.cert_generation
        ca_cert = deserialize_certificate(created_ca.current_cert)
        for index, credential in credential_set.credentials.items():
            cert = deserialize_certificate(credential.certificate)
            cert.verify_directly_issued_by(ca_cert)
            assert frozenset(certificate_alt_names(cert)) == subject_fn(index).san_set()
            assert credential.is_packaged

    def test_zero_replicas_yields_empty_set(
        self, issued: Callable[[int], DependentCredentialSet]
    ) -> None:
        assert len(issued(0)) == 0


class TestReuse:
    """Tests for copying stored credentials."""

    def test_unchanged_set_is_reused(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        """Running again with the same inputs returns byte-identical credentials."""
        existing = issued(3)

        again = issue_or_reuse(
            3, subject_fn, existing, created_ca, RenewalType.NOOP, True, now=now, tooling=tooling
        )

        assert again.credentials == existing.credentials
        assert again.ca_cert_generation == existing.ca_cert_generation

    def test_scale_up_keeps_existing_replicas(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = issued(3)

        scaled = issue_or_reuse(
            5, subject_fn, existing, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert sorted(scaled.credentials) == [0, 1, 2, 3, 4]
        for index in range(3):
            assert _same(scaled.credentials[index], existing.credentials[index])
        assert scaled.credentials[3].private_key not in {
            credential.private_key for credential in existing.credentials.values()
        }

    def test_scale_down_truncates(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = issued(5)

        scaled = issue_or_reuse(
            2, subject_fn, existing, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert sorted(scaled.credentials) == [0, 1]
        assert scaled.credentials[0] == existing.credentials[0]
        assert scaled.credentials[1] == existing.credentials[1]

    def test_missing_index_is_reissued(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = issued(3)
        gappy = replace(
            existing, credentials={0: existing.credentials[0], 2: existing.credentials[2]}
        )

        result = issue_or_reuse(
            3, subject_fn, gappy, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert sorted(result.credentials) == [0, 1, 2]
        assert result.credentials[0] == existing.credentials[0]
        assert not _same(result.credentials[1], existing.credentials[1])


class TestFullRegeneration:
    """Tests for conditions that invalidate the whole set."""

    @pytest.mark.parametrize(
        "decision", [RenewalType.CREATE, RenewalType.RENEW_CERT, RenewalType.REPLACE_KEY]
    )
    def test_rotating_ca_decision_regenerates_everything(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
        decision: RenewalType,
    ) -> None:
        existing = issued(2)

        result = issue_or_reuse(
            2, subject_fn, existing, created_ca, decision, False, now=now, tooling=tooling
        )

        for index in range(2):
            assert not _same(result.credentials[index], existing.credentials[index])

    def test_generation_mismatch_regenerates_everything(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        """A set issued under another CA generation is replaced even on NOOP."""
        existing = replace(issued(2), ca_cert_generation=7)

        result = issue_or_reuse(
            2, subject_fn, existing, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert result.ca_cert_generation == created_ca.cert_generation
        for index in range(2):
            assert not _same(result.credentials[index], existing.credentials[index])

    def test_missing_mirrored_generation_is_not_a_mismatch(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = replace(issued(2), ca_cert_generation=None)

        result = issue_or_reuse(
            2, subject_fn, existing, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert result.credentials == existing.credentials
        assert result.ca_cert_generation == created_ca.cert_generation


class TestPerReplicaRegeneration:
    """Tests for reasons that regenerate a single replica."""

    def test_changed_alt_names_regenerate_only_that_replica(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = issued(3)

        def moved(index: int) -> Subject:
            if index == 1:
                return build_subject("broker-1", "io.fleet", ["broker-1.new.example"])
            return subject_fn(index)

        result = issue_or_reuse(
            3, moved, existing, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert result.credentials[0] == existing.credentials[0]
        assert result.credentials[2] == existing.credentials[2]
        cert = deserialize_certificate(result.credentials[1].certificate)
        assert [san.value for san in certificate_alt_names(cert)] == ["broker-1.new.example"]

    def test_reordered_alt_names_are_not_a_change(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = issued(1)
        original = subject_fn(0)

        def reordered(index: int) -> Subject:
            return replace(original, alt_names=tuple(reversed(original.alt_names)))

        result = issue_or_reuse(
            1, reordered, existing, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        assert result.credentials[0] == existing.credentials[0]

    @pytest.mark.parametrize(("window_open", "regenerated"), [(True, True), (False, False)])
    def test_expiring_certificate_waits_for_maintenance_window(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
        window_open: bool,
        regenerated: bool,
    ) -> None:
        existing = issued(1)
        later = now + timedelta(days=350)

        result = issue_or_reuse(
            1, subject_fn, existing, created_ca, RenewalType.NOOP, window_open,
            now=later, tooling=tooling,
        )

        assert (not _same(result.credentials[0], existing.credentials[0])) is regenerated

    def test_unparseable_certificate_is_regenerated(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        existing = issued(1)
        broken = replace(
            existing,
            credentials={0: replace(existing.credentials[0], certificate=b"garbage")},
        )

        result = issue_or_reuse(
            1, subject_fn, broken, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        deserialize_certificate(result.credentials[0].certificate)

    def test_legacy_credential_is_repackaged(
        self,
        issued: Callable[[int], DependentCredentialSet],
        tooling: CertTooling,
        created_ca: CertificateAuthority,
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        """Credentials stored without keystore keep key and certificate and gain a keystore."""
        existing = issued(1)
        stored = existing.credentials[0]
        legacy = replace(
            existing,
            credentials={0: Credential(private_key=stored.private_key, certificate=stored.certificate)},
        )

        result = issue_or_reuse(
            1, subject_fn, legacy, created_ca, RenewalType.NOOP, False, now=now, tooling=tooling
        )

        credential = result.credentials[0]
        assert _same(credential, stored)
        assert credential.is_packaged
        aliases = tooling.truststore_aliases(credential.key_store, credential.store_password)
        assert list(aliases) == ["broker-0"]


class TestRegenerationReasons:
    """Tests for regeneration_reasons."""

    def test_no_reasons_for_fresh_credential(
        self,
        issued: Callable[[int], DependentCredentialSet],
        subject_fn: Callable[[int], Subject],
        now: datetime,
    ) -> None:
        credential = issued(1).credentials[0]

        assert regeneration_reasons(credential, subject_fn(0), 30, True, now) == []

    def test_reasons_accumulate(
        self,
        issued: Callable[[int], DependentCredentialSet],
        now: datetime,
    ) -> None:
        credential = issued(1).credentials[0]

        reasons = regeneration_reasons(
            credential, build_subject("broker-0"), 30, True, now + timedelta(days=360)
        )

        assert reasons == ["DNS names changed", "certificate is expiring"]


class TestValidation:
    """Tests for rejected inputs."""

    def test_negative_replica_count(
        self, created_ca: CertificateAuthority, subject_fn: Callable[[int], Subject]
    ) -> None:
        with pytest.raises(ValueError, match="must not be negative"):
            issue_or_reuse(-1, subject_fn, None, created_ca, RenewalType.NOOP, True)

    def test_ca_without_material(
        self, empty_ca: CertificateAuthority, subject_fn: Callable[[int], Subject]
    ) -> None:
        with pytest.raises(ValueError, match="no key and certificate"):
            issue_or_reuse(1, subject_fn, None, empty_ca, RenewalType.NOOP, True)


class TestComponentIssuance:
    """Tests for single component credentials."""

    @pytest.fixture
    def component(
        self, created_ca: CertificateAuthority, tooling: CertTooling, now: datetime
    ) -> Callable[..., Credential]:
        def run(
            existing: Credential | None = None,
            decision: RenewalType = RenewalType.NOOP,
            common_name: str = "fleet-operator",
            at: datetime = now,
        ) -> Credential:
            existing_set = None
            if existing is not None:
                existing_set = DependentCredentialSet(
                    "operator-certs", {0: existing}, created_ca.cert_generation
                )
            return issue_or_reuse_component(
                common_name, existing_set, created_ca, decision, True,
                organization="io.fleet", now=at, tooling=tooling,
            )

        return run

    def test_first_issuance_has_no_alt_names(
        self, component: Callable[..., Credential], created_ca: CertificateAuthority
    ) -> None:
        credential = component()

        cert = deserialize_certificate(credential.certificate)
        cert.verify_directly_issued_by(deserialize_certificate(created_ca.current_cert))
        assert subject_from_certificate(cert).common_name == "fleet-operator"
        assert certificate_alt_names(cert) == []
        assert credential.is_packaged

    def test_valid_credential_is_reused(self, component: Callable[..., Credential]) -> None:
        first = component()

        assert component(first) == first

    @pytest.mark.parametrize(
        ("decision", "common_name"),
        [
            (RenewalType.RENEW_CERT, "fleet-operator"),
            (RenewalType.NOOP, "fleet-exporter"),
        ],
    )
    def test_rotated_ca_or_new_name_reissues(
        self, component: Callable[..., Credential], decision: RenewalType, common_name: str
    ) -> None:
        first = component()

        second = component(first, decision, common_name)

        assert not _same(first, second)
        assert subject_from_certificate(
            deserialize_certificate(second.certificate)
        ).common_name == common_name

    def test_expiring_credential_is_reissued(
        self, component: Callable[..., Credential], created_ca: CertificateAuthority, now: datetime
    ) -> None:
        first = component()

        second = component(first, at=now + timedelta(days=created_ca.validity_days - 5))

        assert not _same(first, second)

    def test_legacy_credential_is_repackaged(self, component: Callable[..., Credential]) -> None:
        first = component()
        legacy = Credential(private_key=first.private_key, certificate=first.certificate)

        repackaged = component(legacy)

        assert _same(first, repackaged)
        assert repackaged.is_packaged
