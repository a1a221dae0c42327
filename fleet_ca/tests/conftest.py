"""Test fixtures for fleet_ca tests."""

import logging
from collections.abc import Callable, Generator
from datetime import datetime, timezone

import pytest

from fleet_ca.lib.ca_lifecycle import reconcile_ca
from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.config import CaConfig
from fleet_ca.lib.models import CertificateAuthority, ExpirationPolicy
from fleet_ca.lib.subject import Subject, build_subject

NAMESPACE = "fleet"


@pytest.fixture
def tooling() -> CertTooling:
    """Return certificate tooling with 2048-bit keys (faster for tests)."""
    return CertTooling(key_size=2048)


@pytest.fixture
def now() -> datetime:
    """Return a fixed reconciliation instant."""
    return datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def ca_config() -> CaConfig:
    """Return test CA configuration."""
    return CaConfig(
        common_name="cluster-ca",
        cert_record_name="my-fleet-cluster-ca-cert",
        key_record_name="my-fleet-cluster-ca",
        validity_days=365,
        renewal_days=30,
        key_size=2048,
    )


@pytest.fixture
def empty_ca() -> CertificateAuthority:
    """Return a self-managed CA without any material yet."""
    return CertificateAuthority(
        common_name="cluster-ca",
        validity_days=365,
        renewal_days=30,
        expiration_policy=ExpirationPolicy.RENEW_CERTIFICATE,
        organization="io.fleet",
    )


@pytest.fixture
def created_ca(empty_ca: CertificateAuthority, tooling: CertTooling, now: datetime) -> CertificateAuthority:
    """Return a CA created at ``now``."""
    return reconcile_ca(empty_ca, False, False, True, now, tooling=tooling).ca


def broker_subject(index: int) -> Subject:
    """Default subject of broker replica ``index``."""
    return build_subject(
        f"broker-{index}",
        "io.fleet",
        [f"broker-{index}.brokers", f"broker-{index}.brokers.{NAMESPACE}.svc", "10.0.0.1"],
    )


def broker_name(index: int) -> str:
    return f"broker-{index}"


@pytest.fixture
def subject_fn() -> Callable[[int], Subject]:
    return broker_subject


@pytest.fixture
def replica_name_fn() -> Callable[[int], str]:
    return broker_name


@pytest.fixture
def fleet_logs(caplog: pytest.LogCaptureFixture) -> Generator[pytest.LogCaptureFixture]:
    """Capture records of the non-propagating fleet_ca logger."""
    fleet_logger = logging.getLogger("fleet_ca")
    fleet_logger.propagate = True
    try:
        with caplog.at_level(logging.DEBUG, logger="fleet_ca"):
            yield caplog
    finally:
        fleet_logger.propagate = False
