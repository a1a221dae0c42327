#!/usr/bin/env python3
"""Run one reconciliation pass of a CA and its dependent groups against Secrets Manager."""

import argparse
import sys
from collections.abc import Callable

from fleet_ca.lib.config import CaConfig, StoreConfig
from fleet_ca.lib.logging_config import LOGGER, set_level
from fleet_ca.lib.models import CLIENTS_CA, CLUSTER_CA, ExpirationPolicy
from fleet_ca.lib.reconciler import CaReconciler, ComponentIdentity, DependentGroup
from fleet_ca.lib.secrets_client import SecretsManagerRecordStore
from fleet_ca.lib.subject import Subject, build_subject

KINDS = {"cluster": CLUSTER_CA, "clients": CLIENTS_CA}


def _split_pair(value: str, form: str) -> tuple[str, str]:
    name, sep, rest = value.partition("=")
    if not sep or not name or not rest:
        raise argparse.ArgumentTypeError(f"expected {form}, got {value!r}")
    return name, rest


def parse_group(value: str) -> tuple[str, int]:
    """Parse a ``NAME=REPLICAS`` group argument."""
    name, replicas = _split_pair(value, "NAME=REPLICAS")
    try:
        count = int(replicas)
    except ValueError as e:
        raise argparse.ArgumentTypeError(
            f"replica count must be an integer, got {replicas!r}"
        ) from e
    if count < 0:
        raise argparse.ArgumentTypeError(f"replica count must not be negative, got {count}")
    return name, count


def parse_component(value: str) -> tuple[str, str]:
    """Parse a ``RECORD=COMMON_NAME`` component argument."""
    return _split_pair(value, "RECORD=COMMON_NAME")


def replica_name_fn(group: str) -> Callable[[int], str]:
    return lambda index: f"{group}-{index}"


def subject_fn(group: str, namespace: str, organization: str) -> Callable[[int], Subject]:
    """Default naming: ``<group>-<i>`` reachable as a pod of the ``<group>`` service."""

    def subject(index: int) -> Subject:
        replica = f"{group}-{index}"
        return build_subject(
            replica,
            organization,
            [
                replica,
                f"{replica}.{group}",
                f"{replica}.{group}.{namespace}.svc",
                f"{replica}.{group}.{namespace}.svc.cluster.local",
            ],
        )

    return subject


def build_groups(
    groups: list[tuple[str, int]], namespace: str, organization: str
) -> list[DependentGroup]:
    return [
        DependentGroup(
            name=name,
            replicas=replicas,
            subject_fn=subject_fn(name, namespace, organization),
            replica_name_fn=replica_name_fn(name),
        )
        for name, replicas in groups
    ]


def main() -> int:
    """Reconcile a CA and its dependent groups.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    parser = argparse.ArgumentParser(
        description="Create, renew or re-key a CA and issue the certificates it signs"
    )
    parser.add_argument("--namespace", required=True, help="Namespace of the records")
    parser.add_argument(
        "--ca-name",
        required=True,
        help="CA key record name; the certificate record is <ca-name>-cert",
    )
    parser.add_argument(
        "--kind",
        choices=sorted(KINDS),
        default="cluster",
        help="CA kind (default: cluster)",
    )
    parser.add_argument(
        "--group",
        action="append",
        type=parse_group,
        default=[],
        metavar="NAME=REPLICAS",
        help="Dependent group and its replica count, may be repeated",
    )
    parser.add_argument(
        "--component",
        action="append",
        type=parse_component,
        default=[],
        metavar="RECORD=COMMON_NAME",
        help="Single component credential and the record holding it, may be repeated",
    )
    parser.add_argument(
        "--validity-days", type=int, default=365, help="CA validity in days (default: 365)"
    )
    parser.add_argument(
        "--renewal-days", type=int, default=30, help="Renewal window in days (default: 30)"
    )
    parser.add_argument(
        "--policy",
        choices=[policy.value for policy in ExpirationPolicy],
        default=ExpirationPolicy.RENEW_CERTIFICATE.value,
        help="What to do when the CA enters its renewal window (default: renew-certificate)",
    )
    parser.add_argument(
        "--maintenance-window-open",
        action="store_true",
        help="Allow disruptive operations in this pass",
    )
    parser.add_argument(
        "--external-ca",
        action="store_true",
        help="The CA is managed outside this tool and is only observed",
    )
    parser.add_argument("--region", default="eu-west-2", help="AWS region (default: eu-west-2)")
    parser.add_argument(
        "--prefix", default="fleet-ca", help="Secret name prefix (default: fleet-ca)"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )
    args = parser.parse_args()
    set_level(args.log_level)

    try:
        kind = KINDS[args.kind]
        config = CaConfig(
            common_name=kind.name,
            cert_record_name=f"{args.ca_name}-cert",
            key_record_name=args.ca_name,
            validity_days=args.validity_days,
            renewal_days=args.renewal_days,
            expiration_policy=ExpirationPolicy(args.policy),
            generate_ca=not args.external_ca,
        )
        store = SecretsManagerRecordStore(StoreConfig(region=args.region, prefix=args.prefix))
        reconciler = CaReconciler(store, args.namespace, config, kind=kind)

        outcome = reconciler.reconcile_all(
            build_groups(args.group, args.namespace, config.organization),
            args.maintenance_window_open,
            components=[
                ComponentIdentity(name, common_name, config.organization)
                for name, common_name in args.component
            ],
        )

        LOGGER.info("Reconciliation complete:")
        LOGGER.info("  CA decision: %s", outcome.ca_result.renewal_type.value)
        if outcome.ca_result.reason:
            LOGGER.info("  Reason: %s", outcome.ca_result.reason)
        LOGGER.info("  Expired CA certificates removed: %d", outcome.ca_result.removed_count)
        for name, credential_set in outcome.groups.items():
            LOGGER.info("  Group %s: %d certificates", name, len(credential_set))
        for name in outcome.components:
            LOGGER.info("  Component %s: 1 certificate", name)
        return 0

    except Exception as e:
        LOGGER.error("Reconciliation failed: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
