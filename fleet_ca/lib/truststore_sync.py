"""Keep a CA record's truststore in step with the certificates it carries."""

from collections.abc import Mapping
from datetime import datetime

from fleet_ca.lib.cert_tooling import CertTooling
from fleet_ca.lib.cert_utils import deserialize_certificate, generate_password, is_expired
from fleet_ca.lib.constants import CA_STORE, CA_STORE_PASSWORD, PASSWORD_SUFFIX, STORE_SUFFIX
from fleet_ca.lib.logging_config import LOGGER


def store_password(cert_data: Mapping[str, bytes]) -> str | None:
    raw = cert_data.get(CA_STORE_PASSWORD)
    return raw.decode("ascii") if raw else None


def add_to_trust_store(
    cert_data: Mapping[str, bytes],
    alias: str,
    cert_bytes: bytes,
    *,
    tooling: CertTooling | None = None,
) -> dict[str, bytes]:
    """Insert or replace ``alias`` in the record's truststore.

    When the record has no truststore yet one is created together with a new
    password; an existing store keeps its password.

    Args:
        cert_data: CA certificate record data
        alias: Alias to store the certificate under
        cert_bytes: PEM certificate
        tooling: Certificate tooling, defaults to CertTooling()

    Returns:
        Copy of cert_data with updated ca.p12 and ca.password
    """
    tooling = tooling or CertTooling()
    updated = dict(cert_data)
    password = store_password(updated)
    store = updated.get(CA_STORE) if password else None
    if password is None:
        password = generate_password()
    updated[CA_STORE] = tooling.add_to_truststore(cert_bytes, alias, store, password)
    updated[CA_STORE_PASSWORD] = password.encode("ascii")
    return updated


def purge_expired(
    cert_data: Mapping[str, bytes],
    now: datetime,
    *,
    tooling: CertTooling | None = None,
) -> tuple[dict[str, bytes], int]:
    """Drop expired and unparseable certificates from the data and the truststore.

    Store and password entries are never considered. The truststore is
    rewritten once, and only when something was removed.

    Args:
        cert_data: CA certificate record data
        now: Instant certificates are compared against
        tooling: Certificate tooling, defaults to CertTooling()

    Returns:
        Tuple of (updated copy of cert_data, number of entries removed)
    """
    updated = dict(cert_data)
    removed: list[str] = []

    for name, value in cert_data.items():
        if name.endswith(STORE_SUFFIX) or name.endswith(PASSWORD_SUFFIX):
            continue
        try:
            cert = deserialize_certificate(value)
        except ValueError:
            LOGGER.debug("The certificate (data.%s) is not an X.509 certificate; removing it", name)
            removed.append(name)
            continue
        if is_expired(cert, now):
            LOGGER.debug(
                "The certificate (data.%s) expired %s; removing it",
                name,
                cert.not_valid_after_utc.isoformat(),
            )
            removed.append(name)

    if not removed:
        return updated, 0

    for name in removed:
        del updated[name]

    password = store_password(updated)
    if updated.get(CA_STORE) and password:
        tooling = tooling or CertTooling()
        updated[CA_STORE] = tooling.remove_from_truststore(removed, updated[CA_STORE], password)

    return updated, len(removed)
