"""Value types for CA material, leaf credentials and reconciliation results."""

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from fleet_ca.lib.constants import (
    ANNO_CLIENTS_CA_CERT_GENERATION,
    ANNO_CLUSTER_CA_CERT_GENERATION,
    CA_CRT,
    CA_KEY,
    INIT_GENERATION,
)


class ExpirationPolicy(str, Enum):
    """What to do with a self-managed CA once it enters its renewal window."""

    RENEW_CERTIFICATE = "renew-certificate"
    REPLACE_KEY = "replace-key"


class RenewalType(str, Enum):
    """Outcome of one CA lifecycle decision."""

    NOOP = "noop"
    POSTPONED = "postponed"
    CREATE = "create"
    RENEW_CERT = "renew-cert"
    REPLACE_KEY = "replace-key"


# Decisions after which certificates signed by the previous CA material must be reissued
ROTATING_RENEWAL_TYPES = frozenset(
    {RenewalType.CREATE, RenewalType.RENEW_CERT, RenewalType.REPLACE_KEY}
)


@dataclass(frozen=True)
class Credential:
    """Key, certificate and store material produced by one issuance.

    ``trust_store`` is only set for CA credentials and ``key_store`` only for
    leaf credentials. Credentials loaded from records written by older
    versions may lack the keystore and its password.
    """

    private_key: bytes
    certificate: bytes
    trust_store: bytes | None = None
    key_store: bytes | None = None
    store_password: str | None = None

    @property
    def is_packaged(self) -> bool:
        return bool(self.key_store) and bool(self.store_password)


@dataclass(frozen=True)
class CertificateAuthority:
    """Persisted state of one CA.

    ``key_data`` carries ``ca.key``. ``cert_data`` carries ``ca.crt``, the
    ``ca.p12`` truststore with its ``ca.password`` and any archived
    ``ca-<timestamp>.crt`` certificates that are still trusted.
    """

    common_name: str
    validity_days: int
    renewal_days: int
    expiration_policy: ExpirationPolicy = ExpirationPolicy.RENEW_CERTIFICATE
    self_managed: bool = True
    organization: str | None = None
    key_data: Mapping[str, bytes] = field(default_factory=dict)
    cert_data: Mapping[str, bytes] = field(default_factory=dict)
    cert_generation: int = INIT_GENERATION
    key_generation: int = INIT_GENERATION

    @property
    def current_key(self) -> bytes | None:
        return self.key_data.get(CA_KEY) or None

    @property
    def current_cert(self) -> bytes | None:
        return self.cert_data.get(CA_CRT) or None

    @property
    def has_key(self) -> bool:
        return self.current_key is not None

    @property
    def has_cert(self) -> bool:
        return self.current_cert is not None


def _never_changed(cert_generation: int) -> bool:
    return False


@dataclass(frozen=True)
class CaKind:
    """Capabilities that differ between CA kinds.

    ``dependent_generation_annotation`` names the annotation mirroring this
    CA's certificate generation on records signed by it. ``change_detector``
    receives the CA's current certificate generation and reports whether any
    dependent record was issued under another generation.
    """

    name: str
    dependent_generation_annotation: str
    change_detector: Callable[[int], bool] = _never_changed


CLUSTER_CA = CaKind("cluster-ca", ANNO_CLUSTER_CA_CERT_GENERATION)
CLIENTS_CA = CaKind("clients-ca", ANNO_CLIENTS_CA_CERT_GENERATION)


@dataclass(frozen=True)
class CaReconcileResult:
    """Decision taken for a CA and the CA material that resulted from it."""

    renewal_type: RenewalType
    ca: CertificateAuthority
    removed_count: int = 0
    reason: str | None = None

    @property
    def cert_renewed(self) -> bool:
        return self.renewal_type in (RenewalType.RENEW_CERT, RenewalType.REPLACE_KEY)

    @property
    def key_replaced(self) -> bool:
        return self.renewal_type is RenewalType.REPLACE_KEY

    @property
    def key_created(self) -> bool:
        return self.renewal_type is RenewalType.CREATE

    @property
    def certs_removed(self) -> bool:
        return self.removed_count > 0


@dataclass(frozen=True)
class DependentCredentialSet:
    """Leaf credentials of one group, keyed by replica index.

    ``ca_cert_generation`` mirrors the issuing CA's certificate generation at
    the time the set was last issued, or is None when a record carried no
    generation annotation.
    """

    group: str
    credentials: Mapping[int, Credential] = field(default_factory=dict)
    ca_cert_generation: int | None = None

    def __len__(self) -> int:
        return len(self.credentials)
