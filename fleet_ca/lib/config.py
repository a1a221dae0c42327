"""CA configuration dataclasses."""

from dataclasses import dataclass

from fleet_ca.lib.models import ExpirationPolicy

DEFAULT_ORGANIZATION = "io.fleet"


@dataclass
class CaConfig:
    """Configuration of one CA and the records it is persisted in."""

    common_name: str
    cert_record_name: str
    key_record_name: str
    validity_days: int = 365
    renewal_days: int = 30
    expiration_policy: ExpirationPolicy = ExpirationPolicy.RENEW_CERTIFICATE
    generate_ca: bool = True
    organization: str = DEFAULT_ORGANIZATION
    key_size: int = 4096

    def __post_init__(self) -> None:
        if self.validity_days <= 0:
            raise ValueError(f"validity_days must be positive, got {self.validity_days}")
        if self.renewal_days <= 0:
            raise ValueError(f"renewal_days must be positive, got {self.renewal_days}")
        if self.renewal_days >= self.validity_days:
            raise ValueError(
                f"renewal_days ({self.renewal_days}) must be lower than "
                f"validity_days ({self.validity_days})"
            )


@dataclass
class StoreConfig:
    """Record store settings with no credentials baked in."""

    region: str = "eu-west-2"
    prefix: str = "fleet-ca"
