"""Human readable descriptions of CA renewal decisions."""

from fleet_ca.lib.models import RenewalType

_PENDING = {
    RenewalType.NOOP: "noop",
    RenewalType.POSTPONED: (
        "CA operation was postponed and will be done in the next maintenance window"
    ),
    RenewalType.CREATE: (
        "CA key (in {key_record}) and certificate (in {cert_record}) needs to be created"
    ),
    RenewalType.RENEW_CERT: "CA certificate (in {cert_record}) needs to be renewed",
    RenewalType.REPLACE_KEY: "CA key (in {key_record}) needs to be replaced",
}

_DONE = {
    RenewalType.NOOP: "noop",
    RenewalType.POSTPONED: "postponed",
    RenewalType.CREATE: "CA key (in {key_record}) and certificate (in {cert_record}) created",
    RenewalType.RENEW_CERT: "CA certificate (in {cert_record}) renewed",
    RenewalType.REPLACE_KEY: "CA key (in {key_record}) replaced",
}


def describe_renewal(
    renewal_type: RenewalType,
    key_record: str,
    cert_record: str,
    *,
    done: bool = False,
) -> str:
    """Describe a renewal decision before (``done=False``) or after it was applied."""
    template = (_DONE if done else _PENDING)[renewal_type]
    return template.format(key_record=key_record, cert_record=cert_record)
