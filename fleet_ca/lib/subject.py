"""X.509 subject (CN, O and subject alternative names) for one identity."""

import ipaddress
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

from cryptography import x509
from cryptography.x509 import oid


class SanKind(str, Enum):
    DNS = "DNS"
    IP = "IP"


@dataclass(frozen=True)
class SubjectAltName:
    kind: SanKind
    value: str


@dataclass(frozen=True)
class Subject:
    """Desired subject of a certificate.

    Alternative names are deduplicated and keep the order in which they were
    first added, so certificates built from equal subjects are identical.
    """

    common_name: str
    organization: str | None = None
    alt_names: tuple[SubjectAltName, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "alt_names", tuple(dict.fromkeys(self.alt_names)))

    def san_set(self) -> frozenset[SubjectAltName]:
        return frozenset(self.alt_names)

    def to_x509_name(self) -> x509.Name:
        """Convert to cryptography x509.Name for certificate generation."""
        attributes = []
        if self.organization:
            attributes.append(x509.NameAttribute(oid.NameOID.ORGANIZATION_NAME, self.organization))
        attributes.append(x509.NameAttribute(oid.NameOID.COMMON_NAME, self.common_name))
        return x509.Name(attributes)

    def to_san_extension(self) -> x509.SubjectAlternativeName | None:
        """Return the SAN extension, or None when there are no alternative names."""
        if not self.alt_names:
            return None
        general_names: list[x509.GeneralName] = []
        for san in self.alt_names:
            if san.kind is SanKind.IP:
                general_names.append(x509.IPAddress(ipaddress.ip_address(san.value)))
            else:
                general_names.append(x509.DNSName(san.value))
        return x509.SubjectAlternativeName(general_names)


def _classify(name: str) -> SubjectAltName:
    try:
        return SubjectAltName(SanKind.IP, str(ipaddress.ip_address(name)))
    except ValueError:
        return SubjectAltName(SanKind.DNS, name)


def build_subject(
    common_name: str,
    organization: str | None = None,
    names: Iterable[str] = (),
) -> Subject:
    """Build a subject, sorting each name into a DNS or IP alternative name.

    Args:
        common_name: CN of the certificate
        organization: O of the certificate, omitted when None
        names: DNS names and IP addresses the certificate is valid for

    Returns:
        Subject with duplicate names removed
    """
    return Subject(
        common_name=common_name,
        organization=organization,
        alt_names=tuple(_classify(name) for name in names),
    )


def subject_from_certificate(cert: x509.Certificate) -> Subject:
    """Read CN, O and alternative names back out of a certificate."""
    cn_attrs = cert.subject.get_attributes_for_oid(oid.NameOID.COMMON_NAME)
    org_attrs = cert.subject.get_attributes_for_oid(oid.NameOID.ORGANIZATION_NAME)
    common_name = str(cn_attrs[0].value) if cn_attrs else ""
    organization = str(org_attrs[0].value) if org_attrs else None
    return Subject(
        common_name=common_name,
        organization=organization,
        alt_names=tuple(certificate_alt_names(cert)),
    )


def certificate_alt_names(cert: x509.Certificate) -> list[SubjectAltName]:
    """Return the DNS and IP alternative names of a certificate in encoded order."""
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return []
    names = [SubjectAltName(SanKind.DNS, value) for value in ext.get_values_for_type(x509.DNSName)]
    names.extend(
        SubjectAltName(SanKind.IP, str(value)) for value in ext.get_values_for_type(x509.IPAddress)
    )
    return names
