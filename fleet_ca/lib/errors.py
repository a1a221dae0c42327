"""Exceptions raised by the CA lifecycle and issuance engines."""


class FleetCaError(Exception):
    """Base class for all fleet CA errors."""


class MissingRecordValueError(FleetCaError):
    """A record that exists lacks a value it must carry (e.g. ``ca.key``)."""

    def __init__(self, namespace: str, name: str, key: str) -> None:
        super().__init__(f"record {namespace}/{name} is missing the key {key}")
        self.namespace = namespace
        self.name = name
        self.key = key


class CryptoBackendUnavailableError(FleetCaError):
    """The crypto backend cannot perform a required operation."""


class IssuanceError(FleetCaError):
    """Generating, signing or packaging one credential failed."""


class TrustStoreError(FleetCaError):
    """A truststore could not be read or rewritten."""
