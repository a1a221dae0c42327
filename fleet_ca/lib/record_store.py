"""Key-value records holding CA and dependent credential material."""

from dataclasses import dataclass, field
from typing import Protocol

from fleet_ca.lib.errors import MissingRecordValueError


@dataclass
class Record:
    """One stored record: byte values plus string annotations, addressed by (namespace, name)."""

    namespace: str
    name: str
    data: dict[str, bytes] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)

    def require(self, key: str) -> bytes:
        """Return the value stored under ``key``.

        Raises:
            MissingRecordValueError: If the value is absent or empty
        """
        value = self.data.get(key)
        if not value:
            raise MissingRecordValueError(self.namespace, self.name, key)
        return value

    def copy(self) -> "Record":
        return Record(self.namespace, self.name, dict(self.data), dict(self.annotations))


class RecordStore(Protocol):
    """Storage of records; each ``put`` replaces the whole record atomically."""

    def get(self, namespace: str, name: str) -> Record | None: ...

    def put(self, record: Record) -> None: ...


class InMemoryRecordStore:
    """Record store kept in a dict, for tests and dry runs."""

    def __init__(self) -> None:
        self._records: dict[tuple[str, str], Record] = {}

    def get(self, namespace: str, name: str) -> Record | None:
        record = self._records.get((namespace, name))
        return record.copy() if record is not None else None

    def put(self, record: Record) -> None:
        self._records[(record.namespace, record.name)] = record.copy()
