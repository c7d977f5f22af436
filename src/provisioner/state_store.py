"""Local record of the resources this operator manages.

One record per resource instance. The handle assigned by AWS is the
record's identity; the declarative address ("<kind>.<name>") is how a
manifest entry finds its record again.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

STATE_SCHEMA_VERSION = 1


class StateStoreError(Exception):
    """Raised when the local state cannot be read or written."""

    pass


@dataclass
class ResourceRecord:
    """Last known snapshot of one managed resource.

    Attributes:
        address: Declarative address, e.g. "VpcEndpointService.web".
        kind: Resource kind the record belongs to.
        handle: Identifier assigned by AWS. Never changes once set.
        attributes: Last observed attribute bag (empty right after create).
        updated_at: When the record was last written.
    """

    address: str
    kind: str
    handle: str
    attributes: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "kind": self.kind,
            "handle": self.handle,
            "attributes": self.attributes,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceRecord:
        return cls(
            address=data["address"],
            kind=data["kind"],
            handle=data["handle"],
            attributes=dict(data.get("attributes") or {}),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


class StateStore(ABC):
    """Key-value store of ResourceRecords keyed by address."""

    @abstractmethod
    def get(self, address: str) -> ResourceRecord | None: ...

    @abstractmethod
    def put(self, record: ResourceRecord) -> None: ...

    @abstractmethod
    def delete(self, address: str) -> None: ...

    @abstractmethod
    def records(self) -> list[ResourceRecord]: ...

    def save(
        self, address: str, kind: str, handle: str, attributes: dict[str, Any] | None = None
    ) -> ResourceRecord:
        """Write a record, refusing to change the handle of an existing one."""
        existing = self.get(address)
        if existing is not None and existing.handle != handle:
            raise StateStoreError(
                f"{address} is recorded with handle {existing.handle}, refusing to "
                f"overwrite it with {handle}; delete the resource first"
            )
        record = ResourceRecord(
            address=address, kind=kind, handle=handle, attributes=dict(attributes or {})
        )
        self.put(record)
        return record


class MemoryStateStore(StateStore):
    """In-memory store, used by tests and dry runs."""

    def __init__(self) -> None:
        self._records: dict[str, ResourceRecord] = {}

    def get(self, address: str) -> ResourceRecord | None:
        return self._records.get(address)

    def put(self, record: ResourceRecord) -> None:
        record.updated_at = datetime.now(UTC)
        self._records[record.address] = record

    def delete(self, address: str) -> None:
        self._records.pop(address, None)

    def records(self) -> list[ResourceRecord]:
        return list(self._records.values())


class FileStateStore(StateStore):
    """JSON file store.

    The whole file is rewritten on every change through a temporary file
    and os.replace(), so a crash never leaves a half-written state file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._records = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, ResourceRecord]:
        if not self._path.exists():
            return {}

        try:
            file_size = self._path.stat().st_size
        except OSError as e:
            raise StateStoreError(f"Failed to stat state file {self._path}: {e}") from e

        if file_size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateStoreError(
                f"State file exceeds maximum size of {MAX_STATE_FILE_SIZE_BYTES} bytes: "
                f"{self._path}"
            )

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e
        except json.JSONDecodeError as e:
            raise StateStoreError(f"Invalid JSON in state file {self._path}: {e}") from e

        if not isinstance(data, dict) or data.get("schema_version") != STATE_SCHEMA_VERSION:
            raise StateStoreError(
                f"Unsupported state file format in {self._path} "
                f"(expected schema_version {STATE_SCHEMA_VERSION})"
            )

        try:
            records = [ResourceRecord.from_dict(item) for item in data.get("resources", [])]
        except (KeyError, TypeError, ValueError) as e:
            raise StateStoreError(f"Corrupt resource record in {self._path}: {e}") from e

        logger.info("Loaded %d resource records from %s", len(records), self._path)
        return {record.address: record for record in records}

    def _flush(self, records: dict[str, ResourceRecord]) -> None:
        """Write records to disk, then make them the in-memory state."""
        payload = {
            "schema_version": STATE_SCHEMA_VERSION,
            "resources": [records[address].to_dict() for address in sorted(records)],
        }
        tmp_name: str | None = None
        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True, default=str)
            os.replace(tmp_name, self._path)
        except OSError as e:
            if tmp_name is not None:
                Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e
        self._records = records

    def get(self, address: str) -> ResourceRecord | None:
        return self._records.get(address)

    def put(self, record: ResourceRecord) -> None:
        record.updated_at = datetime.now(UTC)
        self._flush({**self._records, record.address: record})

    def delete(self, address: str) -> None:
        if address in self._records:
            self._flush({k: v for k, v in self._records.items() if k != address})

    def records(self) -> list[ResourceRecord]:
        return list(self._records.values())
