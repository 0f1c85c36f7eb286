"""
Datastore boundary for catalog imports.

This module defines:
- Snapshot: the full pre-import dump of every catalog table (rollback unit)
- ImportRecord: one successful import, carrying its snapshot and summary
- DatabaseClient: the interface the executor and rollback service call

The atomic multi-table write and the atomic restore are each a single call
into a server-side transaction. Implementations must not split them into
several client-side statements the caller could fail between.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum, auto
from typing import Any, Dict, List, Optional
from uuid import UUID

from ..schema import CATALOG_TABLES

logger = logging.getLogger(__name__)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Timezone-aware datetime from a datastore or JSON value."""
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def json_safe(value: Any) -> Any:
    """Convert datastore values (datetimes, UUIDs, decimals) into JSON values."""
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    return value


@dataclass
class Snapshot:
    """Point-in-time copy of every catalog table."""
    tables: Dict[str, List[Dict[str, Any]]]
    created_at: datetime

    def counts(self) -> Dict[str, int]:
        return {table: len(self.tables.get(table, [])) for table in CATALOG_TABLES}

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"timestamp": self.created_at.isoformat()}
        for table in CATALOG_TABLES:
            data[table] = json_safe(self.tables.get(table, []))
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Snapshot":
        return cls(
            tables={table: list(data.get(table) or []) for table in CATALOG_TABLES},
            created_at=parse_timestamp(data.get("timestamp")),
        )


@dataclass
class ImportSummary:
    adds: int = 0
    updates: int = 0
    deletes: int = 0

    @property
    def total(self) -> int:
        return self.adds + self.updates + self.deletes

    def to_dict(self) -> Dict[str, int]:
        return {"adds": self.adds, "updates": self.updates, "deletes": self.deletes}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ImportSummary":
        data = data or {}
        return cls(
            adds=int(data.get("adds", 0)),
            updates=int(data.get("updates", 0)),
            deletes=int(data.get("deletes", 0)),
        )


class ImportRecordState(Enum):
    ACTIVE = auto()    # may be rolled back
    CONSUMED = auto()  # rolled back; the record no longer exists
    EXEMPT = auto()    # baseline, never pruned or consumed


@dataclass
class ImportRecord:
    """One successful import and the snapshot needed to undo it."""
    file_name: Optional[str]
    file_size: int
    rows_imported: int
    summary: ImportSummary
    snapshot: Optional[Snapshot]
    imported_by: Optional[str] = None
    is_baseline: bool = False
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> ImportRecordState:
        return ImportRecordState.EXEMPT if self.is_baseline else ImportRecordState.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "file_name": self.file_name,
            "file_size_bytes": self.file_size,
            "rows_imported": self.rows_imported,
            "import_summary": self.summary.to_dict(),
            "snapshot_data": self.snapshot.to_dict() if self.snapshot else None,
            "imported_by": self.imported_by,
            "is_baseline": self.is_baseline,
        }

    @classmethod
    def from_dict(cls, row: Dict[str, Any]) -> "ImportRecord":
        snapshot = row.get("snapshot_data")
        return cls(
            id=str(row["id"]) if row.get("id") is not None else None,
            created_at=parse_timestamp(row.get("created_at")),
            file_name=row.get("file_name"),
            file_size=int(row.get("file_size_bytes") or 0),
            rows_imported=int(row.get("rows_imported") or 0),
            summary=ImportSummary.from_dict(row.get("import_summary")),
            snapshot=Snapshot.from_dict(snapshot) if snapshot else None,
            imported_by=row.get("imported_by"),
            is_baseline=bool(row.get("is_baseline", False)),
        )


class DatabaseClient:
    """
    Abstract datastore interface used by the import executor and rollback service.

    Implement this with a concrete client (see SupabaseClient). Failures
    should be raised as DatastoreError with ``retryable`` set for transient
    conditions (timeouts, lost connections, deadlocks).
    """

    def fetch_current_records(self, tables: Optional[List[str]] = None) -> Dict[str, List[Dict[str, Any]]]:
        """
        Read every row of the given catalog tables.

        Args:
            tables: Tables to read (defaults to all catalog tables)

        Returns:
            Mapping of table name -> list of row dicts (including ``id``,
            ``updated_at`` and ``updated_by``)
        """
        raise NotImplementedError

    def execute_atomic_import(self, payload: Dict[str, Any]) -> Dict[str, int]:
        """
        Apply adds, updates and deletes across all catalog tables in one transaction.

        Args:
            payload: ``{table: {"adds": [...], "updates": [...], "deletes": [ids]},
                "actor": str}``. Every row carries its identity, so
                resubmitting the same payload has no further effect.

        Returns:
            Per-table counts, e.g. ``{"parts_added": 2, "parts_updated": 1, ...}``

        Raises:
            DatastoreError: If the transaction fails; nothing is written
        """
        raise NotImplementedError

    def restore_snapshot(self, tables: Dict[str, List[Dict[str, Any]]]) -> Dict[str, int]:
        """
        Replace the contents of the given tables with snapshot rows in one transaction.

        Children are cleared before parents and parents inserted before
        children.

        Returns:
            Mapping of table name -> rows restored

        Raises:
            DatastoreError: If the transaction fails; nothing is changed
        """
        raise NotImplementedError

    def current_timestamp(self) -> datetime:
        """Datastore clock, the same clock that stamps ``updated_at``."""
        raise NotImplementedError

    def find_modified_since(self, table: str, since: datetime) -> List[Dict[str, Any]]:
        """
        Rows of a table whose ``updated_at`` is later than ``since``.

        Returns:
            Row dicts including ``id``, ``updated_at`` and ``updated_by``
        """
        raise NotImplementedError

    def insert_import_record(self, record: Dict[str, Any]) -> Dict[str, Any]:
        """
        Store an import record.

        Args:
            record: Output of ImportRecord.to_dict() (``id`` and
                ``created_at`` may be None and are assigned by the datastore)

        Returns:
            The stored record including ``id`` and ``created_at``
        """
        raise NotImplementedError

    def prune_import_records(self, keep: int) -> int:
        """
        Delete all but the ``keep`` newest non-baseline import records.

        Returns:
            Number of records deleted
        """
        raise NotImplementedError

    def list_import_records(
        self,
        limit: Optional[int] = None,
        include_baseline: bool = False,
    ) -> List[Dict[str, Any]]:
        """
        Import records ordered newest first (ties broken by id, descending).

        Snapshot data may be omitted from listed records.
        """
        raise NotImplementedError

    def get_import_record(self, import_id: str) -> Optional[Dict[str, Any]]:
        """Full import record including snapshot data, or None."""
        raise NotImplementedError

    def delete_import_record(self, import_id: str) -> None:
        """Delete an import record."""
        raise NotImplementedError

    def close(self) -> None:
        """Release connections."""
        pass
