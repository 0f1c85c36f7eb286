"""
Shared fixtures: an in-memory datastore and in-memory workbook builders.

InMemoryDatabaseClient behaves like the Postgres functions it stands in
for: the atomic import and the restore either apply completely or not at
all, deleting a part cascades to its children, foreign keys and SKU
uniqueness are enforced when the transaction ends (the SKU constraint is
deferred), blank defaulted columns fall back like the SQL COALESCE, and
every write stamps updated_at/updated_by.
"""

import copy
import io
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4

import openpyxl
from openpyxl.utils import get_column_letter
import pytest

from catalogsync.config import Settings
from catalogsync.errors import DatastoreError
from catalogsync.ingest.datastore import DatabaseClient, parse_timestamp
from catalogsync.schema import (
    ALIASES_TABLE,
    CATALOG_TABLES,
    CROSS_REFERENCES_TABLE,
    FIELD_DEFAULTS,
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
)

PARENT_COLUMNS = {
    VEHICLE_APPLICATIONS_TABLE: "part_id",
    CROSS_REFERENCES_TABLE: "acr_part_id",
}

# Deletion order: children first
DELETE_ORDER = [CROSS_REFERENCES_TABLE, VEHICLE_APPLICATIONS_TABLE, ALIASES_TABLE, PARTS_TABLE]


class InMemoryDatabaseClient(DatabaseClient):
    """DatabaseClient double with all-or-nothing writes and a controllable clock."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, Dict[str, Any]]] = {t: {} for t in CATALOG_TABLES}
        self.import_history: Dict[str, Dict[str, Any]] = {}
        self._clock = datetime(2026, 1, 1, tzinfo=timezone.utc)
        # Exceptions raised by the next calls, per method name
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def now(self) -> datetime:
        """Advance the clock one second and return it."""
        self._clock += timedelta(seconds=1)
        return self._clock

    def fail(self, method: str, *errors: Exception) -> None:
        self.failures.setdefault(method, []).extend(errors)

    def seed(self, table: str, **values) -> str:
        """Insert a row as if it pre-dated every import."""
        row = dict(values)
        row.setdefault("id", str(uuid4()))
        row.setdefault("updated_by", "manual")
        row["updated_at"] = self.now()
        self.tables[table][row["id"]] = row
        return row["id"]

    def manual_edit(self, table: str, record_id: str, **changes) -> None:
        row = self.tables[table][record_id]
        row.update(changes)
        row["updated_by"] = "manual"
        row["updated_at"] = self.now()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        return list(self.tables[table].values())

    def state(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Catalog contents without audit columns, for before/after comparisons."""
        return {
            table: {
                rid: {k: v for k, v in row.items() if k not in ("updated_at", "updated_by")}
                for rid, row in rows.items()
            }
            for table, rows in self.tables.items()
        }

    def _call(self, method: str) -> None:
        self.calls[method] = self.calls.get(method, 0) + 1
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    # ------------------------------------------------------------------
    # DatabaseClient
    # ------------------------------------------------------------------

    def fetch_current_records(self, tables=None):
        self._call("fetch_current_records")
        return {
            table: copy.deepcopy(list(self.tables[table].values()))
            for table in (tables or CATALOG_TABLES)
        }

    def execute_atomic_import(self, payload):
        self._call("execute_atomic_import")
        actor = payload.get("actor", "import")
        staged = copy.deepcopy(self.tables)
        counts: Dict[str, int] = {}

        for table in DELETE_ORDER:
            deleted = 0
            for record_id in payload.get(table, {}).get("deletes", []):
                if staged[table].pop(record_id, None) is not None:
                    deleted += 1
            counts[f"{table}_deleted"] = deleted
        self._cascade(staged)

        stamp = self.now()
        for table in CATALOG_TABLES:
            section = payload.get(table, {})
            defaults = FIELD_DEFAULTS.get(table, {})
            # Updates run first so a released SKU can be taken by an add
            updated = 0
            for row in section.get("updates", []):
                if row["id"] in staged[table]:
                    stored = staged[table][row["id"]]
                    values = {
                        k: v for k, v in row.items()
                        if not (k in defaults and v is None)
                    }
                    stored.update(values, updated_by=actor, updated_at=stamp)
                    updated += 1
            for row in section.get("adds", []):
                added = dict(row, updated_by=actor, updated_at=stamp)
                for column, default in defaults.items():
                    if added.get(column) is None:
                        added[column] = default
                staged[table][row["id"]] = added
            counts[f"{table}_added"] = len(section.get("adds", []))
            counts[f"{table}_updated"] = updated

        self._check_constraints(staged)
        self.tables = staged
        return counts

    def restore_snapshot(self, tables):
        self._call("restore_snapshot")
        staged = copy.deepcopy(self.tables)
        for table in tables:
            staged[table] = {}
        for table in CATALOG_TABLES:
            if table not in tables:
                continue
            for row in tables[table]:
                restored = dict(row)
                restored["updated_at"] = parse_timestamp(restored.get("updated_at"))
                staged[table][str(restored["id"])] = restored
        self._check_constraints(staged)
        self.tables = staged
        return {table: len(rows) for table, rows in tables.items()}

    def current_timestamp(self):
        self._call("current_timestamp")
        return self.now()

    def find_modified_since(self, table, since):
        self._call("find_modified_since")
        return [
            copy.deepcopy(row) for row in self.tables[table].values()
            if row.get("updated_at") is not None and row["updated_at"] > since
        ]

    def insert_import_record(self, record):
        self._call("insert_import_record")
        stored = copy.deepcopy(record)
        stored["id"] = str(uuid4())
        stored["created_at"] = self.now()
        self.import_history[stored["id"]] = stored
        return copy.deepcopy(stored)

    def prune_import_records(self, keep):
        self._call("prune_import_records")
        active = self._ordered(include_baseline=False)
        for record in active[keep:]:
            del self.import_history[record["id"]]
        return max(len(active) - keep, 0)

    def list_import_records(self, limit=None, include_baseline=False):
        self._call("list_import_records")
        records = self._ordered(include_baseline)
        if limit is not None:
            records = records[:limit]
        return [copy.deepcopy(r) for r in records]

    def get_import_record(self, import_id):
        self._call("get_import_record")
        record = self.import_history.get(import_id)
        return copy.deepcopy(record) if record else None

    def delete_import_record(self, import_id):
        self._call("delete_import_record")
        self.import_history.pop(import_id, None)

    # ------------------------------------------------------------------

    def _ordered(self, include_baseline: bool) -> List[Dict[str, Any]]:
        records = [
            r for r in self.import_history.values()
            if include_baseline or not r.get("is_baseline")
        ]
        return sorted(records, key=lambda r: (r["created_at"], r["id"]), reverse=True)

    @staticmethod
    def _cascade(staged) -> None:
        part_ids = set(staged[PARTS_TABLE])
        for table, column in PARENT_COLUMNS.items():
            staged[table] = {
                rid: row for rid, row in staged[table].items() if row.get(column) in part_ids
            }

    @staticmethod
    def _check_constraints(staged) -> None:
        part_ids = set(staged[PARTS_TABLE])
        for table, column in PARENT_COLUMNS.items():
            for row in staged[table].values():
                if row.get(column) not in part_ids:
                    raise DatastoreError(
                        f"insert or update on table \"{table}\" violates foreign key constraint",
                        details={"pgcode": "23503"},
                    )
        skus = [str(row.get("acr_sku")).upper() for row in staged[PARTS_TABLE].values()]
        if len(skus) != len(set(skus)):
            raise DatastoreError(
                "duplicate key value violates unique constraint \"parts_acr_sku_key\"",
                details={"pgcode": "23505"},
            )


# =============================================================================
# WORKBOOK BUILDERS
# =============================================================================

PART_HEADERS = [
    "_id", "ACR_SKU", "Status", "Part_Type", "Position_Type", "ABS_Type",
    "Bolt_Pattern", "Drive_Type", "Specifications", "National", "TMK",
]
VEHICLE_HEADERS = ["_id", "_part_id", "ACR_SKU", "Make", "Model", "Start_Year", "End_Year"]
CROSS_REFERENCE_HEADERS = ["_id", "_acr_part_id", "ACR_SKU", "Competitor_Brand", "Competitor_SKU", "Status"]
ALIAS_HEADERS = ["_id", "Alias", "Canonical_Name", "Alias_Type"]


def make_workbook(
    parts: Optional[List[List[Any]]] = None,
    vehicles: Optional[List[List[Any]]] = None,
    cross_references: Optional[List[List[Any]]] = None,
    aliases: Optional[List[List[Any]]] = None,
    hide_ids: bool = True,
) -> bytes:
    """Workbook bytes with one sheet per argument given.

    Each argument is a list of rows whose first row is the header row.
    Parts and Vehicle Applications sheets are always written (empty when
    not given).
    """
    wb = openpyxl.Workbook()
    wb.remove(wb.active)
    sheets = [
        ("Parts", parts if parts is not None else [PART_HEADERS]),
        ("Vehicle Applications", vehicles if vehicles is not None else [VEHICLE_HEADERS]),
    ]
    if cross_references is not None:
        sheets.append(("Cross References", cross_references))
    if aliases is not None:
        sheets.append(("Vehicle Aliases", aliases))

    for title, rows in sheets:
        ws = wb.create_sheet(title)
        for row in rows:
            ws.append(list(row))
        if hide_ids and rows:
            for index, header in enumerate(rows[0], start=1):
                if isinstance(header, str) and header.startswith("_"):
                    ws.column_dimensions[get_column_letter(index)].hidden = True

    buffer = io.BytesIO()
    wb.save(buffer)
    return buffer.getvalue()


def part_row(
    sku: str,
    part_type: str = "Maza",
    identity: Optional[str] = None,
    status: Optional[str] = "Activo",
    position: Optional[str] = None,
    specifications: Optional[str] = None,
    national: Optional[str] = None,
    tmk: Optional[str] = None,
) -> List[Any]:
    return [identity, sku, status, part_type, position, None, None, None, specifications, national, tmk]


def vehicle_row(
    sku: Optional[str],
    make: str = "NISSAN",
    model: str = "TSURU",
    start: Any = 2000,
    end: Any = 2010,
    identity: Optional[str] = None,
    part_id: Optional[str] = None,
) -> List[Any]:
    return [identity, part_id, sku, make, model, start, end]


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def db():
    return InMemoryDatabaseClient()


@pytest.fixture
def settings():
    return Settings(retry_base_delay=0.0, retry_max_delay=0.0)


@pytest.fixture
def sleeps():
    """Records requested backoff delays instead of sleeping."""
    return []


@pytest.fixture
def seeded_db(db):
    """Two parts with applications and cross references."""
    p1 = db.seed(
        PARTS_TABLE, acr_sku="ACR-100", part_type="Maza", position_type="Delantera",
        abs_type=None, bolt_pattern=None, drive_type=None,
        specifications="Maza delantera con ABS", workflow_status="ACTIVE",
    )
    p2 = db.seed(
        PARTS_TABLE, acr_sku="ACR-200", part_type="Balero", position_type="Trasera",
        abs_type=None, bolt_pattern=None, drive_type=None,
        specifications=None, workflow_status="ACTIVE",
    )
    db.seed(VEHICLE_APPLICATIONS_TABLE, part_id=p1, make="NISSAN", model="TSURU",
            start_year=1992, end_year=2017)
    db.seed(VEHICLE_APPLICATIONS_TABLE, part_id=p2, make="FORD", model="FIESTA",
            start_year=2011, end_year=2019)
    db.seed(CROSS_REFERENCES_TABLE, acr_part_id=p1, competitor_brand="NATIONAL",
            competitor_sku="N-1")
    db.seed(CROSS_REFERENCES_TABLE, acr_part_id=p1, competitor_brand="NATIONAL",
            competitor_sku="N-2")
    db.seed(CROSS_REFERENCES_TABLE, acr_part_id=p2, competitor_brand="TMK",
            competitor_sku="T-9")
    db.seed(ALIASES_TABLE, alias="VW", canonical_name="VOLKSWAGEN", alias_type="make")
    db.part_ids = {"ACR-100": p1, "ACR-200": p2}
    return db
