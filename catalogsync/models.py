"""
Typed catalog records.

Each worksheet row and each persisted datastore row is represented by the
same dataclass for its entity type, so parsed rows and existing records can
be compared field by field. The identity and the action marker are explicit
members rather than ordinary columns.
"""

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Set, Tuple, Union

from .layout import HeaderLayout
from .normalizer import normalize_value
from .schema import (
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
    CROSS_REFERENCES_TABLE,
    ALIASES_TABLE,
    CATALOG_TABLES,
)

Year = Union[int, float, str]


def sku_key(sku: Any) -> Optional[str]:
    """Case- and whitespace-insensitive form of a SKU for lookups."""
    value = normalize_value(sku)
    return value.upper() if value is not None else None


def text_key(value: Any) -> str:
    normalized = normalize_value(value)
    return normalized.upper() if normalized is not None else ""


@dataclass
class CatalogRow:
    """Fields shared by every entity row.

    identity_id is the hidden round-tripped identifier (None for rows that
    have never been persisted). action_marker holds the raw delete
    instruction, if any. row_number is the spreadsheet row (0 for records
    loaded from the datastore).
    """
    identity_id: Optional[str] = None
    action_marker: Optional[str] = None
    row_number: int = 0

    TABLE: ClassVar[str] = ""
    # Fields compared by the diff engine
    FIELDS: ClassVar[Tuple[str, ...]] = ()
    # field -> datastore column
    DB_COLUMNS: ClassVar[Dict[str, str]] = {}

    @property
    def has_identity(self) -> bool:
        return bool(self.identity_id)

    @property
    def marked_for_delete(self) -> bool:
        return self.action_marker is not None

    def values(self) -> Dict[str, Any]:
        """Compared field values."""
        return {name: getattr(self, name) for name in self.FIELDS}

    def label(self) -> str:
        """Short human-readable description used in messages."""
        return self.identity_id or f"row {self.row_number}"

    def to_db(self) -> Dict[str, Any]:
        """Datastore row (without audit columns)."""
        row = {"id": self.identity_id}
        for name, column in self.DB_COLUMNS.items():
            row[column] = getattr(self, name)
        return row

    @classmethod
    def from_db(cls, row: Dict[str, Any]):
        kwargs = {"identity_id": _as_text(row.get("id"))}
        for name, column in cls.DB_COLUMNS.items():
            value = row.get(column)
            if name == "part_id":
                value = _as_text(value)
            kwargs[name] = value
        return cls(**kwargs)


@dataclass
class PartRow(CatalogRow):
    acr_sku: Optional[str] = None
    part_type: Optional[str] = None
    position_type: Optional[str] = None
    abs_type: Optional[str] = None
    bolt_pattern: Optional[str] = None
    drive_type: Optional[str] = None
    specifications: Optional[str] = None
    workflow_status: Optional[str] = None
    # brand column -> raw semicolon list
    brand_skus: Dict[str, str] = field(default_factory=dict)

    TABLE: ClassVar[str] = PARTS_TABLE
    FIELDS: ClassVar[Tuple[str, ...]] = (
        "acr_sku", "part_type", "position_type", "abs_type",
        "bolt_pattern", "drive_type", "specifications", "workflow_status",
    )
    DB_COLUMNS: ClassVar[Dict[str, str]] = {name: name for name in FIELDS}

    def label(self) -> str:
        return self.acr_sku or super().label()


@dataclass
class VehicleApplicationRow(CatalogRow):
    part_id: Optional[str] = None
    # Display / natural reference to the parent part; not persisted
    acr_sku: Optional[str] = None
    make: Optional[str] = None
    model: Optional[str] = None
    start_year: Optional[Year] = None
    end_year: Optional[Year] = None

    TABLE: ClassVar[str] = VEHICLE_APPLICATIONS_TABLE
    FIELDS: ClassVar[Tuple[str, ...]] = (
        "part_id", "make", "model", "start_year", "end_year",
    )
    DB_COLUMNS: ClassVar[Dict[str, str]] = {name: name for name in FIELDS}

    def label(self) -> str:
        years = "-".join(
            normalize_value(y) or "?" for y in (self.start_year, self.end_year)
        )
        return f"{self.acr_sku or self.part_id or '?'} {self.make or ''} {self.model or ''} {years}".strip()


@dataclass
class CrossReferenceRow(CatalogRow):
    part_id: Optional[str] = None
    acr_sku: Optional[str] = None
    competitor_brand: Optional[str] = None
    competitor_sku: Optional[str] = None

    TABLE: ClassVar[str] = CROSS_REFERENCES_TABLE
    FIELDS: ClassVar[Tuple[str, ...]] = (
        "part_id", "competitor_brand", "competitor_sku",
    )
    DB_COLUMNS: ClassVar[Dict[str, str]] = {
        "part_id": "acr_part_id",
        "competitor_brand": "competitor_brand",
        "competitor_sku": "competitor_sku",
    }

    def label(self) -> str:
        return f"{self.acr_sku or self.part_id or '?'} {self.competitor_brand}::{self.competitor_sku}"


@dataclass
class AliasRow(CatalogRow):
    alias: Optional[str] = None
    canonical_name: Optional[str] = None
    alias_type: Optional[str] = None

    TABLE: ClassVar[str] = ALIASES_TABLE
    FIELDS: ClassVar[Tuple[str, ...]] = ("alias", "canonical_name", "alias_type")
    DB_COLUMNS: ClassVar[Dict[str, str]] = {name: name for name in FIELDS}

    def label(self) -> str:
        return f"{self.alias} -> {self.canonical_name}"


ROW_TYPES = {
    PARTS_TABLE: PartRow,
    VEHICLE_APPLICATIONS_TABLE: VehicleApplicationRow,
    CROSS_REFERENCES_TABLE: CrossReferenceRow,
    ALIASES_TABLE: AliasRow,
}


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value)


# =============================================================================
# PARSED WORKBOOK
# =============================================================================

@dataclass
class ParsedSheet:
    """Rows read from one worksheet.

    ``columns`` lists the fields whose header was present, which is what the
    diff engine compares; ``hidden_columns`` lists fields whose column was
    hidden in the workbook.
    """
    table: str
    title: Optional[str] = None
    rows: List[CatalogRow] = field(default_factory=list)
    columns: Set[str] = field(default_factory=set)
    hidden_columns: Set[str] = field(default_factory=set)
    layout: Optional[HeaderLayout] = None

    @property
    def present(self) -> bool:
        return self.title is not None


@dataclass
class ParsedWorkbook:
    sheets: Dict[str, ParsedSheet]
    file_name: Optional[str] = None
    file_size: int = 0

    def sheet(self, table: str) -> ParsedSheet:
        return self.sheets.get(table) or ParsedSheet(table=table)

    def rows(self, table: str) -> List[CatalogRow]:
        return self.sheet(table).rows

    @property
    def parts(self) -> List[PartRow]:
        return self.rows(PARTS_TABLE)

    @property
    def vehicle_applications(self) -> List[VehicleApplicationRow]:
        return self.rows(VEHICLE_APPLICATIONS_TABLE)

    @property
    def cross_references(self) -> List[CrossReferenceRow]:
        return self.rows(CROSS_REFERENCES_TABLE)

    @property
    def aliases(self) -> List[AliasRow]:
        return self.rows(ALIASES_TABLE)

    @property
    def total_rows(self) -> int:
        return sum(len(sheet.rows) for sheet in self.sheets.values())


# =============================================================================
# EXISTING RECORDS
# =============================================================================

class ExistingData:
    """Read-only view of persisted catalog records keyed by identity.

    Also derives the natural-key indexes used to detect duplicates and to
    resolve parent references that arrive by SKU.
    """

    def __init__(
        self,
        parts: Optional[List[PartRow]] = None,
        vehicle_applications: Optional[List[VehicleApplicationRow]] = None,
        cross_references: Optional[List[CrossReferenceRow]] = None,
        aliases: Optional[List[AliasRow]] = None,
    ):
        self.parts: Dict[str, PartRow] = {r.identity_id: r for r in parts or []}
        self.vehicle_applications: Dict[str, VehicleApplicationRow] = {
            r.identity_id: r for r in vehicle_applications or []
        }
        self.cross_references: Dict[str, CrossReferenceRow] = {
            r.identity_id: r for r in cross_references or []
        }
        self.aliases: Dict[str, AliasRow] = {r.identity_id: r for r in aliases or []}

        self.part_id_by_sku: Dict[str, str] = {}
        for part in self.parts.values():
            key = sku_key(part.acr_sku)
            if key:
                self.part_id_by_sku[key] = part.identity_id

        # Children carry their parent's SKU for display and export
        for child in list(self.vehicle_applications.values()) + list(self.cross_references.values()):
            parent = self.parts.get(child.part_id)
            if parent is not None and child.acr_sku is None:
                child.acr_sku = parent.acr_sku

    @classmethod
    def from_tables(cls, tables: Dict[str, List[Dict[str, Any]]]) -> "ExistingData":
        """Build from datastore rows keyed by table name."""
        return cls(
            parts=[PartRow.from_db(r) for r in tables.get(PARTS_TABLE, [])],
            vehicle_applications=[
                VehicleApplicationRow.from_db(r)
                for r in tables.get(VEHICLE_APPLICATIONS_TABLE, [])
            ],
            cross_references=[
                CrossReferenceRow.from_db(r)
                for r in tables.get(CROSS_REFERENCES_TABLE, [])
            ],
            aliases=[AliasRow.from_db(r) for r in tables.get(ALIASES_TABLE, [])],
        )

    def records(self, table: str) -> Dict[str, CatalogRow]:
        return {
            PARTS_TABLE: self.parts,
            VEHICLE_APPLICATIONS_TABLE: self.vehicle_applications,
            CROSS_REFERENCES_TABLE: self.cross_references,
            ALIASES_TABLE: self.aliases,
        }[table]

    def find_part_id(self, sku: Any) -> Optional[str]:
        key = sku_key(sku)
        return self.part_id_by_sku.get(key) if key else None

    @property
    def part_skus(self) -> Set[str]:
        return set(self.part_id_by_sku)

    def children_of(self, part_id: str, table: str) -> List[CatalogRow]:
        return [r for r in self.records(table).values() if r.part_id == part_id]

    def counts(self) -> Dict[str, int]:
        return {table: len(self.records(table)) for table in CATALOG_TABLES}
