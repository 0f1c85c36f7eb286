"""
Identity and natural-key resolution shared by validation and diffing.

Identity is the only key used to update or delete. Natural keys serve two
narrower purposes:
- recognizing a no-identity row that duplicates a persisted record
- resolving a child row's parent when the parent is new in the same upload
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from .models import (
    CatalogRow,
    CrossReferenceRow,
    ExistingData,
    PartRow,
    sku_key,
    text_key,
)
from .normalizer import normalize_value
from .schema import (
    ALIASES_TABLE,
    CROSS_REFERENCES_TABLE,
    FIELD_DEFAULTS,
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
)


class ReferenceStatus(Enum):
    EXISTING = auto()    # parent is a persisted part
    NEW_PARENT = auto()  # parent is a new part in the same upload
    MISSING = auto()     # row names no parent at all
    ORPHANED = auto()    # named parent cannot be found


@dataclass
class PartReference:
    status: ReferenceStatus
    part_id: Optional[str] = None
    # SKU of the new parent for NEW_PARENT references
    pending_sku: Optional[str] = None
    # Part is marked for deletion in the upload
    parent_deleted: bool = False

    @property
    def resolved(self) -> bool:
        return self.status in (ReferenceStatus.EXISTING, ReferenceStatus.NEW_PARENT)


class PartReferenceIndex:
    """Where every SKU points once the uploaded Parts sheet is applied."""

    def __init__(self, parts: Iterable[PartRow], existing: ExistingData):
        self.existing = existing
        self.new_parts: Dict[str, PartRow] = {}
        self.deleted_part_ids: Set[str] = set()
        self._sku_owner: Dict[str, str] = dict(existing.part_id_by_sku)

        for part in parts:
            key = sku_key(part.acr_sku)
            if part.has_identity:
                if part.identity_id not in existing.parts:
                    continue
                if part.marked_for_delete:
                    # A deleted part releases its SKU
                    self.deleted_part_ids.add(part.identity_id)
                    old_key = sku_key(existing.parts[part.identity_id].acr_sku)
                    if self._sku_owner.get(old_key) == part.identity_id:
                        del self._sku_owner[old_key]
                    continue
                if key:
                    old_key = sku_key(existing.parts[part.identity_id].acr_sku)
                    if old_key != key and self._sku_owner.get(old_key) == part.identity_id:
                        del self._sku_owner[old_key]
                    self._sku_owner[key] = part.identity_id
            elif key and not part.marked_for_delete and key not in self.new_parts:
                self.new_parts[key] = part

    def sku_owner(self, sku: Any) -> Optional[str]:
        """Identity of the persisted part that holds a SKU after the upload."""
        key = sku_key(sku)
        return self._sku_owner.get(key) if key else None

    def resolve(self, part_id: Optional[str], acr_sku: Any) -> PartReference:
        """Resolve a child row's parent.

        An explicit ``part_id`` wins. Without one, the SKU is looked up first
        among persisted parts and then among new parts of the same upload.
        """
        if part_id:
            if part_id in self.existing.parts:
                return PartReference(
                    ReferenceStatus.EXISTING,
                    part_id=part_id,
                    parent_deleted=part_id in self.deleted_part_ids,
                )
            return PartReference(ReferenceStatus.ORPHANED, part_id=part_id)

        key = sku_key(acr_sku)
        if not key:
            return PartReference(ReferenceStatus.MISSING)

        owner = self._sku_owner.get(key)
        if owner is not None:
            return PartReference(
                ReferenceStatus.EXISTING,
                part_id=owner,
                parent_deleted=owner in self.deleted_part_ids,
            )
        if key in self.new_parts:
            return PartReference(
                ReferenceStatus.NEW_PARENT,
                pending_sku=self.new_parts[key].acr_sku,
            )
        return PartReference(ReferenceStatus.ORPHANED)


    def resolve_child(self, row, record: Optional[CatalogRow] = None) -> PartReference:
        """Resolve the parent of a vehicle application or cross reference row.

        Falls back to the persisted record's parent when the row names none,
        as happens when the sheet omits the SKU and hidden parent columns.
        """
        if not row.part_id and sku_key(row.acr_sku) is None and record is not None:
            return self.resolve(record.part_id, None)
        return self.resolve(row.part_id, row.acr_sku)


def supplied_fields(uploaded: CatalogRow, columns: Iterable[str]) -> List[str]:
    """Fields the upload sets: present columns, minus blank defaulted ones."""
    present = set(columns)
    defaults = FIELD_DEFAULTS.get(uploaded.TABLE, {})
    return [
        name for name in uploaded.FIELDS
        if name in present
        and not (name in defaults and normalize_value(getattr(uploaded, name)) is None)
    ]


def changed_fields(uploaded: CatalogRow, record: CatalogRow, columns: Iterable[str]) -> List[str]:
    """Fields set by the upload whose normalized values differ."""
    changed = []
    for name in supplied_fields(uploaded, columns):
        if normalize_value(getattr(uploaded, name)) != normalize_value(getattr(record, name)):
            changed.append(name)
    return changed


def vehicle_key(part_id: Optional[str], row) -> Tuple[str, str, str, str, str]:
    return (
        part_id or "",
        text_key(row.make),
        text_key(row.model),
        text_key(row.start_year),
        text_key(row.end_year),
    )


def cross_reference_key(part_id: Optional[str], brand: Any, sku: Any) -> Tuple[str, str, str]:
    return (part_id or "", text_key(brand), text_key(sku))


def alias_key(row) -> Tuple[str, str]:
    return (text_key(row.alias), text_key(row.canonical_name))


class NaturalKeyIndex:
    """Persisted records keyed by natural key, per table."""

    def __init__(self, existing: ExistingData):
        self.vehicle_applications = {
            vehicle_key(r.part_id, r): r for r in existing.vehicle_applications.values()
        }
        self.cross_references: Dict[Tuple[str, str, str], CrossReferenceRow] = {
            cross_reference_key(r.part_id, r.competitor_brand, r.competitor_sku): r
            for r in existing.cross_references.values()
        }
        self.aliases = {alias_key(r): r for r in existing.aliases.values()}

    def cross_references_for(self, part_id: str, brand: str) -> Dict[str, CrossReferenceRow]:
        """Existing cross references of a part for one brand, keyed by SKU."""
        brand_key = text_key(brand)
        return {
            key[2]: record
            for key, record in self.cross_references.items()
            if key[0] == part_id and key[1] == brand_key
        }


def find_persisted_duplicate(
    table: str,
    row: CatalogRow,
    existing: ExistingData,
    parts: PartReferenceIndex,
    keys: NaturalKeyIndex,
    parent: Optional[PartReference] = None,
) -> Optional[CatalogRow]:
    """Persisted record sharing a no-identity row's natural key, if any."""
    if table == PARTS_TABLE:
        owner = parts.sku_owner(row.acr_sku)
        return existing.parts.get(owner) if owner else None
    if table == ALIASES_TABLE:
        return keys.aliases.get(alias_key(row))
    if parent is None or parent.status is not ReferenceStatus.EXISTING:
        return None
    if table == VEHICLE_APPLICATIONS_TABLE:
        return keys.vehicle_applications.get(vehicle_key(parent.part_id, row))
    if table == CROSS_REFERENCES_TABLE:
        return keys.cross_references.get(
            cross_reference_key(parent.part_id, row.competitor_brand, row.competitor_sku)
        )
    return None
