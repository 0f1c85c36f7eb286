"""
Workbook diff engine for reconciling an uploaded catalog against the datastore.

This module implements an identity-first diff that:
- Uses the hidden row identity as the only update/delete key (not row position)
- Compares normalized field values so formatting noise never shows as a change
- Deletes only what the workbook explicitly marks for deletion
- Diffs semicolon-separated brand cells member by member
- Expands part deletions into the deletions of their dependent rows

CORE PRINCIPLES:
1. A row without identity is new, unless it repeats a persisted record verbatim
2. Records missing from the upload are left alone
3. A delete marker beats any other change on the same row
4. Every row is accounted for: classified, or reported as unresolved
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from ..matching import (
    NaturalKeyIndex,
    PartReference,
    PartReferenceIndex,
    ReferenceStatus,
    changed_fields,
    cross_reference_key,
    find_persisted_duplicate,
    supplied_fields,
)
from ..models import (
    CatalogRow,
    CrossReferenceRow,
    ExistingData,
    ParsedSheet,
    ParsedWorkbook,
)
from ..normalizer import split_list_cell
from ..schema import (
    ALIASES_TABLE,
    BRAND_COLUMNS,
    CATALOG_TABLES,
    CROSS_REFERENCES_TABLE,
    PART_CHILD_TABLES,
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
)

logger = logging.getLogger(__name__)


class DiffOperation(Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"
    UNCHANGED = "unchanged"


class DiffSource(Enum):
    ROW = "row"                    # a row of the entity's own sheet
    BRAND_COLUMN = "brand_column"  # a member of a Parts brand cell
    CASCADE = "cascade"            # dependent of a deleted part


@dataclass
class DiffEntry:
    """
    Classification of one row.

    ADD carries ``after`` only, DELETE ``before`` only, UPDATE both plus the
    changed field names, UNCHANGED both with no changed fields.
    ``pending_parent_sku`` is set on child rows whose part is added by the
    same upload and therefore has no identity yet.
    """
    operation: DiffOperation
    table: str
    before: Optional[CatalogRow] = None
    after: Optional[CatalogRow] = None
    changed_fields: List[str] = field(default_factory=list)
    row_number: Optional[int] = None
    source: DiffSource = DiffSource.ROW
    pending_parent_sku: Optional[str] = None

    def __post_init__(self):
        op = self.operation
        has_before = self.before is not None
        has_after = self.after is not None
        if op is DiffOperation.ADD:
            valid = has_after and not has_before and not self.changed_fields
        elif op is DiffOperation.DELETE:
            valid = has_before and not has_after and not self.changed_fields
        elif op is DiffOperation.UPDATE:
            valid = has_before and has_after and bool(self.changed_fields)
        else:
            valid = has_before and has_after and not self.changed_fields
        if not valid:
            raise ValueError(
                f"Inconsistent {op.name} entry for {self.table}: before={has_before}, "
                f"after={has_after}, changed_fields={self.changed_fields}"
            )

    @property
    def identity_id(self) -> Optional[str]:
        record = self.before or self.after
        return record.identity_id if record else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "operation": self.operation.value,
            "table": self.table,
            "row": self.row_number,
            "source": self.source.value,
            "identity_id": self.identity_id,
            "label": (self.after or self.before).label(),
            "changed_fields": list(self.changed_fields),
            "before": {k: self.before.values()[k] for k in self.changed_fields} if self.before else None,
            "after": {k: self.after.values()[k] for k in self.changed_fields} if self.after else None,
        }


@dataclass
class UnresolvedRow:
    """A row the diff could not classify; executing it is refused."""
    table: str
    row_number: Optional[int]
    identity_id: Optional[str]
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass
class SheetDiff:
    table: str
    adds: List[DiffEntry] = field(default_factory=list)
    updates: List[DiffEntry] = field(default_factory=list)
    deletes: List[DiffEntry] = field(default_factory=list)
    unchanged: List[DiffEntry] = field(default_factory=list)
    unresolved: List[UnresolvedRow] = field(default_factory=list)

    def record(self, entry: DiffEntry) -> None:
        {
            DiffOperation.ADD: self.adds,
            DiffOperation.UPDATE: self.updates,
            DiffOperation.DELETE: self.deletes,
            DiffOperation.UNCHANGED: self.unchanged,
        }[entry.operation].append(entry)

    def deleted_ids(self) -> Set[str]:
        return {e.identity_id for e in self.deletes}

    @property
    def change_count(self) -> int:
        return len(self.adds) + len(self.updates) + len(self.deletes)

    def counts(self) -> Dict[str, int]:
        return {
            "adds": len(self.adds),
            "updates": len(self.updates),
            "deletes": len(self.deletes),
            "unchanged": len(self.unchanged),
            "unresolved": len(self.unresolved),
        }


@dataclass
class DiffResult:
    """
    Complete reconciliation of an upload against the datastore.

    One SheetDiff per catalog table plus aggregate counts, suitable for a
    preview screen and for building the import payload.
    """
    sheets: Dict[str, SheetDiff]

    def sheet(self, table: str) -> SheetDiff:
        return self.sheets[table]

    @property
    def parts(self) -> SheetDiff:
        return self.sheets[PARTS_TABLE]

    @property
    def vehicle_applications(self) -> SheetDiff:
        return self.sheets[VEHICLE_APPLICATIONS_TABLE]

    @property
    def cross_references(self) -> SheetDiff:
        return self.sheets[CROSS_REFERENCES_TABLE]

    @property
    def aliases(self) -> SheetDiff:
        return self.sheets[ALIASES_TABLE]

    @property
    def unresolved(self) -> List[UnresolvedRow]:
        return [u for s in self.sheets.values() for u in s.unresolved]

    @property
    def has_changes(self) -> bool:
        return any(s.change_count for s in self.sheets.values())

    def summary(self) -> Dict[str, Any]:
        return {
            "total_adds": sum(len(s.adds) for s in self.sheets.values()),
            "total_updates": sum(len(s.updates) for s in self.sheets.values()),
            "total_deletes": sum(len(s.deletes) for s in self.sheets.values()),
            "total_unchanged": sum(len(s.unchanged) for s in self.sheets.values()),
            "total_changes": sum(s.change_count for s in self.sheets.values()),
            "changes_by_sheet": {t: s.change_count for t, s in self.sheets.items()},
            "by_sheet": {t: s.counts() for t, s in self.sheets.items()},
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "summary": self.summary(),
            "sheets": {
                table: {
                    "adds": [e.to_dict() for e in s.adds],
                    "updates": [e.to_dict() for e in s.updates],
                    "deletes": [e.to_dict() for e in s.deletes],
                    "unresolved": [u.to_dict() for u in s.unresolved],
                }
                for table, s in self.sheets.items()
            },
        }


class DiffEngine:
    """Classifies every uploaded row as ADD, UPDATE, DELETE or UNCHANGED."""

    def diff(self, parsed: ParsedWorkbook, existing: ExistingData) -> DiffResult:
        """Diff a parsed workbook against persisted records.

        Args:
            parsed: Output of WorkbookParser.parse()
            existing: Persisted records

        Returns:
            DiffResult with one SheetDiff per catalog table
        """
        parts = PartReferenceIndex(parsed.parts, existing)
        keys = NaturalKeyIndex(existing)
        result = DiffResult(sheets={table: SheetDiff(table) for table in CATALOG_TABLES})

        for table in CATALOG_TABLES:
            self._diff_sheet(parsed.sheet(table), existing, parts, keys, result.sheet(table))

        self._diff_brand_columns(parsed.sheet(PARTS_TABLE), existing, parts, keys, result)
        self._cascade_part_deletes(existing, result)

        summary = result.summary()
        logger.info(
            f"Diff: {summary['total_adds']} adds, {summary['total_updates']} updates, "
            f"{summary['total_deletes']} deletes, {summary['total_unchanged']} unchanged, "
            f"{len(result.unresolved)} unresolved"
        )
        return result

    def _diff_sheet(
        self,
        sheet: ParsedSheet,
        existing: ExistingData,
        parts: PartReferenceIndex,
        keys: NaturalKeyIndex,
        out: SheetDiff,
    ) -> None:
        table = sheet.table
        records = existing.records(table)
        is_child = table in PART_CHILD_TABLES
        columns = set(sheet.columns)
        if is_child:
            # The resolved parent is always compared
            columns.add("part_id")

        for row in sheet.rows:
            record = records.get(row.identity_id) if row.has_identity else None

            # Step 1: explicit deletes win over every other change
            if row.marked_for_delete:
                if record is not None:
                    out.record(DiffEntry(
                        DiffOperation.DELETE, table, before=record, row_number=row.row_number,
                    ))
                elif row.has_identity:
                    logger.debug(f"{table} row {row.row_number}: already deleted, skipped")
                continue

            if row.has_identity and record is None:
                out.unresolved.append(UnresolvedRow(
                    table, row.row_number, row.identity_id,
                    "identity does not match any existing record",
                ))
                continue

            reference = parts.resolve_child(row, record) if is_child else None
            if reference is not None and not reference.resolved:
                out.unresolved.append(UnresolvedRow(
                    table, row.row_number, row.identity_id,
                    "referenced part not found",
                ))
                continue

            candidate = self._apply_reference(row, reference, parts, existing)

            # Step 2: rows that exist are compared field by field
            if record is not None:
                changed = changed_fields(candidate, record, columns)
                if reference is not None and reference.parent_deleted:
                    if changed:
                        out.unresolved.append(UnresolvedRow(
                            table, row.row_number, row.identity_id,
                            "referenced part is being deleted",
                        ))
                    # Unchanged rows go with their part
                    continue
                after = self._merge(record, candidate, columns)
                operation = DiffOperation.UPDATE if changed else DiffOperation.UNCHANGED
                out.record(DiffEntry(
                    operation, table, before=record, after=after,
                    changed_fields=changed, row_number=row.row_number,
                    pending_parent_sku=reference.pending_sku if reference else None,
                ))
                continue

            # Step 3: rows without identity are new
            if reference is not None and reference.parent_deleted:
                out.unresolved.append(UnresolvedRow(
                    table, row.row_number, None, "referenced part is being deleted",
                ))
                continue

            duplicate = find_persisted_duplicate(table, row, existing, parts, keys, reference)
            if duplicate is not None:
                if changed_fields(candidate, duplicate, columns):
                    out.unresolved.append(UnresolvedRow(
                        table, row.row_number, None,
                        "duplicates an existing record; edit the exported row instead",
                    ))
                else:
                    out.record(DiffEntry(
                        DiffOperation.UNCHANGED, table, before=duplicate,
                        after=self._merge(duplicate, candidate, columns),
                        row_number=row.row_number,
                    ))
                continue

            out.record(DiffEntry(
                DiffOperation.ADD, table, after=candidate, row_number=row.row_number,
                pending_parent_sku=reference.pending_sku if reference else None,
            ))

    @staticmethod
    def _apply_reference(
        row: CatalogRow,
        reference: Optional[PartReference],
        parts: PartReferenceIndex,
        existing: ExistingData,
    ) -> CatalogRow:
        """Copy of a child row pointing at its resolved parent."""
        if reference is None:
            return row
        if reference.status is ReferenceStatus.NEW_PARENT:
            return dataclasses.replace(row, part_id=None, acr_sku=reference.pending_sku)
        parent = existing.parts[reference.part_id]
        return dataclasses.replace(
            row, part_id=reference.part_id, acr_sku=row.acr_sku or parent.acr_sku,
        )

    @staticmethod
    def _merge(record: CatalogRow, row: CatalogRow, columns: Set[str]) -> CatalogRow:
        """Persisted record overlaid with the uploaded values of present columns."""
        updates = {name: getattr(row, name) for name in supplied_fields(row, columns)}
        if hasattr(row, "acr_sku") and "acr_sku" not in updates:
            updates["acr_sku"] = getattr(row, "acr_sku") or getattr(record, "acr_sku")
        return dataclasses.replace(
            record, action_marker=None, row_number=row.row_number, **updates,
        )

    # =========================================================================
    # BRAND COLUMNS
    # =========================================================================

    def _diff_brand_columns(
        self,
        sheet: ParsedSheet,
        existing: ExistingData,
        parts: PartReferenceIndex,
        keys: NaturalKeyIndex,
        result: DiffResult,
    ) -> None:
        """Member-level diff of the semicolon lists in Parts brand columns.

        Each token is its own cross reference: new tokens are added, tokens
        carrying the delete prefix are removed, and tokens already stored are
        unchanged. Stored references missing from the cell are left alone.
        """
        out = result.cross_references
        # References the Cross References sheet already reports
        seen: Set[Tuple[str, str, str]] = set()
        for entry in out.adds + out.updates + out.deletes + out.unchanged:
            seen.update(self._cross_reference_identities(entry))

        for row in sheet.rows:
            if row.marked_for_delete or not row.brand_skus:
                continue
            if row.has_identity:
                if row.identity_id not in existing.parts:
                    continue
                reference = parts.resolve(row.identity_id, None)
            else:
                reference = parts.resolve(None, row.acr_sku)
                if not reference.resolved:
                    continue

            for column, cell in row.brand_skus.items():
                brand = BRAND_COLUMNS[column]
                stored = keys.cross_references_for(reference.part_id, brand) if reference.part_id else {}
                for token, remove in split_list_cell(cell):
                    key = cross_reference_key(
                        reference.part_id or f"new:{reference.pending_sku}", brand, token,
                    )
                    current = stored.get(key[2])
                    if key in seen:
                        continue

                    if remove:
                        if current is not None:
                            seen.add(key)
                            out.record(DiffEntry(
                                DiffOperation.DELETE, CROSS_REFERENCES_TABLE,
                                before=current, row_number=row.row_number,
                                source=DiffSource.BRAND_COLUMN,
                            ))
                        continue

                    if current is not None:
                        seen.add(key)
                        out.record(DiffEntry(
                            DiffOperation.UNCHANGED, CROSS_REFERENCES_TABLE,
                            before=current, after=current, row_number=row.row_number,
                            source=DiffSource.BRAND_COLUMN,
                        ))
                        continue

                    seen.add(key)
                    out.record(DiffEntry(
                        DiffOperation.ADD, CROSS_REFERENCES_TABLE,
                        after=CrossReferenceRow(
                            part_id=reference.part_id,
                            acr_sku=row.acr_sku if reference.pending_sku is None else reference.pending_sku,
                            competitor_brand=brand,
                            competitor_sku=token,
                            row_number=row.row_number,
                        ),
                        row_number=row.row_number,
                        source=DiffSource.BRAND_COLUMN,
                        pending_parent_sku=reference.pending_sku,
                    ))

    @staticmethod
    def _cross_reference_identities(entry: DiffEntry) -> Set[Tuple[str, str, str]]:
        """Natural keys an entry touches; an update touches its old and new key."""
        return {
            cross_reference_key(
                record.part_id or f"new:{entry.pending_parent_sku}",
                record.competitor_brand, record.competitor_sku,
            )
            for record in (entry.before, entry.after) if record is not None
        }

    # =========================================================================
    # CASCADE
    # =========================================================================

    def _cascade_part_deletes(self, existing: ExistingData, result: DiffResult) -> None:
        """Delete the vehicle applications and cross references of deleted parts."""
        deleted_parts = result.parts.deleted_ids()
        if not deleted_parts:
            return
        for table in PART_CHILD_TABLES:
            out = result.sheet(table)
            already = out.deleted_ids()
            for record in existing.records(table).values():
                if record.part_id in deleted_parts and record.identity_id not in already:
                    out.record(DiffEntry(
                        DiffOperation.DELETE, table, before=record, source=DiffSource.CASCADE,
                    ))
