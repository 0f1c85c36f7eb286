"""
Validation engine for uploaded catalog workbooks.

Checks a parsed workbook against a read-only view of the persisted catalog
and reports blocking errors and non-blocking warnings. Every rule group runs
on every call; nothing short-circuits, so the operator sees all problems in
one pass. The engine never writes and never queries the datastore itself.
"""

import logging
from typing import Any, Dict, Optional, Set

from ..config import Settings
from ..layout import UUID_PATTERN
from ..matching import (
    NaturalKeyIndex,
    PartReference,
    PartReferenceIndex,
    ReferenceStatus,
    alias_key,
    changed_fields,
    cross_reference_key,
    find_persisted_duplicate,
    vehicle_key,
)
from ..models import (
    CatalogRow,
    ExistingData,
    ParsedSheet,
    ParsedWorkbook,
    PartRow,
    sku_key,
)
from ..normalizer import normalize_value, split_list_cell
from ..schema import (
    ALIASES_TABLE,
    BRAND_COLUMNS,
    CROSS_REFERENCES_TABLE,
    MAX_LENGTHS,
    PARTS_TABLE,
    REQUIRED_FIELDS,
    REQUIRED_ID_FIELDS,
    SHEET_NAMES,
    STATUS_LABELS,
    VEHICLE_APPLICATIONS_TABLE,
)
from .codes import ValidationCode, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)

# Header text of hidden identity columns, for messages
HIDDEN_HEADERS = {
    PARTS_TABLE: {"identity_id": "_id"},
    VEHICLE_APPLICATIONS_TABLE: {"identity_id": "_id", "part_id": "_part_id"},
    CROSS_REFERENCES_TABLE: {"identity_id": "_id", "part_id": "_acr_part_id"},
    ALIASES_TABLE: {"identity_id": "_id"},
}

# Specifications shrinking below this fraction of their old length warn
SPECIFICATIONS_SHRINK_RATIO = 0.5


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_year(value: Any) -> Optional[int]:
    """Integer year from a cell value, or None when it is not a whole number."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else None
    text = normalize_value(value)
    if text is not None and text.lstrip("-").isdigit():
        return int(text)
    return None


class ValidationEngine:
    """Runs every validation rule over a parsed workbook."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or Settings()

    def validate(self, parsed: ParsedWorkbook, existing: ExistingData) -> ValidationResult:
        """Validate a parsed workbook.

        Args:
            parsed: Output of WorkbookParser.parse()
            existing: Persisted records the upload is reconciled against

        Returns:
            ValidationResult; ``valid`` is False when any error was found
        """
        result = ValidationResult()
        parts = PartReferenceIndex(parsed.parts, existing)
        keys = NaturalKeyIndex(existing)

        self._check_structure(parsed, result)
        self._check_parts(parsed.sheet(PARTS_TABLE), existing, parts, result)
        self._check_vehicle_applications(
            parsed.sheet(VEHICLE_APPLICATIONS_TABLE), existing, parts, result
        )
        self._check_cross_references(
            parsed.sheet(CROSS_REFERENCES_TABLE), existing, parts, keys, result
        )
        self._check_aliases(parsed.sheet(ALIASES_TABLE), existing, parts, keys, result)

        logger.info(
            f"Validation finished: {len(result.errors)} errors, "
            f"{len(result.warnings)} warnings"
        )
        return result

    # =========================================================================
    # STRUCTURE
    # =========================================================================

    def _check_structure(self, parsed: ParsedWorkbook, result: ValidationResult) -> None:
        if parsed.total_rows == 0:
            result.add(ValidationIssue(
                ValidationCode.E10_NO_DATA,
                "Workbook contains no data rows",
                sheet=SHEET_NAMES[PARTS_TABLE],
            ))

        for table, required in REQUIRED_ID_FIELDS.items():
            sheet = parsed.sheet(table)
            if not sheet.present:
                continue
            present = [f for f in required if f in sheet.columns]
            # Any identity column means the sheet came from an export
            if not present:
                continue
            missing = [f for f in required if f not in sheet.columns]
            if missing:
                headers = [HIDDEN_HEADERS[table][f] for f in missing]
                result.add(ValidationIssue(
                    ValidationCode.E1_MISSING_HIDDEN_COLUMNS,
                    f"Sheet is missing hidden identity column(s) {', '.join(headers)}; "
                    f"export the catalog again instead of editing these columns",
                    sheet=self._sheet_name(sheet),
                    column=headers[0],
                    expected=", ".join(HIDDEN_HEADERS[table].values()),
                ))

    # =========================================================================
    # SHARED ROW RULES
    # =========================================================================

    def _check_row_basics(
        self,
        sheet: ParsedSheet,
        row: CatalogRow,
        existing: ExistingData,
        seen_ids: Dict[str, int],
        result: ValidationResult,
    ) -> Optional[CatalogRow]:
        """Identity, delete marker, required field and length rules.

        Returns:
            The persisted record the row refers to, if any
        """
        name = self._sheet_name(sheet)
        record = None

        for field_name in ("identity_id", "part_id"):
            value = getattr(row, field_name, None)
            if value and not UUID_PATTERN.match(value):
                result.add(ValidationIssue(
                    ValidationCode.E4_INVALID_UUID_FORMAT,
                    f"{HIDDEN_HEADERS[sheet.table].get(field_name, field_name)} "
                    f"is not a valid identifier",
                    sheet=name, row=row.row_number,
                    column=HIDDEN_HEADERS[sheet.table].get(field_name, field_name),
                    value=value, expected="UUID",
                ))

        if row.has_identity:
            if row.identity_id in seen_ids:
                result.add(ValidationIssue(
                    ValidationCode.E23_DUPLICATE_IDENTITY,
                    f"Identity also used on row {seen_ids[row.identity_id]}",
                    sheet=name, row=row.row_number, column="_id",
                    value=row.identity_id,
                ))
            else:
                seen_ids[row.identity_id] = row.row_number

            record = existing.records(sheet.table).get(row.identity_id)
            if record is None and UUID_PATTERN.match(row.identity_id):
                if row.marked_for_delete:
                    result.add(ValidationIssue(
                        ValidationCode.W15_ALREADY_DELETED,
                        "Row is marked for deletion but no longer exists; it will be skipped",
                        sheet=name, row=row.row_number, column="_id",
                        value=row.identity_id,
                    ))
                else:
                    result.add(ValidationIssue(
                        ValidationCode.E19_UUID_NOT_IN_DATABASE,
                        "Identity does not match any existing record; "
                        "clear the _id cell to add the row as new",
                        sheet=name, row=row.row_number, column="_id",
                        value=row.identity_id,
                    ))
        elif row.marked_for_delete:
            result.add(ValidationIssue(
                ValidationCode.W11_DELETE_WITHOUT_IDENTITY,
                "Row is marked for deletion but was never saved; it will be ignored",
                sheet=name, row=row.row_number, value=row.action_marker,
            ))

        if row.marked_for_delete:
            return record

        for field_name in REQUIRED_FIELDS[sheet.table]:
            # Rows that exist keep untouched values for absent columns
            if field_name not in sheet.columns and row.has_identity:
                continue
            if _is_empty(getattr(row, field_name)):
                result.add(ValidationIssue(
                    ValidationCode.E3_EMPTY_REQUIRED_FIELD,
                    f"Required field '{field_name}' is empty",
                    sheet=name, row=row.row_number, column=field_name,
                ))

        for field_name, limit in MAX_LENGTHS.items():
            value = getattr(row, field_name, None)
            if isinstance(value, str) and len(value) > limit:
                result.add(ValidationIssue(
                    ValidationCode.E7_STRING_EXCEEDS_MAX_LENGTH,
                    f"'{field_name}' is {len(value)} characters long (max {limit})",
                    sheet=name, row=row.row_number, column=field_name,
                    value=value, expected=f"<= {limit} characters",
                ))
        return record

    def _check_parent(
        self,
        sheet: ParsedSheet,
        row: CatalogRow,
        reference: PartReference,
        result: ValidationResult,
        unchanged: bool = False,
    ) -> None:
        name = self._sheet_name(sheet)
        parent_column = HIDDEN_HEADERS[sheet.table]["part_id"] if row.part_id else "acr_sku"
        if reference.status is ReferenceStatus.MISSING:
            result.add(ValidationIssue(
                ValidationCode.E3_EMPTY_REQUIRED_FIELD,
                "Row does not name its part (acr_sku is empty)",
                sheet=name, row=row.row_number, column="acr_sku",
            ))
        elif reference.status is ReferenceStatus.ORPHANED:
            result.add(ValidationIssue(
                ValidationCode.E5_ORPHANED_FOREIGN_KEY,
                "Referenced part does not exist and is not added by this upload",
                sheet=name, row=row.row_number, column=parent_column,
                value=row.part_id or row.acr_sku,
            ))
        elif reference.parent_deleted and not unchanged:
            # Untouched rows are removed together with their part
            result.add(ValidationIssue(
                ValidationCode.E22_PARENT_BEING_DELETED,
                "Referenced part is marked for deletion in this upload",
                sheet=name, row=row.row_number, column=parent_column,
                value=row.part_id or row.acr_sku,
            ))

    # =========================================================================
    # PARTS
    # =========================================================================

    def _check_parts(
        self,
        sheet: ParsedSheet,
        existing: ExistingData,
        parts: PartReferenceIndex,
        result: ValidationResult,
    ) -> None:
        name = self._sheet_name(sheet)
        seen_ids: Dict[str, int] = {}
        seen_skus: Dict[str, int] = {}
        renamed_away: Set[str] = {
            row.identity_id for row in sheet.rows
            if row.has_identity and row.identity_id in existing.parts
            and "acr_sku" in sheet.columns
            and sku_key(row.acr_sku) != sku_key(existing.parts[row.identity_id].acr_sku)
        }

        for row in sheet.rows:
            record = self._check_row_basics(sheet, row, existing, seen_ids, result)
            if row.marked_for_delete:
                if record is not None:
                    result.add(ValidationIssue(
                        ValidationCode.W5_PART_DELETED,
                        f"Part {record.acr_sku} and its vehicle applications and "
                        f"cross references will be deleted",
                        sheet=name, row=row.row_number, value=record.acr_sku,
                    ))
                continue

            key = sku_key(row.acr_sku)
            if key:
                if key in seen_skus:
                    result.add(ValidationIssue(
                        ValidationCode.E2_DUPLICATE_ACR_SKU,
                        f"SKU {row.acr_sku} also appears on row {seen_skus[key]}",
                        sheet=name, row=row.row_number, column="acr_sku",
                        value=row.acr_sku,
                    ))
                else:
                    seen_skus[key] = row.row_number

            status = row.workflow_status
            if status not in (None, "") and status not in STATUS_LABELS:
                result.add(ValidationIssue(
                    ValidationCode.E24_INVALID_STATUS,
                    f"Unknown status '{status}'",
                    sheet=name, row=row.row_number, column="status", value=status,
                    expected=", ".join(list(STATUS_LABELS.values()) + ["Eliminar"]),
                ))

            self._check_brand_tokens(name, row, result)

            if not row.has_identity:
                duplicate = find_persisted_duplicate(PARTS_TABLE, row, existing, parts, None)
                if duplicate is not None and changed_fields(row, duplicate, sheet.columns):
                    result.add(ValidationIssue(
                        ValidationCode.E21_NATURAL_KEY_CONFLICT,
                        f"SKU {row.acr_sku} already exists; edit the exported row "
                        f"instead of adding it again",
                        sheet=name, row=row.row_number, column="acr_sku",
                        value=row.acr_sku,
                    ))
                continue

            if record is None:
                continue

            if key and key != sku_key(record.acr_sku):
                other = existing.part_id_by_sku.get(key)
                if (other and other != row.identity_id
                        and other not in parts.deleted_part_ids
                        and other not in renamed_away):
                    result.add(ValidationIssue(
                        ValidationCode.E21_NATURAL_KEY_CONFLICT,
                        f"SKU {row.acr_sku} is already used by another part",
                        sheet=name, row=row.row_number, column="acr_sku",
                        value=row.acr_sku,
                    ))
            self._warn_part_changes(name, sheet.columns, row, record, result)

    def _check_brand_tokens(self, sheet_name: str, row: PartRow, result: ValidationResult) -> None:
        limit = MAX_LENGTHS["competitor_sku"]
        for column, cell in row.brand_skus.items():
            for token, _ in split_list_cell(cell):
                if len(token) > limit:
                    result.add(ValidationIssue(
                        ValidationCode.E7_STRING_EXCEEDS_MAX_LENGTH,
                        f"{BRAND_COLUMNS[column]} SKU '{token}' is {len(token)} "
                        f"characters long (max {limit})",
                        sheet=sheet_name, row=row.row_number, column=column,
                        value=token, expected=f"<= {limit} characters",
                    ))

    def _warn_part_changes(self, sheet_name, columns, row: PartRow, record: PartRow, result):
        changed = changed_fields(row, record, columns)
        messages = {
            "acr_sku": (ValidationCode.W1_ACR_SKU_CHANGED, "SKU changed"),
            "part_type": (ValidationCode.W3_PART_TYPE_CHANGED, "Part type changed"),
            "position_type": (ValidationCode.W4_POSITION_TYPE_CHANGED, "Position type changed"),
        }
        for field_name in changed:
            if field_name in messages:
                code, text = messages[field_name]
                old, new = getattr(record, field_name), getattr(row, field_name)
                result.add(ValidationIssue(
                    code, f"{text} from '{old}' to '{new}'",
                    sheet=sheet_name, row=row.row_number, column=field_name, value=new,
                ))

        if "specifications" in changed:
            old = normalize_value(record.specifications) or ""
            new = normalize_value(row.specifications) or ""
            if old and len(new) < len(old) * SPECIFICATIONS_SHRINK_RATIO:
                result.add(ValidationIssue(
                    ValidationCode.W7_SPECIFICATIONS_SHORTENED,
                    f"Specifications shortened from {len(old)} to {len(new)} characters",
                    sheet=sheet_name, row=row.row_number, column="specifications",
                    value=row.specifications,
                ))

    # =========================================================================
    # VEHICLE APPLICATIONS
    # =========================================================================

    def _check_vehicle_applications(
        self,
        sheet: ParsedSheet,
        existing: ExistingData,
        parts: PartReferenceIndex,
        result: ValidationResult,
    ) -> None:
        name = self._sheet_name(sheet)
        seen_ids: Dict[str, int] = {}
        seen_keys: Dict[Any, int] = {}

        for row in sheet.rows:
            record = self._check_row_basics(sheet, row, existing, seen_ids, result)
            if row.marked_for_delete:
                if record is not None:
                    result.add(ValidationIssue(
                        ValidationCode.W6_VEHICLE_APPLICATION_DELETED,
                        f"Vehicle application {record.label()} will be deleted",
                        sheet=name, row=row.row_number,
                    ))
                continue

            reference = parts.resolve_child(row, record)
            unchanged = record is not None and not changed_fields(row, record, sheet.columns)
            self._check_parent(sheet, row, reference, result, unchanged)

            if row.part_id and row.acr_sku and row.part_id in existing.parts:
                owner = parts.sku_owner(row.acr_sku)
                if owner != row.part_id:
                    result.add(ValidationIssue(
                        ValidationCode.W12_PARENT_SKU_MISMATCH,
                        f"acr_sku {row.acr_sku} does not match the part in _part_id; "
                        f"the _part_id value is used",
                        sheet=name, row=row.row_number, column="acr_sku",
                        value=row.acr_sku,
                    ))

            start, end = self._check_years(name, sheet, row, result)

            if reference.resolved:
                key = vehicle_key(reference.part_id or f"new:{sku_key(reference.pending_sku)}", row)
                if key in seen_keys:
                    result.add(ValidationIssue(
                        ValidationCode.W13_DUPLICATE_VEHICLE_APPLICATION,
                        f"Same vehicle application as row {seen_keys[key]}",
                        sheet=name, row=row.row_number,
                    ))
                else:
                    seen_keys[key] = row.row_number

            if record is None:
                continue

            changed = changed_fields(row, record, sheet.columns)
            if "make" in changed:
                result.add(ValidationIssue(
                    ValidationCode.W8_VEHICLE_MAKE_CHANGED,
                    f"Make changed from '{record.make}' to '{row.make}'",
                    sheet=name, row=row.row_number, column="make", value=row.make,
                ))
            if "model" in changed:
                result.add(ValidationIssue(
                    ValidationCode.W9_VEHICLE_MODEL_CHANGED,
                    f"Model changed from '{record.model}' to '{row.model}'",
                    sheet=name, row=row.row_number, column="model", value=row.model,
                ))
            old_start, old_end = parse_year(record.start_year), parse_year(record.end_year)
            if None not in (start, end, old_start, old_end) and (start > old_start or end < old_end):
                result.add(ValidationIssue(
                    ValidationCode.W2_YEAR_RANGE_NARROWED,
                    f"Year range narrowed from {old_start}-{old_end} to {start}-{end}",
                    sheet=name, row=row.row_number, column="start_year",
                ))

    def _check_years(self, sheet_name, sheet: ParsedSheet, row, result: ValidationResult):
        """Year format, plausibility and ordering. Returns parsed (start, end)."""
        years = {}
        for field_name in ("start_year", "end_year"):
            value = getattr(row, field_name)
            if _is_empty(value):
                years[field_name] = None
                continue
            year = parse_year(value)
            if year is None:
                result.add(ValidationIssue(
                    ValidationCode.E9_INVALID_NUMBER_FORMAT,
                    f"'{field_name}' must be a whole-number year",
                    sheet=sheet_name, row=row.row_number, column=field_name,
                    value=value, expected="YYYY",
                ))
            elif not self.settings.min_year <= year <= self.settings.max_year:
                result.add(ValidationIssue(
                    ValidationCode.E8_YEAR_OUT_OF_RANGE,
                    f"'{field_name}' {year} is outside "
                    f"{self.settings.min_year}-{self.settings.max_year}",
                    sheet=sheet_name, row=row.row_number, column=field_name,
                    value=value,
                    expected=f"{self.settings.min_year}-{self.settings.max_year}",
                ))
                year = None
            years[field_name] = year

        start, end = years["start_year"], years["end_year"]
        if start is not None and end is not None and end < start:
            result.add(ValidationIssue(
                ValidationCode.E6_INVALID_YEAR_RANGE,
                f"End year {end} is before start year {start}",
                sheet=sheet_name, row=row.row_number, column="end_year",
                value=getattr(row, "end_year"), expected=f">= {start}",
            ))
        return start, end

    # =========================================================================
    # CROSS REFERENCES
    # =========================================================================

    def _check_cross_references(
        self,
        sheet: ParsedSheet,
        existing: ExistingData,
        parts: PartReferenceIndex,
        keys: NaturalKeyIndex,
        result: ValidationResult,
    ) -> None:
        name = self._sheet_name(sheet)
        seen_ids: Dict[str, int] = {}
        seen_keys: Dict[Any, int] = {}

        for row in sheet.rows:
            record = self._check_row_basics(sheet, row, existing, seen_ids, result)
            if row.marked_for_delete:
                continue

            reference = parts.resolve_child(row, record)
            unchanged = record is not None and not changed_fields(row, record, sheet.columns)
            self._check_parent(sheet, row, reference, result, unchanged)

            if reference.resolved:
                key = cross_reference_key(
                    reference.part_id or f"new:{sku_key(reference.pending_sku)}",
                    row.competitor_brand, row.competitor_sku,
                )
                if key in seen_keys:
                    result.add(ValidationIssue(
                        ValidationCode.W14_DUPLICATE_CROSS_REFERENCE,
                        f"Same cross reference as row {seen_keys[key]}",
                        sheet=name, row=row.row_number, column="competitor_sku",
                        value=row.competitor_sku,
                    ))
                else:
                    seen_keys[key] = row.row_number

            if record is not None and "competitor_brand" in changed_fields(row, record, sheet.columns):
                result.add(ValidationIssue(
                    ValidationCode.W10_CROSS_REFERENCE_BRAND_CHANGED,
                    f"Brand changed from '{record.competitor_brand}' to '{row.competitor_brand}'",
                    sheet=name, row=row.row_number, column="competitor_brand",
                    value=row.competitor_brand,
                ))

    # =========================================================================
    # ALIASES
    # =========================================================================

    def _check_aliases(
        self,
        sheet: ParsedSheet,
        existing: ExistingData,
        parts: PartReferenceIndex,
        keys: NaturalKeyIndex,
        result: ValidationResult,
    ) -> None:
        name = self._sheet_name(sheet)
        seen_ids: Dict[str, int] = {}
        seen_keys: Dict[Any, int] = {}

        for row in sheet.rows:
            self._check_row_basics(sheet, row, existing, seen_ids, result)
            if row.marked_for_delete:
                continue

            key = alias_key(row)
            if key in seen_keys:
                result.add(ValidationIssue(
                    ValidationCode.E25_DUPLICATE_ALIAS,
                    f"Alias '{row.alias}' for '{row.canonical_name}' also appears "
                    f"on row {seen_keys[key]}",
                    sheet=name, row=row.row_number, column="alias", value=row.alias,
                ))
            else:
                seen_keys[key] = row.row_number

            if not row.has_identity:
                duplicate = find_persisted_duplicate(ALIASES_TABLE, row, existing, parts, keys)
                if duplicate is not None and changed_fields(row, duplicate, sheet.columns):
                    result.add(ValidationIssue(
                        ValidationCode.E21_NATURAL_KEY_CONFLICT,
                        f"Alias '{row.alias}' for '{row.canonical_name}' already exists",
                        sheet=name, row=row.row_number, column="alias", value=row.alias,
                    ))

    @staticmethod
    def _sheet_name(sheet: ParsedSheet) -> str:
        return sheet.title or SHEET_NAMES[sheet.table]
