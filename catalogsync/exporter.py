"""
Catalog workbook export.

Writes the persisted catalog as a workbook that re-imports cleanly: identity
columns are present but hidden, competitor SKUs are folded back into one
semicolon list per brand column, and the status cell uses the labels the
parser understands.
"""

import io
import logging
from typing import Any, Dict, List

import openpyxl
from openpyxl.utils import get_column_letter

from .models import CatalogRow, ExistingData, text_key
from .schema import (
    ALIASES_TABLE,
    BRAND_COLUMNS,
    EXPORT_COLUMNS,
    LIST_DELIMITER,
    PART_CHILD_TABLES,
    PARTS_TABLE,
    REQUIRED_FIELDS,
    SHEET_NAMES,
    STATUS_LABELS,
    VEHICLE_APPLICATIONS_TABLE,
)

logger = logging.getLogger(__name__)

# Sheets written, in workbook order
EXPORT_TABLES = [PARTS_TABLE, VEHICLE_APPLICATIONS_TABLE, ALIASES_TABLE]

# Group titles for the grouped header layout
GROUP_TITLES = {
    PARTS_TABLE: "Part Information",
    VEHICLE_APPLICATIONS_TABLE: "Vehicle Application",
    ALIASES_TABLE: "Vehicle Alias",
}
BRAND_GROUP_TITLE = "Competitor Cross References"

INSTRUCTIONS = {
    "acr_sku": "Required. Must be unique across the catalog",
    "status": "Activo / Inactivo, or Eliminar to delete the row",
    "start_year": "Required. Four digit year, e.g. 2015",
    "end_year": "Required. Four digit year, not before the start year",
    "alias_type": "Required, e.g. make or model",
}
CHILD_SKU_INSTRUCTION = "Required. SKU of the part this row belongs to"
BRAND_INSTRUCTION = "Separate SKUs with semicolon; prefix with [DELETE] to remove one"
REQUIRED_INSTRUCTION = "Required"
DEFAULT_INSTRUCTION = "Optional free text, leave blank if unknown"


class WorkbookExporter:
    """Exports persisted catalog records to an Excel workbook."""

    def export(self, existing: ExistingData, with_instructions: bool = False) -> bytes:
        """Build the workbook.

        Args:
            existing: Persisted catalog records
            with_instructions: Write a group title row and an instructions
                row around the header row instead of a single header row

        Returns:
            The workbook as .xlsx bytes
        """
        wb = openpyxl.Workbook()
        wb.remove(wb.active)

        brand_lists = self._brand_lists(existing)
        for table in EXPORT_TABLES:
            ws = wb.create_sheet(SHEET_NAMES[table])
            rows = self._sorted_rows(table, existing)
            self._write_sheet(ws, table, rows, brand_lists, with_instructions)
            logger.debug(f"Exported {len(rows)} row(s) to sheet '{ws.title}'")

        buffer = io.BytesIO()
        wb.save(buffer)
        logger.info(f"Exported catalog: {existing.counts()}")
        return buffer.getvalue()

    def _write_sheet(
        self,
        ws,
        table: str,
        rows: List[CatalogRow],
        brand_lists: Dict[str, Dict[str, str]],
        with_instructions: bool,
    ) -> None:
        columns = EXPORT_COLUMNS[table]
        header_row = 1
        if with_instructions:
            header_row = 2
            for col_idx, (name, _, hidden) in enumerate(columns, start=1):
                if hidden:
                    continue
                title = BRAND_GROUP_TITLE if name in BRAND_COLUMNS else GROUP_TITLES[table]
                ws.cell(row=1, column=col_idx, value=title)
                ws.cell(row=3, column=col_idx, value=self._instruction(table, name))

        for col_idx, (_, header, hidden) in enumerate(columns, start=1):
            ws.cell(row=header_row, column=col_idx, value=header)
            if hidden:
                ws.column_dimensions[get_column_letter(col_idx)].hidden = True

        first_data_row = header_row + (2 if with_instructions else 1)
        for row_idx, row in enumerate(rows, start=first_data_row):
            for col_idx, (name, _, _) in enumerate(columns, start=1):
                ws.cell(row=row_idx, column=col_idx, value=self._cell_value(row, name, brand_lists))

    @staticmethod
    def _instruction(table: str, name: str) -> str:
        if name in BRAND_COLUMNS:
            return BRAND_INSTRUCTION
        if name == "acr_sku" and table in PART_CHILD_TABLES:
            return CHILD_SKU_INSTRUCTION
        if name in INSTRUCTIONS:
            return INSTRUCTIONS[name]
        if name in REQUIRED_FIELDS[table]:
            return REQUIRED_INSTRUCTION
        return DEFAULT_INSTRUCTION

    @staticmethod
    def _cell_value(row: CatalogRow, name: str, brand_lists: Dict[str, Dict[str, str]]) -> Any:
        if name == "status":
            return STATUS_LABELS.get(row.workflow_status, row.workflow_status)
        if name in BRAND_COLUMNS:
            return brand_lists.get(row.identity_id, {}).get(name)
        return getattr(row, name)

    @staticmethod
    def _brand_lists(existing: ExistingData) -> Dict[str, Dict[str, str]]:
        """part id -> brand column -> "SKU1; SKU2" from cross references."""
        columns_by_brand = {text_key(brand): column for column, brand in BRAND_COLUMNS.items()}
        members: Dict[str, Dict[str, List[str]]] = {}
        skipped = 0
        for ref in existing.cross_references.values():
            column = columns_by_brand.get(text_key(ref.competitor_brand))
            if column is None or not ref.competitor_sku:
                skipped += 1
                continue
            members.setdefault(ref.part_id, {}).setdefault(column, []).append(ref.competitor_sku)
        if skipped:
            logger.debug(f"{skipped} cross reference(s) have no brand column and were not exported")

        return {
            part_id: {
                column: f"{LIST_DELIMITER} ".join(sorted(skus, key=text_key))
                for column, skus in by_column.items()
            }
            for part_id, by_column in members.items()
        }

    @staticmethod
    def _sorted_rows(table: str, existing: ExistingData) -> List[CatalogRow]:
        rows = list(existing.records(table).values())
        if table == PARTS_TABLE:
            return sorted(rows, key=lambda r: text_key(r.acr_sku))
        if table == VEHICLE_APPLICATIONS_TABLE:
            return sorted(rows, key=lambda r: (
                text_key(r.acr_sku), text_key(r.make), text_key(r.model), text_key(r.start_year),
            ))
        return sorted(rows, key=lambda r: (text_key(r.alias), text_key(r.canonical_name)))
