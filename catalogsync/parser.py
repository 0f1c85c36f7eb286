import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .adapters.excel_adapter import ExcelAdapter, SheetGrid, WorkbookSource
from .errors import MissingSheetError, ParseError
from .layout import classify_layout
from .models import ParsedSheet, ParsedWorkbook, ROW_TYPES, CatalogRow
from .normalizer import (
    CatalogNormalizer,
    is_delete_marker,
    normalize_sheet_title,
    parse_status,
)
from .schema import (
    BRAND_COLUMNS,
    CATALOG_TABLES,
    ID_FIELDS,
    MANDATORY_SHEETS,
    PARTS_TABLE,
    SHEET_NAMES,
    SHEET_NAME_VARIANTS,
)

logger = logging.getLogger(__name__)

# Rows inspected by the layout classifier
LAYOUT_SCAN_ROWS = 3

YEAR_FIELDS = {"start_year", "end_year"}


class WorkbookParser:
    """Reads a catalog workbook into typed rows per sheet."""

    def __init__(self, normalizer: Optional[CatalogNormalizer] = None):
        """Initialize the parser.

        Args:
            normalizer: Header mapper (defaults to CatalogNormalizer())
        """
        self.adapters = []
        self.normalizer = normalizer or CatalogNormalizer()
        self.register_adapter(ExcelAdapter())

    def register_adapter(self, adapter):
        """Register a workbook adapter.

        Args:
            adapter: Adapter instance with can_handle() and read() methods
        """
        self.adapters.append(adapter)

    def parse(self, source: WorkbookSource, file_name: Optional[str] = None) -> ParsedWorkbook:
        """Parse a workbook into typed rows.

        Args:
            source: Workbook bytes or path
            file_name: Original file name, used to pick an adapter and for
                the import record

        Returns:
            ParsedWorkbook with one ParsedSheet per catalog table. Optional
            sheets that are absent are empty.

        Raises:
            ParseError: If the file is unreadable, a mandatory sheet is
                missing, a header layout cannot be determined, or two columns
                map to the same field
        """
        if file_name is None and isinstance(source, (str, Path)):
            file_name = Path(source).name

        adapter = self._select_adapter(file_name)
        grids = adapter.read(source)
        located = self._locate_sheets(grids)

        sheets: Dict[str, ParsedSheet] = {}
        for table in CATALOG_TABLES:
            grid = located.get(table)
            if grid is None:
                if table in MANDATORY_SHEETS:
                    raise MissingSheetError(
                        f"Required sheet '{SHEET_NAMES[table]}' not found. "
                        f"Sheets in workbook: {', '.join(grids) or 'none'}",
                        sheet=SHEET_NAMES[table],
                    )
                sheets[table] = ParsedSheet(table=table)
                continue
            sheets[table] = self._parse_sheet(table, grid)

        if isinstance(source, (bytes, bytearray)):
            file_size = len(source)
        else:
            file_size = Path(source).stat().st_size

        return ParsedWorkbook(sheets=sheets, file_name=file_name, file_size=file_size)

    def _select_adapter(self, file_name: Optional[str]):
        if file_name is None:
            return self.adapters[0]
        for a in self.adapters:
            if a.can_handle(file_name):
                return a
        raise ParseError(f"Unsupported file type: {file_name}")

    def _locate_sheets(self, grids: Dict[str, SheetGrid]) -> Dict[str, SheetGrid]:
        located: Dict[str, SheetGrid] = {}
        for title, grid in grids.items():
            key = normalize_sheet_title(title)
            for table, variants in SHEET_NAME_VARIANTS.items():
                if key not in variants:
                    continue
                if table in located:
                    logger.warning(
                        f"Sheet '{title}' ignored: '{located[table].title}' "
                        f"already provides {SHEET_NAMES[table]}"
                    )
                else:
                    located[table] = grid
                break
        return located

    def _parse_sheet(self, table: str, grid: SheetGrid) -> ParsedSheet:
        if not any(v is not None and v != "" for row in grid.rows for v in row):
            logger.info(f"Sheet '{grid.title}' is empty")
            return ParsedSheet(table=table, title=grid.title)

        decision = classify_layout(
            grid.rows[:LAYOUT_SCAN_ROWS],
            self.normalizer.known_headers(table),
            sheet=grid.title,
        )
        headers = grid.rows[decision.header_row - 1]
        mapping, unmapped, duplicates = self.normalizer.map_headers(headers, table)
        if duplicates:
            raise ParseError(
                f"Sheet '{grid.title}' has more than one column for: "
                f"{', '.join(sorted(set(duplicates)))}",
                sheet=grid.title,
            )
        if unmapped:
            logger.debug(f"Sheet '{grid.title}': ignoring columns {unmapped}")

        columns = set(mapping.values())
        if "status" in columns and table == PARTS_TABLE:
            columns.add("workflow_status")

        rows: List[CatalogRow] = []
        for index in range(decision.first_data_row - 1, len(grid.rows)):
            row = self._build_row(table, grid.rows[index], mapping, row_number=index + 1)
            if row is not None:
                rows.append(row)

        logger.info(
            f"Parsed sheet '{grid.title}' ({decision.layout.name}): {len(rows)} rows"
        )
        return ParsedSheet(
            table=table,
            title=grid.title,
            rows=rows,
            columns=columns,
            hidden_columns={mapping[i] for i in grid.hidden_columns if i in mapping},
            layout=decision.layout,
        )

    def _build_row(
        self,
        table: str,
        cells: List[Any],
        mapping: Dict[int, str],
        row_number: int,
    ) -> Optional[CatalogRow]:
        """Build a typed row, or None when the row holds no data."""
        row_type = ROW_TYPES[table]
        kwargs: Dict[str, Any] = {"row_number": row_number}
        brand_skus: Dict[str, str] = {}
        populated = False

        for index, field_name in mapping.items():
            value = cells[index] if index < len(cells) else None
            # Blank cells are omitted entirely
            if value is None:
                continue

            if field_name not in ID_FIELDS and value != "":
                populated = True

            if field_name in ID_FIELDS:
                text = _as_text(value)
                kwargs[field_name] = text or None
            elif field_name == "status":
                workflow_status, delete = parse_status(value)
                if delete:
                    kwargs["action_marker"] = _as_text(value)
                elif table == PARTS_TABLE:
                    kwargs["workflow_status"] = workflow_status or _as_text(value)
            elif field_name == "action_marker":
                if is_delete_marker(value):
                    kwargs["action_marker"] = _as_text(value)
            elif field_name in BRAND_COLUMNS:
                brand_skus[field_name] = _as_text(value)
            elif field_name in YEAR_FIELDS:
                kwargs[field_name] = value
            else:
                kwargs[field_name] = _as_text(value)

        if not populated:
            return None
        if brand_skus:
            kwargs["brand_skus"] = brand_skus
        return row_type(**kwargs)


def _as_text(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    return str(value).strip()
