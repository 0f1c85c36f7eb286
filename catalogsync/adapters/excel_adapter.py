import io
import logging
import zipfile
from dataclasses import dataclass, field
from datetime import date, datetime, time
from pathlib import Path
from typing import Any, Dict, List, Set, Union

import openpyxl
from openpyxl.utils import column_index_from_string
from openpyxl.utils.exceptions import InvalidFileException

from ..errors import ParseError

logger = logging.getLogger(__name__)

WorkbookSource = Union[bytes, bytearray, str, Path]


@dataclass
class SheetGrid:
    """Coerced cell values of one worksheet.

    rows[0] is spreadsheet row 1. hidden_columns holds 0-based column indexes.
    """
    title: str
    rows: List[List[Any]] = field(default_factory=list)
    hidden_columns: Set[int] = field(default_factory=set)


def coerce_cell(cell) -> Any:
    """Value of a cell as the importer sees it.

    Hyperlinks resolve to their target, dates to ISO text, strings are
    stripped (a typed empty string stays ""), numbers and booleans pass
    through. Formula cells already hold their cached result because the
    workbook is opened with ``data_only=True``.
    """
    hyperlink = getattr(cell, "hyperlink", None)
    if hyperlink is not None:
        target = hyperlink.target or hyperlink.location
        if target:
            return target

    value = cell.value
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, (date, time)):
        return value.isoformat()
    if isinstance(value, str):
        return value.strip()
    return value


class ExcelAdapter:
    def can_handle(self, file_path):
        return Path(file_path).suffix.lower() in [".xlsx", ".xlsm"]

    def read(self, source: WorkbookSource) -> Dict[str, SheetGrid]:
        """Read every worksheet of an OOXML workbook.

        Args:
            source: Workbook bytes or a path to the file

        Returns:
            Mapping of sheet title -> SheetGrid, in workbook order

        Raises:
            ParseError: If the source is not a readable workbook
        """
        if isinstance(source, (bytes, bytearray)):
            if not source:
                raise ParseError("Workbook is empty")
            handle = io.BytesIO(source)
        else:
            handle = str(source)

        try:
            wb = openpyxl.load_workbook(handle, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as e:
            raise ParseError(f"File is not a readable Excel workbook: {e}") from e

        try:
            grids = {}
            for ws in wb.worksheets:
                grids[ws.title] = SheetGrid(
                    title=ws.title,
                    rows=[[coerce_cell(cell) for cell in row] for row in ws.iter_rows()],
                    hidden_columns=self._hidden_columns(ws),
                )
                logger.debug(f"Read sheet '{ws.title}': {len(grids[ws.title].rows)} rows")
            return grids
        finally:
            wb.close()

    @staticmethod
    def _hidden_columns(ws) -> Set[int]:
        hidden = set()
        for key, dim in ws.column_dimensions.items():
            if not dim.hidden:
                continue
            start = dim.min or column_index_from_string(key)
            end = dim.max or start
            hidden.update(range(start - 1, end))
        return hidden
