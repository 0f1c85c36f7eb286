"""Header layout detection for catalog worksheets.

Exported workbooks come in three shapes:

    SINGLE_HEADER               row 1 headers, data from row 2
    GROUPED_HEADER              row 1 group titles, row 2 headers, data from row 3
    GROUPED_WITH_INSTRUCTIONS   as above plus an instructions row 3, data from row 4

classify_layout() looks only at the top rows of a sheet and either picks one
of these or raises HeaderLayoutError. It never falls back to a default,
because a wrong guess shifts every data row.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

from .errors import HeaderLayoutError
from .normalizer import normalize_header
from .schema import INSTRUCTION_KEYWORDS

UUID_PATTERN = re.compile(
    r'^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$',
    re.IGNORECASE,
)

# A row of instructions is mostly prose
MIN_INSTRUCTION_WORDS = 4

# Keywords match as whole words or phrases
INSTRUCTION_PATTERN = re.compile(
    r"(?<!\w)(?:"
    + "|".join(re.escape(k) for k in sorted(INSTRUCTION_KEYWORDS, key=len, reverse=True))
    + r")(?!\w)"
)


class HeaderLayout(Enum):
    SINGLE_HEADER = 1
    GROUPED_HEADER = 2
    GROUPED_WITH_INSTRUCTIONS = 3

    @property
    def header_row(self) -> int:
        return 1 if self is HeaderLayout.SINGLE_HEADER else 2

    @property
    def first_data_row(self) -> int:
        return {
            HeaderLayout.SINGLE_HEADER: 2,
            HeaderLayout.GROUPED_HEADER: 3,
            HeaderLayout.GROUPED_WITH_INSTRUCTIONS: 4,
        }[self]


@dataclass
class LayoutDecision:
    layout: HeaderLayout
    header_matches: int
    reason: str

    @property
    def header_row(self) -> int:
        return self.layout.header_row

    @property
    def first_data_row(self) -> int:
        return self.layout.first_data_row


def _non_blank(row: Optional[Sequence[Any]]) -> List[Any]:
    if not row:
        return []
    return [v for v in row if v is not None and str(v).strip()]


def header_matches(row: Optional[Sequence[Any]], known_headers: Iterable[str]) -> int:
    """Number of cells in a row that are recognized column headers."""
    known = set(known_headers)
    return sum(1 for v in _non_blank(row) if normalize_header(v) in known)


def is_header_row(row: Optional[Sequence[Any]], known_headers: Iterable[str]) -> bool:
    """A header row is made mostly of recognized headers.

    Needs two matches, or one match when it is the only populated cell, and
    matches must be at least half of the populated cells.
    """
    cells = _non_blank(row)
    matches = header_matches(row, known_headers)
    if matches == 0:
        return False
    if matches < 2 and matches != len(cells):
        return False
    return matches * 2 >= len(cells)


def is_instruction_cell(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    text = value.strip().lower()
    if not text or UUID_PATTERN.match(text):
        return False
    if INSTRUCTION_PATTERN.search(text):
        return True
    return len(text.split()) >= MIN_INSTRUCTION_WORDS


def is_instruction_row(row: Optional[Sequence[Any]]) -> bool:
    """An instructions row is mostly prose and never carries identifiers."""
    cells = _non_blank(row)
    if not cells:
        return False
    if any(isinstance(v, str) and UUID_PATTERN.match(v.strip()) for v in cells):
        return False
    prose = sum(1 for v in cells if is_instruction_cell(v))
    return prose > 0 and prose * 2 >= len(cells)


def classify_layout(
    rows: Sequence[Sequence[Any]],
    known_headers: Iterable[str],
    sheet: Optional[str] = None,
) -> LayoutDecision:
    """Decide which header layout a sheet uses.

    Args:
        rows: The first rows of the sheet (at least three when available),
            each a sequence of cell values
        known_headers: Normalized header variations accepted on the sheet
        sheet: Sheet title, used in error messages

    Returns:
        LayoutDecision naming the layout

    Raises:
        HeaderLayoutError: If no layout matches or rows 1 and 2 are equally
            plausible header rows
    """
    known = set(known_headers)
    first = rows[0] if len(rows) > 0 else None
    second = rows[1] if len(rows) > 1 else None
    third = rows[2] if len(rows) > 2 else None

    first_is_header = is_header_row(first, known)
    second_is_header = is_header_row(second, known)
    first_matches = header_matches(first, known)
    second_matches = header_matches(second, known)
    where = f" in sheet '{sheet}'" if sheet else ""

    if first_is_header and second_is_header:
        if first_matches == second_matches:
            raise HeaderLayoutError(
                f"Ambiguous header layout{where}: rows 1 and 2 both look like column headers",
                sheet=sheet,
                details={"row_1_matches": first_matches, "row_2_matches": second_matches},
            )
        first_is_header = first_matches > second_matches
        second_is_header = not first_is_header

    if first_is_header:
        return LayoutDecision(
            HeaderLayout.SINGLE_HEADER, first_matches,
            f"row 1 has {first_matches} recognized headers",
        )

    if second_is_header:
        if is_instruction_row(third):
            return LayoutDecision(
                HeaderLayout.GROUPED_WITH_INSTRUCTIONS, second_matches,
                f"row 2 has {second_matches} recognized headers and row 3 holds instructions",
            )
        return LayoutDecision(
            HeaderLayout.GROUPED_HEADER, second_matches,
            f"row 2 has {second_matches} recognized headers",
        )

    raise HeaderLayoutError(
        f"Could not find a column header row{where}: neither row 1 nor row 2 "
        f"contains recognized column headers",
        sheet=sheet,
        details={"row_1_matches": first_matches, "row_2_matches": second_matches},
    )
