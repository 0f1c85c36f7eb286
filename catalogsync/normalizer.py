from typing import List, Dict, Any, Optional, Tuple
import re
import unicodedata
from datetime import date, datetime, time

from .schema import (
    COLUMN_MAPPINGS,
    DELETE_MARKERS,
    STATUS_VALUES,
    LIST_DELIMITER,
    LIST_DELETE_PREFIX,
)


def normalize_header(text: Any) -> str:
    """Normalize header or sheet title text for lookup.

    Lowercases, folds accents, strips, and collapses runs of whitespace,
    underscores and hyphens into a single underscore. A leading underscore
    is kept so hidden identity headers (``_id``) stay distinct.

    Args:
        text: Raw header cell value

    Returns:
        Normalized header, or an empty string for blank headers
    """
    if text is None:
        return ""
    text = unicodedata.normalize("NFKD", str(text))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    return re.sub(r'[\s_\-]+', '_', text.lower().strip())


def normalize_sheet_title(text: Any) -> str:
    """Normalize a sheet title; same folding as headers but space separated."""
    return normalize_header(text).replace("_", " ").strip()


def normalize_value(value: Any) -> Optional[str]:
    """Canonical comparison form of a cell or database value.

    None and empty strings are equivalent, strings have whitespace collapsed,
    and integral numbers compare equal to their text form (2020, 2020.0 and
    "2020" all become "2020").
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return str(value)
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    text = ' '.join(str(value).split())
    if not text:
        return None
    # Integral text compares as a number; leading zeros are significant
    match = re.fullmatch(r'(-?(?:0|[1-9]\d*))(?:\.0+)?', text)
    if match:
        return match.group(1)
    return text


def parse_status(value: Any) -> Tuple[Optional[str], bool]:
    """Interpret a Status cell.

    Returns:
        Tuple of (workflow status or None, is delete marker)
    """
    key = normalize_sheet_title(value)
    if not key:
        return None, False
    if key in DELETE_MARKERS:
        return None, True
    return STATUS_VALUES.get(key), False


def is_delete_marker(value: Any) -> bool:
    """True when a cell value asks for the row to be deleted."""
    return normalize_sheet_title(value) in DELETE_MARKERS


def split_list_cell(value: Any) -> List[Tuple[str, bool]]:
    """Split a brand cross-reference cell into (token, marked_for_delete) pairs.

    Tokens are separated by semicolons. Cells without any semicolon but with
    inner whitespace are treated as legacy space-separated lists. Tokens are
    de-duplicated in order of first appearance; a deletion mark wins over a
    plain mention of the same token.
    """
    if value is None:
        return []
    text = str(value).strip()
    if not text:
        return []

    if LIST_DELIMITER in text:
        raw_tokens = text.split(LIST_DELIMITER)
    else:
        raw_tokens = _split_legacy(text)

    tokens: Dict[str, bool] = {}
    for raw in raw_tokens:
        raw = raw.strip()
        marked = False
        if raw.upper().startswith(LIST_DELETE_PREFIX):
            marked = True
            raw = raw[len(LIST_DELETE_PREFIX):].strip()
        if not raw:
            continue
        token = ' '.join(raw.split())
        tokens[token] = tokens.get(token, False) or marked
    return list(tokens.items())


def _split_legacy(text: str) -> List[str]:
    # "[DELETE] ABC" must stay a single token
    pieces = []
    pending_prefix = False
    for piece in text.split():
        if piece.upper() == LIST_DELETE_PREFIX:
            pending_prefix = True
            continue
        pieces.append(f"{LIST_DELETE_PREFIX}{piece}" if pending_prefix else piece)
        pending_prefix = False
    return pieces


class CatalogNormalizer:
    """Maps workbook column headers to row fields for each catalog sheet."""

    def __init__(self):
        # variation -> field, per table
        self._variation_to_field: Dict[str, Dict[str, str]] = {}
        for table, mappings in COLUMN_MAPPINGS.items():
            lookup = {}
            for field_name, variations in mappings.items():
                for variation in variations:
                    lookup[normalize_header(variation)] = field_name
            self._variation_to_field[table] = lookup

    def known_headers(self, table: str) -> List[str]:
        """All normalized header variations accepted on a sheet."""
        return sorted(self._variation_to_field[table])

    def normalize_column_name(self, column_name: Any, table: str) -> Optional[str]:
        """Resolve a header to its field on the given sheet.

        Args:
            column_name: The header text as it appears in the workbook
            table: Table the sheet feeds

        Returns:
            Field name if the header is recognized, None otherwise
        """
        key = normalize_header(column_name)
        if not key:
            return None
        return self._variation_to_field[table].get(key)

    def map_headers(self, headers: List[Any], table: str) -> Tuple[Dict[int, str], List[str], List[str]]:
        """Map a header row to fields.

        Args:
            headers: Header cell values in column order
            table: Table the sheet feeds

        Returns:
            Tuple of (column index -> field, unmapped header texts,
            fields claimed by more than one column)
        """
        mapping: Dict[int, str] = {}
        unmapped: List[str] = []
        duplicates: List[str] = []
        seen: Dict[str, int] = {}

        for index, header in enumerate(headers):
            if header is None or not str(header).strip():
                continue
            field_name = self.normalize_column_name(header, table)
            if field_name is None:
                unmapped.append(str(header))
                continue
            if field_name in seen:
                duplicates.append(field_name)
                continue
            seen[field_name] = index
            mapping[index] = field_name

        return mapping, unmapped, duplicates
