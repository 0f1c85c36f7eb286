"""Workbook diff module for reconciling uploads against persisted records."""

from .workbook_diff import (
    DiffEngine,
    DiffEntry,
    DiffOperation,
    DiffResult,
    DiffSource,
    SheetDiff,
    UnresolvedRow,
)

__all__ = [
    "DiffEngine",
    "DiffEntry",
    "DiffOperation",
    "DiffResult",
    "DiffSource",
    "SheetDiff",
    "UnresolvedRow",
]
