"""Validation of uploaded catalog workbooks against persisted records."""

from .codes import Severity, ValidationCode, ValidationIssue, ValidationResult
from .engine import ValidationEngine, parse_year

__all__ = [
    "ValidationEngine",
    "ValidationResult",
    "ValidationIssue",
    "ValidationCode",
    "Severity",
    "parse_year",
]
