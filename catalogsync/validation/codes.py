"""Validation issue codes and result types."""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class Severity(Enum):
    ERROR = "error"      # blocks the import
    WARNING = "warning"  # shown for confirmation only


class ValidationCode(Enum):
    """Stable machine-readable issue codes."""
    # Blocking errors
    E1_MISSING_HIDDEN_COLUMNS = "E1_MISSING_HIDDEN_COLUMNS"
    E2_DUPLICATE_ACR_SKU = "E2_DUPLICATE_ACR_SKU"
    E3_EMPTY_REQUIRED_FIELD = "E3_EMPTY_REQUIRED_FIELD"
    E4_INVALID_UUID_FORMAT = "E4_INVALID_UUID_FORMAT"
    E5_ORPHANED_FOREIGN_KEY = "E5_ORPHANED_FOREIGN_KEY"
    E6_INVALID_YEAR_RANGE = "E6_INVALID_YEAR_RANGE"
    E7_STRING_EXCEEDS_MAX_LENGTH = "E7_STRING_EXCEEDS_MAX_LENGTH"
    E8_YEAR_OUT_OF_RANGE = "E8_YEAR_OUT_OF_RANGE"
    E9_INVALID_NUMBER_FORMAT = "E9_INVALID_NUMBER_FORMAT"
    E10_NO_DATA = "E10_NO_DATA"
    E19_UUID_NOT_IN_DATABASE = "E19_UUID_NOT_IN_DATABASE"
    E21_NATURAL_KEY_CONFLICT = "E21_NATURAL_KEY_CONFLICT"
    E22_PARENT_BEING_DELETED = "E22_PARENT_BEING_DELETED"
    E23_DUPLICATE_IDENTITY = "E23_DUPLICATE_IDENTITY"
    E24_INVALID_STATUS = "E24_INVALID_STATUS"
    E25_DUPLICATE_ALIAS = "E25_DUPLICATE_ALIAS"

    # Warnings
    W1_ACR_SKU_CHANGED = "W1_ACR_SKU_CHANGED"
    W2_YEAR_RANGE_NARROWED = "W2_YEAR_RANGE_NARROWED"
    W3_PART_TYPE_CHANGED = "W3_PART_TYPE_CHANGED"
    W4_POSITION_TYPE_CHANGED = "W4_POSITION_TYPE_CHANGED"
    W5_PART_DELETED = "W5_PART_DELETED"
    W6_VEHICLE_APPLICATION_DELETED = "W6_VEHICLE_APPLICATION_DELETED"
    W7_SPECIFICATIONS_SHORTENED = "W7_SPECIFICATIONS_SHORTENED"
    W8_VEHICLE_MAKE_CHANGED = "W8_VEHICLE_MAKE_CHANGED"
    W9_VEHICLE_MODEL_CHANGED = "W9_VEHICLE_MODEL_CHANGED"
    W10_CROSS_REFERENCE_BRAND_CHANGED = "W10_CROSS_REFERENCE_BRAND_CHANGED"
    W11_DELETE_WITHOUT_IDENTITY = "W11_DELETE_WITHOUT_IDENTITY"
    W12_PARENT_SKU_MISMATCH = "W12_PARENT_SKU_MISMATCH"
    W13_DUPLICATE_VEHICLE_APPLICATION = "W13_DUPLICATE_VEHICLE_APPLICATION"
    W14_DUPLICATE_CROSS_REFERENCE = "W14_DUPLICATE_CROSS_REFERENCE"
    W15_ALREADY_DELETED = "W15_ALREADY_DELETED"

    @property
    def severity(self) -> Severity:
        return Severity.ERROR if self.value.startswith("E") else Severity.WARNING


@dataclass
class ValidationIssue:
    """One rule violation, located to a sheet, row and (optionally) column."""
    code: ValidationCode
    message: str
    sheet: str
    row: Optional[int] = None
    column: Optional[str] = None
    value: Any = None
    expected: Optional[str] = None

    @property
    def severity(self) -> Severity:
        return self.code.severity

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "severity": self.severity.value,
            "message": self.message,
            "sheet": self.sheet,
            "row": self.row,
            "column": self.column,
            "value": self.value,
            "expected": self.expected,
        }


@dataclass
class ValidationResult:
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors

    def add(self, issue: ValidationIssue) -> None:
        if issue.severity is Severity.ERROR:
            self.errors.append(issue)
        else:
            self.warnings.append(issue)

    def codes(self) -> List[str]:
        return [i.code.value for i in self.errors + self.warnings]

    def summary(self) -> Dict[str, Any]:
        """Counts of errors and warnings, overall and per sheet."""
        by_sheet: Dict[str, Dict[str, int]] = defaultdict(lambda: {"errors": 0, "warnings": 0})
        for issue in self.errors:
            by_sheet[issue.sheet]["errors"] += 1
        for issue in self.warnings:
            by_sheet[issue.sheet]["warnings"] += 1
        return {
            "total_errors": len(self.errors),
            "total_warnings": len(self.warnings),
            "by_sheet": dict(by_sheet),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [i.to_dict() for i in self.errors],
            "warnings": [i.to_dict() for i in self.warnings],
            "summary": self.summary(),
        }
