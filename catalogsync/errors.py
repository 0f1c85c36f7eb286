"""
Error taxonomy for the reconciliation pipeline.

Components raise the exceptions below; ImportPipeline turns them into
PipelineError values on its result objects so callers can branch on
ErrorKind instead of parsing messages.

- Parse errors: malformed workbook, missing sheet, undetectable header layout
- Validation failures: coded issues (only raised by the pipeline's execute)
- Execution errors: retryable or fatal failures of the atomic write
- Import record errors: data committed but the rollback record was not saved
- Rollback errors: not found, baseline, sequential order, conflicts, restore
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Any, Dict, List, Optional


class ErrorKind(Enum):
    """Machine-readable category of a pipeline failure."""
    PARSE = auto()
    VALIDATION = auto()
    DATASTORE = auto()
    EXECUTION = auto()
    IMPORT_RECORD = auto()
    ROLLBACK_NOT_FOUND = auto()
    ROLLBACK_BASELINE = auto()
    ROLLBACK_SEQUENTIAL = auto()
    ROLLBACK_CONFLICT = auto()
    ROLLBACK_EXECUTION = auto()


class CatalogSyncError(Exception):
    """Base class for all pipeline errors."""

    kind = ErrorKind.EXECUTION
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


# =============================================================================
# PARSING
# =============================================================================

class ParseError(CatalogSyncError):
    """The workbook cannot be read; no partial result exists."""

    kind = ErrorKind.PARSE

    def __init__(self, message: str, sheet: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if sheet is not None:
            details.setdefault("sheet", sheet)
        super().__init__(message, details)
        self.sheet = sheet


class MissingSheetError(ParseError):
    """A mandatory sheet is absent."""


class HeaderLayoutError(ParseError):
    """None of the supported header layouts matches a sheet's top rows."""


# =============================================================================
# VALIDATION
# =============================================================================

class ValidationFailedError(CatalogSyncError):
    """Raised by the pipeline when blocking validation errors prevent a write."""

    kind = ErrorKind.VALIDATION

    def __init__(self, errors: List[Any], warnings: Optional[List[Any]] = None):
        super().__init__(
            f"Workbook has {len(errors)} validation error(s); nothing was written",
            {"error_count": len(errors)},
        )
        self.errors = errors
        self.warnings = warnings or []


# =============================================================================
# DATASTORE / EXECUTION
# =============================================================================

class DatastoreError(CatalogSyncError):
    """A datastore call failed. ``retryable`` marks transient failures."""

    kind = ErrorKind.DATASTORE

    def __init__(self, message: str, retryable: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.retryable = retryable


class ImportExecutionError(CatalogSyncError):
    """The import did not commit. The datastore is unchanged."""

    kind = ErrorKind.EXECUTION

    def __init__(self, message: str, retryable: bool = False, attempts: int = 0,
                 stage: str = "write", details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        details.setdefault("stage", stage)
        details.setdefault("attempts", attempts)
        super().__init__(message, details)
        self.retryable = retryable
        self.attempts = attempts
        self.stage = stage


class ImportRecordError(CatalogSyncError):
    """Data was committed but the import record could not be saved.

    The import cannot be rolled back. ``counts`` holds what was written.
    """

    kind = ErrorKind.IMPORT_RECORD

    def __init__(self, message: str, counts: Dict[str, int],
                 summary: Optional[Dict[str, int]] = None):
        super().__init__(message, {"counts": counts, "summary": summary or {}})
        self.counts = counts
        self.summary = summary or {}


# =============================================================================
# ROLLBACK
# =============================================================================

@dataclass
class RollbackConflict:
    """A row edited by a person after the import being undone."""
    table: str
    record_id: str
    label: Optional[str]
    modified_at: Optional[datetime]
    modified_by: Optional[str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "record_id": self.record_id,
            "label": self.label,
            "modified_at": self.modified_at.isoformat() if self.modified_at else None,
            "modified_by": self.modified_by,
        }


class RollbackError(CatalogSyncError):
    """Base class for rollback failures. The datastore is unchanged."""

    kind = ErrorKind.ROLLBACK_EXECUTION


class ImportNotFoundError(RollbackError):
    kind = ErrorKind.ROLLBACK_NOT_FOUND

    def __init__(self, import_id: str):
        super().__init__(f"Import {import_id} not found", {"import_id": import_id})
        self.import_id = import_id


class BaselineRollbackError(RollbackError):
    kind = ErrorKind.ROLLBACK_BASELINE

    def __init__(self, import_id: str):
        super().__init__(
            f"Import {import_id} is the baseline snapshot and cannot be rolled back",
            {"import_id": import_id},
        )
        self.import_id = import_id


class SequentialRollbackError(RollbackError):
    """Only the newest active import may be rolled back."""

    kind = ErrorKind.ROLLBACK_SEQUENTIAL

    def __init__(self, newest_import_id: str, requested_import_id: str):
        super().__init__(
            f"Imports must be rolled back newest first: roll back "
            f"{newest_import_id} before {requested_import_id}",
            {
                "newest_import_id": newest_import_id,
                "requested_import_id": requested_import_id,
            },
        )
        self.newest_import_id = newest_import_id
        self.requested_import_id = requested_import_id


class RollbackConflictError(RollbackError):
    """Rows were edited manually after the import; rollback would discard them."""

    kind = ErrorKind.ROLLBACK_CONFLICT

    def __init__(self, import_id: str, conflicts: List[RollbackConflict]):
        super().__init__(
            f"Cannot roll back import {import_id}: {len(conflicts)} record(s) "
            f"were modified manually after the import",
            {
                "import_id": import_id,
                "conflict_count": len(conflicts),
                "conflicts": [c.to_dict() for c in conflicts],
            },
        )
        self.import_id = import_id
        self.conflicts = conflicts


class RollbackExecutionError(RollbackError):
    kind = ErrorKind.ROLLBACK_EXECUTION

    def __init__(self, message: str, retryable: bool = False,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)
        self.retryable = retryable


# =============================================================================
# RESULT VALUE
# =============================================================================

@dataclass
class PipelineError:
    """Error value carried by pipeline results."""
    kind: ErrorKind
    message: str
    retryable: bool = False
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: CatalogSyncError) -> "PipelineError":
        return cls(
            kind=exc.kind,
            message=exc.message,
            retryable=exc.retryable,
            details=dict(exc.details),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }
