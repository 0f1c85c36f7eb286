"""
Reconciliation pipeline: the public entry points.

    parse -> validate -> diff            (preview)
    parse -> validate -> diff -> execute (execute)
    rollback / list rollback candidates

Components raise CatalogSyncError subclasses; this module turns them into
result objects carrying a PipelineError so callers never need to catch.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from .config import Settings
from .diff.workbook_diff import DiffEngine, DiffResult
from .errors import (
    CatalogSyncError,
    DatastoreError,
    ImportExecutionError,
    PipelineError,
    ValidationFailedError,
)
from .ingest.datastore import DatabaseClient, ImportRecord, ImportSummary
from .ingest.executor import ImportExecutor, ImportMetadata
from .ingest.rollback import RollbackService
from .models import ExistingData
from .parser import WorkbookParser, WorkbookSource
from .schema import CATALOG_TABLES
from .validation import ValidationEngine, ValidationIssue, ValidationResult

logger = logging.getLogger(__name__)


@dataclass
class PreviewResult:
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)
    diff: Optional[DiffResult] = None
    error: Optional[PipelineError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "diff": self.diff.to_dict() if self.diff else None,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ExecuteResult:
    success: bool
    import_id: Optional[str] = None
    summary: Optional[ImportSummary] = None
    error: Optional[PipelineError] = None
    validation: Optional[ValidationResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "import_id": self.import_id,
            "summary": self.summary.to_dict() if self.summary else None,
            "error": self.error.to_dict() if self.error else None,
            "validation": self.validation.to_dict() if self.validation else None,
        }


@dataclass
class RollbackOutcome:
    success: bool
    restored_counts: Dict[str, int] = field(default_factory=dict)
    error: Optional[PipelineError] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "restored_counts": self.restored_counts,
            "error": self.error.to_dict() if self.error else None,
        }


class ImportPipeline:
    """
    Preview, execute and roll back catalog workbook imports.

    Example:
        >>> db = SupabaseClient()
        >>> pipeline = ImportPipeline(db, Settings.from_env(".env"))
        >>> preview = pipeline.preview(data, "catalog.xlsx")
        >>> if preview.valid:
        ...     result = pipeline.execute(data, "catalog.xlsx", imported_by="ana")
    """

    def __init__(
        self,
        db: DatabaseClient,
        settings: Optional[Settings] = None,
        parser: Optional[WorkbookParser] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.settings = settings or Settings()
        self.parser = parser or WorkbookParser()
        self.validator = ValidationEngine(self.settings)
        self.differ = DiffEngine()
        self.executor = ImportExecutor(db, self.settings, sleep=sleep)
        self.rollback_service = RollbackService(db, self.settings, sleep=sleep)

    def preview(self, buffer: WorkbookSource, file_name: Optional[str] = None) -> PreviewResult:
        """Parse, validate and diff a workbook without writing anything.

        The diff is computed even when validation reports errors so the
        caller can show what the upload would do.
        """
        try:
            parsed, validation, diff = self._analyze(buffer, file_name)
        except CatalogSyncError as e:
            logger.warning(f"Preview of {file_name} failed: {e}")
            return PreviewResult(valid=False, error=PipelineError.from_exception(e))

        return PreviewResult(
            valid=validation.valid and not diff.unresolved,
            errors=validation.errors,
            warnings=validation.warnings,
            diff=diff,
        )

    def execute(
        self,
        buffer: WorkbookSource,
        file_name: Optional[str] = None,
        imported_by: Optional[str] = None,
    ) -> ExecuteResult:
        """Re-run the full analysis against current data, then apply it.

        Nothing is written when validation reports errors or any row cannot
        be resolved.
        """
        try:
            parsed, validation, diff = self._analyze(buffer, file_name)
        except CatalogSyncError as e:
            logger.warning(f"Import of {file_name} failed before execution: {e}")
            return ExecuteResult(success=False, error=PipelineError.from_exception(e))

        if not validation.valid:
            error = ValidationFailedError(validation.errors, validation.warnings)
            logger.info(f"Import of {file_name} refused: {len(validation.errors)} validation error(s)")
            return ExecuteResult(
                success=False,
                error=PipelineError.from_exception(error),
                validation=validation,
            )

        metadata = ImportMetadata(
            file_name=parsed.file_name or file_name,
            file_size=parsed.file_size,
            imported_by=imported_by,
        )
        try:
            result = self.executor.execute(parsed, diff, metadata)
        except CatalogSyncError as e:
            return ExecuteResult(
                success=False,
                error=PipelineError.from_exception(e),
                validation=validation,
            )

        return ExecuteResult(
            success=True,
            import_id=result.import_id,
            summary=result.summary,
            validation=validation,
        )

    def rollback(self, import_id: str) -> RollbackOutcome:
        try:
            result = self.rollback_service.rollback(import_id)
        except CatalogSyncError as e:
            logger.warning(f"Rollback of {import_id} failed: {e}")
            return RollbackOutcome(success=False, error=PipelineError.from_exception(e))
        return RollbackOutcome(success=True, restored_counts=result.restored_counts)

    def list_rollback_candidates(self, limit: Optional[int] = None) -> List[ImportRecord]:
        """Import records that may be rolled back, newest first.

        Only the first one can actually be rolled back right now.
        """
        return self.rollback_service.list_available(limit)

    def _analyze(self, buffer: WorkbookSource, file_name: Optional[str]):
        parsed = self.parser.parse(buffer, file_name=file_name)
        existing = self._load_existing()
        validation = self.validator.validate(parsed, existing)
        diff = self.differ.diff(parsed, existing)

        summary = diff.summary()
        logger.info(
            f"{file_name}: {len(validation.errors)} error(s), {len(validation.warnings)} warning(s); "
            f"{summary['total_adds']} adds, {summary['total_updates']} updates, "
            f"{summary['total_deletes']} deletes, {summary['total_unchanged']} unchanged"
        )
        return parsed, validation, diff

    def _load_existing(self) -> ExistingData:
        try:
            tables = self.db.fetch_current_records(list(CATALOG_TABLES))
        except DatastoreError as e:
            logger.error(f"Could not load current catalog: {e}", exc_info=True)
            raise ImportExecutionError(
                f"Could not load the current catalog: {e}",
                retryable=e.retryable,
                stage="load",
            ) from e
        return ExistingData.from_tables(tables)
