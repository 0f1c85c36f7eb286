"""
Rollback of a completed import from its stored snapshot.

Three safeguards run before anything is restored:
1. Sequential enforcement: only the newest active import can be undone
2. Conflict detection: rows edited by a person after the import block it
3. The restore itself is one atomic server-side call

The consumed import record is deleted afterwards. If that delete fails the
restore still stands; the failure is logged and reported on the result.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

from ..config import Settings
from ..errors import (
    BaselineRollbackError,
    DatastoreError,
    ImportNotFoundError,
    RollbackConflict,
    RollbackConflictError,
    RollbackExecutionError,
    SequentialRollbackError,
)
from ..schema import CATALOG_TABLES, PARTS_TABLE, ALIASES_TABLE
from .datastore import DatabaseClient, ImportRecord, parse_timestamp
from .retry import RetryError, is_transient_error, retry_with_backoff

logger = logging.getLogger(__name__)

# Column used to describe a conflicting row, per table
LABEL_COLUMNS = {
    PARTS_TABLE: "acr_sku",
    ALIASES_TABLE: "alias",
}


@dataclass
class RollbackResult:
    import_id: str
    restored_counts: Dict[str, int]
    duration_ms: int
    record_deleted: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "import_id": self.import_id,
            "restored_counts": self.restored_counts,
            "duration_ms": self.duration_ms,
            "record_deleted": self.record_deleted,
        }


class RollbackService:
    """Restores the catalog to the state captured before an import."""

    def __init__(
        self,
        db: DatabaseClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.db = db
        self.settings = settings or Settings()
        self._sleep = sleep

    def list_available(self, limit: Optional[int] = None) -> List[ImportRecord]:
        """Active import records within the retention window, newest first."""
        limit = limit or self.settings.snapshot_retention
        try:
            rows = self.db.list_import_records(limit=limit, include_baseline=False)
        except DatastoreError as e:
            raise RollbackExecutionError(
                f"Could not list import records: {e}", retryable=e.retryable,
            ) from e
        return [ImportRecord.from_dict(row) for row in rows if not row.get("is_baseline")]

    def rollback(self, import_id: str) -> RollbackResult:
        """
        Undo an import.

        Args:
            import_id: Id of the import record to roll back

        Returns:
            RollbackResult with the row counts restored per table

        Raises:
            ImportNotFoundError: No such import record
            BaselineRollbackError: The record is the exempt baseline
            SequentialRollbackError: A newer import must be rolled back first
            RollbackConflictError: Rows were edited manually after the import
            RollbackExecutionError: The restore failed; nothing was changed
        """
        started = time.monotonic()
        record = self._load_record(import_id)

        self._enforce_sequential(import_id)
        self._detect_conflicts(record)
        restored = self._restore(record)
        record_deleted = self._consume(import_id)

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Rolled back import {import_id} in {duration_ms} ms: {restored}")
        return RollbackResult(
            import_id=import_id,
            restored_counts=restored,
            duration_ms=duration_ms,
            record_deleted=record_deleted,
        )

    def _load_record(self, import_id: str) -> ImportRecord:
        try:
            row = self.db.get_import_record(import_id)
        except DatastoreError as e:
            raise RollbackExecutionError(
                f"Could not load import {import_id}: {e}", retryable=e.retryable,
            ) from e
        if row is None:
            raise ImportNotFoundError(import_id)
        record = ImportRecord.from_dict(row)
        if record.is_baseline:
            raise BaselineRollbackError(import_id)
        if record.snapshot is None:
            raise RollbackExecutionError(
                f"Import {import_id} has no snapshot data",
                details={"import_id": import_id},
            )
        return record

    def _enforce_sequential(self, import_id: str) -> None:
        """Only the newest active record may be rolled back."""
        active = self.list_available()
        if not active:
            raise ImportNotFoundError(import_id)
        newest = active[0]
        if newest.id != import_id:
            logger.warning(
                f"Rollback of {import_id} refused: newer import {newest.id} is still active"
            )
            raise SequentialRollbackError(newest.id, import_id)

    def _detect_conflicts(self, record: ImportRecord) -> None:
        """Block the rollback if a person edited any row after the snapshot.

        Edits made while the import was being written count as conflicts.
        """
        since = record.snapshot.created_at if record.snapshot else None
        if since is None:
            since = record.created_at
        if since is None:
            raise RollbackExecutionError(
                f"Import {record.id} has no snapshot time; cannot check for conflicts",
                details={"import_id": record.id},
            )

        conflicts: List[RollbackConflict] = []
        for table in CATALOG_TABLES:
            if table not in record.snapshot.tables:
                continue
            try:
                rows = self.db.find_modified_since(table, since)
            except DatastoreError as e:
                raise RollbackExecutionError(
                    f"Could not check {table} for conflicting edits: {e}",
                    retryable=e.retryable,
                ) from e
            for row in rows:
                actor = row.get("updated_by")
                if actor in self.settings.automation_actors:
                    continue
                conflicts.append(RollbackConflict(
                    table=table,
                    record_id=str(row.get("id")),
                    label=row.get(LABEL_COLUMNS.get(table, "id")),
                    modified_at=parse_timestamp(row.get("updated_at")),
                    modified_by=actor,
                ))

        if conflicts:
            logger.warning(
                f"Rollback of {record.id} blocked by {len(conflicts)} manual edit(s)"
            )
            raise RollbackConflictError(record.id, conflicts)

    def _restore(self, record: ImportRecord) -> Dict[str, int]:
        tables = {
            table: record.snapshot.tables.get(table, [])
            for table in CATALOG_TABLES
        }
        try:
            return retry_with_backoff(
                lambda: self.db.restore_snapshot(tables),
                is_retryable=is_transient_error,
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
                sleep=self._sleep,
                description="restore_snapshot",
            )
        except RetryError as e:
            logger.error(f"Restore of import {record.id} failed: {e.last_error}", exc_info=True)
            raise RollbackExecutionError(
                f"Restore failed after {e.attempts} attempt(s); no changes were made: "
                f"{e.last_error}",
                retryable=e.exhausted,
                details={"import_id": record.id, "attempts": e.attempts},
            ) from e.last_error

    def _consume(self, import_id: str) -> bool:
        try:
            self.db.delete_import_record(import_id)
        except DatastoreError as e:
            logger.error(
                f"Import {import_id} was rolled back but its record could not be "
                f"deleted; it must not be rolled back again: {e}",
                exc_info=True,
            )
            return False
        return True
