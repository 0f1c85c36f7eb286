"""
Import executor: applies a computed diff to the datastore.

Flow:
1. Capture a snapshot of every catalog table (read only, before any write)
2. Shape the diff into per-table add/update/delete payloads, assigning new
   identities to added rows and resolving children of new parts
3. Submit the payload as one atomic server-side transaction, retrying
   transient failures with exponential backoff
4. Store the import record holding the snapshot, then prune old records

A failure in steps 1-3 leaves the datastore untouched. A failure in step 4
means the data is committed but cannot be rolled back, which is reported
as ImportRecordError.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
from uuid import uuid4

from ..config import Settings
from ..diff.workbook_diff import DiffEntry, DiffResult
from ..errors import DatastoreError, ImportExecutionError, ImportRecordError
from ..models import ParsedWorkbook, sku_key
from ..schema import CATALOG_TABLES, FIELD_DEFAULTS, PART_CHILD_TABLES, PARTS_TABLE
from ..validation.engine import parse_year
from .datastore import DatabaseClient, ImportRecord, ImportSummary, Snapshot
from .retry import RetryError, is_transient_error, retry_with_backoff

logger = logging.getLogger(__name__)

YEAR_COLUMNS = ("start_year", "end_year")


@dataclass
class ImportMetadata:
    file_name: Optional[str] = None
    file_size: int = 0
    imported_by: Optional[str] = None


@dataclass
class TablePayload:
    adds: List[Dict[str, Any]] = field(default_factory=list)
    updates: List[Dict[str, Any]] = field(default_factory=list)
    deletes: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"adds": self.adds, "updates": self.updates, "deletes": self.deletes}


@dataclass
class ImportPayload:
    """Everything the atomic import function writes, keyed by identity."""
    tables: Dict[str, TablePayload]
    actor: str

    def summary(self) -> ImportSummary:
        return ImportSummary(
            adds=sum(len(t.adds) for t in self.tables.values()),
            updates=sum(len(t.updates) for t in self.tables.values()),
            deletes=sum(len(t.deletes) for t in self.tables.values()),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"actor": self.actor}
        for table in CATALOG_TABLES:
            data[table] = self.tables[table].to_dict()
        return data


@dataclass
class ImportResult:
    import_id: str
    summary: ImportSummary
    duration_ms: int
    counts: Dict[str, int]
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "import_id": self.import_id,
            "summary": self.summary.to_dict(),
            "duration_ms": self.duration_ms,
            "counts": self.counts,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class ImportExecutor:
    """Executes a diff as a single atomic import and records it for rollback."""

    def __init__(
        self,
        db: DatabaseClient,
        settings: Optional[Settings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            db: Datastore client
            settings: Retry and retention settings (defaults to Settings())
            sleep: Wait function used between retries
        """
        self.db = db
        self.settings = settings or Settings()
        self._sleep = sleep

    def execute(
        self,
        parsed: ParsedWorkbook,
        diff: DiffResult,
        metadata: Optional[ImportMetadata] = None,
    ) -> ImportResult:
        """
        Apply a diff to the datastore.

        Args:
            parsed: The parsed workbook the diff was computed from
            diff: Output of DiffEngine.diff()
            metadata: File name, size and operator recorded with the import

        Returns:
            ImportResult with the new import id, summary and timing

        Raises:
            ImportExecutionError: Nothing was written (unresolved rows,
                snapshot failure, or the atomic write failed)
            ImportRecordError: Data was written but the import record could
                not be stored
        """
        started = time.monotonic()
        metadata = metadata or ImportMetadata(
            file_name=parsed.file_name, file_size=parsed.file_size,
        )

        unresolved = diff.unresolved
        if unresolved:
            raise ImportExecutionError(
                f"{len(unresolved)} row(s) could not be resolved; nothing was written",
                stage="payload",
                details={"unresolved": [u.to_dict() for u in unresolved]},
            )

        # ========================================================================
        # STEP 1: Snapshot
        # ========================================================================
        snapshot = self.capture_snapshot()

        # ========================================================================
        # STEP 2: Payload
        # ========================================================================
        payload = self.build_payload(diff)
        summary = payload.summary()

        # ========================================================================
        # STEP 3: Atomic write with retry
        # ========================================================================
        payload_data = payload.to_dict()
        try:
            counts = retry_with_backoff(
                lambda: self.db.execute_atomic_import(payload_data),
                is_retryable=is_transient_error,
                max_attempts=self.settings.max_attempts,
                base_delay=self.settings.retry_base_delay,
                max_delay=self.settings.retry_max_delay,
                sleep=self._sleep,
                description="execute_atomic_import",
            )
        except RetryError as e:
            logger.error(f"Import failed; no changes were committed: {e.last_error}", exc_info=True)
            raise ImportExecutionError(
                f"Import failed after {e.attempts} attempt(s): {e.last_error}",
                retryable=e.exhausted,
                attempts=e.attempts,
                stage="write",
            ) from e.last_error

        logger.info(
            f"Import committed: {summary.adds} adds, {summary.updates} updates, "
            f"{summary.deletes} deletes"
        )

        # ========================================================================
        # STEP 4: Import record (outside the transaction)
        # ========================================================================
        record = ImportRecord(
            file_name=metadata.file_name,
            file_size=metadata.file_size,
            rows_imported=parsed.total_rows,
            summary=summary,
            snapshot=snapshot,
            imported_by=metadata.imported_by,
        )
        try:
            stored = self.db.insert_import_record(record.to_dict())
        except DatastoreError as e:
            logger.error(
                "Import committed but its import record could not be saved; "
                "this import cannot be rolled back",
                exc_info=True,
            )
            raise ImportRecordError(
                f"Changes were saved, but the rollback record could not be stored: {e}",
                counts=dict(counts or {}),
                summary=summary.to_dict(),
            ) from e

        stored_record = ImportRecord.from_dict(stored)
        self._prune()

        duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(f"Import {stored_record.id} recorded in {duration_ms} ms")
        return ImportResult(
            import_id=stored_record.id,
            summary=summary,
            duration_ms=duration_ms,
            counts=dict(counts or {}),
            created_at=stored_record.created_at,
        )

    def capture_snapshot(self) -> Snapshot:
        """Read every catalog table.

        The snapshot time comes from the datastore clock and is read first,
        so any row stamped after it may differ from the snapshot.

        Raises:
            ImportExecutionError: If the read fails (nothing has been written)
        """
        try:
            taken_at = self.db.current_timestamp()
            tables = self.db.fetch_current_records(list(CATALOG_TABLES))
        except DatastoreError as e:
            logger.error(f"Snapshot capture failed: {e}", exc_info=True)
            raise ImportExecutionError(
                f"Could not capture the pre-import snapshot: {e}",
                retryable=e.retryable,
                stage="snapshot",
            ) from e
        snapshot = Snapshot(
            tables={table: list(tables.get(table, [])) for table in CATALOG_TABLES},
            created_at=taken_at,
        )
        logger.info(f"Captured snapshot: {snapshot.counts()}")
        return snapshot

    def build_payload(self, diff: DiffResult) -> ImportPayload:
        """
        Translate a diff into per-table payloads.

        Added rows get a new identity here, once, so a retried submission
        writes the same rows. Children of parts added by the same upload are
        pointed at the new part's identity through its SKU.

        Raises:
            ImportExecutionError: If a child row's new parent is not among the
                added parts
        """
        actor = self.settings.import_actor
        tables = {table: TablePayload() for table in CATALOG_TABLES}
        new_part_ids: Dict[str, str] = {}

        for table in CATALOG_TABLES:
            sheet = diff.sheet(table)
            out = tables[table]

            for entry in sheet.adds:
                row = self._payload_row(entry, new_part_ids, actor)
                row["id"] = str(uuid4())
                for column, default in FIELD_DEFAULTS.get(table, {}).items():
                    if row.get(column) in (None, ""):
                        row[column] = default
                if table == PARTS_TABLE:
                    new_part_ids[sku_key(entry.after.acr_sku)] = row["id"]
                out.adds.append(row)

            for entry in sheet.updates:
                out.updates.append(self._payload_row(entry, new_part_ids, actor))

            for entry in sheet.deletes:
                if entry.identity_id not in out.deletes:
                    out.deletes.append(entry.identity_id)

        return ImportPayload(tables=tables, actor=actor)

    def _payload_row(self, entry: DiffEntry, new_part_ids: Dict[str, str], actor: str) -> Dict[str, Any]:
        row = entry.after.to_db()
        row["updated_by"] = actor
        for column in YEAR_COLUMNS:
            if column in row:
                row[column] = parse_year(row[column])
        if entry.table not in PART_CHILD_TABLES:
            return row

        parent_column = "acr_part_id" if "acr_part_id" in row else "part_id"
        if entry.pending_parent_sku is not None:
            parent_id = new_part_ids.get(sku_key(entry.pending_parent_sku))
            if parent_id is None:
                raise ImportExecutionError(
                    f"{entry.table} row {entry.row_number} references new part "
                    f"{entry.pending_parent_sku}, which is not being added",
                    stage="payload",
                )
            row[parent_column] = parent_id
        elif not row.get(parent_column):
            raise ImportExecutionError(
                f"{entry.table} row {entry.row_number} has no parent part",
                stage="payload",
            )
        return row

    def _prune(self) -> None:
        try:
            pruned = self.db.prune_import_records(self.settings.snapshot_retention)
        except DatastoreError as e:
            logger.warning(f"Could not prune old import records: {e}")
            return
        if pruned:
            logger.info(f"Pruned {pruned} import record(s) beyond the retention window")

    def capture_baseline(self, label: str = "baseline", imported_by: Optional[str] = None) -> ImportRecord:
        """
        Store the current catalog as the baseline snapshot.

        The baseline is exempt from pruning and from rollback. Earlier
        baselines are replaced.
        """
        snapshot = self.capture_snapshot()
        record = ImportRecord(
            file_name=label,
            file_size=0,
            rows_imported=0,
            summary=ImportSummary(),
            snapshot=snapshot,
            imported_by=imported_by,
            is_baseline=True,
        )
        stored = ImportRecord.from_dict(self.db.insert_import_record(record.to_dict()))

        for previous in self.db.list_import_records(include_baseline=True):
            if previous.get("is_baseline") and str(previous["id"]) != stored.id:
                self.db.delete_import_record(str(previous["id"]))
                logger.info(f"Replaced baseline snapshot {previous['id']}")

        logger.info(f"Baseline snapshot {stored.id} stored: {snapshot.counts()}")
        return stored
