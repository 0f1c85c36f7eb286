"""
Unit tests for the import executor.

The in-memory datastore from conftest applies payloads all-or-nothing,
enforces foreign keys and SKU uniqueness, and stamps audit columns, so these
tests observe the same effects a Postgres transaction would have.
"""

import pytest

from catalogsync.config import Settings
from catalogsync.diff import DiffEngine
from catalogsync.errors import DatastoreError, ImportExecutionError, ImportRecordError
from catalogsync.ingest import ImportExecutor, ImportMetadata, ImportRecord
from catalogsync.models import ExistingData
from catalogsync.parser import WorkbookParser
from catalogsync.schema import (
    CROSS_REFERENCES_TABLE,
    PARTS_TABLE,
    VEHICLE_APPLICATIONS_TABLE,
)

from conftest import PART_HEADERS, VEHICLE_HEADERS, make_workbook, part_row, vehicle_row


def analyze(db, data: bytes, file_name: str = "catalog.xlsx"):
    parsed = WorkbookParser().parse(data, file_name)
    existing = ExistingData.from_tables(db.fetch_current_records())
    return parsed, DiffEngine().diff(parsed, existing)


def run_import(db, settings, data: bytes, sleeps=None):
    parsed, diff = analyze(db, data)
    executor = ImportExecutor(db, settings, sleep=(sleeps if sleeps is not None else []).append)
    return executor.execute(parsed, diff)


NEW_PART_WORKBOOK = dict(
    parts=[PART_HEADERS, part_row("ACR-NEW", national="X-1; X-2")],
    vehicles=[VEHICLE_HEADERS, vehicle_row("ACR-NEW", start=2005.0, end="2012")],
)


class TestPayload:
    def test_new_part_and_children_share_identity(self, db, settings):
        parsed, diff = analyze(db, make_workbook(**NEW_PART_WORKBOOK))
        payload = ImportExecutor(db, settings).build_payload(diff).to_dict()

        part = payload[PARTS_TABLE]["adds"][0]
        vehicle = payload[VEHICLE_APPLICATIONS_TABLE]["adds"][0]
        refs = payload[CROSS_REFERENCES_TABLE]["adds"]
        assert part["id"]
        assert vehicle["part_id"] == part["id"]
        assert {r["acr_part_id"] for r in refs} == {part["id"]}
        assert (vehicle["start_year"], vehicle["end_year"]) == (2005, 2012)
        assert payload["actor"] == "import"
        assert part["updated_by"] == "import"

    def test_updates_and_deletes_carry_identity(self, seeded_db, settings):
        p1, p2 = seeded_db.part_ids["ACR-100"], seeded_db.part_ids["ACR-200"]
        parsed, diff = analyze(seeded_db, make_workbook(parts=[
            PART_HEADERS,
            part_row("ACR-100", part_type="Disco", identity=p1, position="Delantera",
                     specifications="Maza delantera con ABS"),
            part_row("ACR-200", identity=p2, status="Eliminar"),
        ]))
        payload = ImportExecutor(seeded_db, settings).build_payload(diff)

        assert [u["id"] for u in payload.tables[PARTS_TABLE].updates] == [p1]
        assert payload.tables[PARTS_TABLE].deletes == [p2]
        # Cascaded children are listed explicitly
        assert len(payload.tables[VEHICLE_APPLICATIONS_TABLE].deletes) == 1
        assert payload.summary().to_dict() == {"adds": 0, "updates": 1, "deletes": 3}

    def test_unresolved_rows_block_execution(self, seeded_db, settings):
        parsed, diff = analyze(seeded_db, make_workbook(
            vehicles=[VEHICLE_HEADERS, vehicle_row("ACR-404")],
        ))
        with pytest.raises(ImportExecutionError) as exc:
            ImportExecutor(seeded_db, settings).execute(parsed, diff)
        assert exc.value.stage == "payload"
        assert seeded_db.calls.get("execute_atomic_import") is None


class TestExecute:
    def test_import_applies_and_records(self, db, settings):
        result = run_import(db, settings, make_workbook(**NEW_PART_WORKBOOK))

        part = db.rows(PARTS_TABLE)[0]
        assert part["acr_sku"] == "ACR-NEW"
        assert part["updated_by"] == "import"
        assert db.rows(VEHICLE_APPLICATIONS_TABLE)[0]["part_id"] == part["id"]
        assert sorted(r["competitor_sku"] for r in db.rows(CROSS_REFERENCES_TABLE)) == ["X-1", "X-2"]

        assert result.summary.to_dict() == {"adds": 4, "updates": 0, "deletes": 0}
        assert result.counts["parts_added"] == 1
        record = ImportRecord.from_dict(db.import_history[result.import_id])
        assert record.rows_imported == 2
        assert record.file_name == "catalog.xlsx"
        # Snapshot is the state before the import
        assert record.snapshot.counts()[PARTS_TABLE] == 0

    def test_reimport_is_idempotent(self, db, settings):
        data = make_workbook(**NEW_PART_WORKBOOK)
        run_import(db, settings, data)
        before = db.state()

        second = run_import(db, settings, data)
        assert second.summary.total == 0
        assert db.state() == before

    def test_blank_status_defaults_to_active(self, db, settings):
        data = make_workbook(parts=[PART_HEADERS, part_row("ACR-1", status=None)])
        parsed, diff = analyze(db, data)
        payload = ImportExecutor(db, settings).build_payload(diff)
        assert payload.tables[PARTS_TABLE].adds[0]["workflow_status"] == "ACTIVE"

        run_import(db, settings, data)
        assert db.rows(PARTS_TABLE)[0]["workflow_status"] == "ACTIVE"

        _, again = analyze(db, data)
        assert again.summary()["total_changes"] == 0
        assert again.unresolved == []

    def test_renamed_sku_is_reused_by_new_part(self, seeded_db, settings):
        p1 = seeded_db.part_ids["ACR-100"]
        result = run_import(seeded_db, settings, make_workbook(parts=[
            ["_id", "ACR_SKU", "Part_Type"],
            [p1, "ACR-100X", "Maza"],
            [None, "ACR-100", "Disco"],
        ]))

        assert result.summary.to_dict() == {"adds": 1, "updates": 1, "deletes": 0}
        by_sku = {r["acr_sku"]: r for r in seeded_db.rows(PARTS_TABLE)}
        assert by_sku["ACR-100X"]["id"] == p1
        assert by_sku["ACR-100"]["id"] != p1
        assert by_sku["ACR-100"]["part_type"] == "Disco"
        assert by_sku["ACR-100"]["workflow_status"] == "ACTIVE"

    def test_sku_swap(self, seeded_db, settings):
        p1, p2 = seeded_db.part_ids["ACR-100"], seeded_db.part_ids["ACR-200"]
        result = run_import(seeded_db, settings, make_workbook(parts=[
            ["_id", "ACR_SKU", "Part_Type"],
            [p1, "ACR-200", "Maza"],
            [p2, "ACR-100", "Balero"],
        ]))

        assert result.summary.updates == 2
        skus = {r["id"]: r["acr_sku"] for r in seeded_db.rows(PARTS_TABLE)}
        assert skus == {p1: "ACR-200", p2: "ACR-100"}

    def test_zero_change_import_is_still_recorded(self, seeded_db, settings):
        result = run_import(seeded_db, settings, make_workbook(
            parts=[["ACR_SKU", "Part_Type"], ["ACR-100", "Maza"]],
        ))
        assert result.summary.total == 0
        assert result.import_id in seeded_db.import_history

    def test_metadata_is_recorded(self, db, settings):
        parsed, diff = analyze(db, make_workbook(**NEW_PART_WORKBOOK))
        result = ImportExecutor(db, settings).execute(
            parsed, diff, ImportMetadata(file_name="upload.xlsx", file_size=42, imported_by="ana"),
        )
        stored = db.import_history[result.import_id]
        assert (stored["file_name"], stored["file_size_bytes"], stored["imported_by"]) == (
            "upload.xlsx", 42, "ana",
        )


class TestFailures:
    def test_transient_failures_are_retried(self, db, sleeps):
        settings = Settings(retry_base_delay=1.0, retry_max_delay=5.0)
        db.fail(
            "execute_atomic_import",
            DatastoreError("connection reset", retryable=True),
            DatastoreError("deadlock detected", retryable=True),
        )
        result = run_import(db, settings, make_workbook(**NEW_PART_WORKBOOK), sleeps)

        assert db.calls["execute_atomic_import"] == 3
        assert sleeps == [1.0, 2.0]
        assert len(db.rows(PARTS_TABLE)) == 1
        assert result.import_id in db.import_history

    def test_exhausted_retries(self, db, settings):
        db.fail("execute_atomic_import", *[DatastoreError("timeout", retryable=True)] * 3)
        with pytest.raises(ImportExecutionError) as exc:
            run_import(db, settings, make_workbook(**NEW_PART_WORKBOOK))

        assert exc.value.retryable
        assert exc.value.attempts == 3
        assert db.rows(PARTS_TABLE) == []
        assert db.import_history == {}

    def test_non_retryable_failure_is_not_retried(self, db, settings):
        db.fail("execute_atomic_import", DatastoreError("permission denied", retryable=False))
        with pytest.raises(ImportExecutionError) as exc:
            run_import(db, settings, make_workbook(**NEW_PART_WORKBOOK))

        assert not exc.value.retryable
        assert db.calls["execute_atomic_import"] == 1

    def test_failed_write_leaves_nothing_behind(self, seeded_db, settings):
        p2 = seeded_db.part_ids["ACR-200"]
        parsed, diff = analyze(seeded_db, make_workbook(
            parts=[PART_HEADERS, part_row("ACR-NEW")],
            vehicles=[VEHICLE_HEADERS, vehicle_row("ACR-200", model="KA")],
        ))
        # The parent disappears between preview and execution
        seeded_db.tables[PARTS_TABLE].pop(p2)
        seeded_db.tables[VEHICLE_APPLICATIONS_TABLE] = {
            k: v for k, v in seeded_db.tables[VEHICLE_APPLICATIONS_TABLE].items() if v["part_id"] != p2
        }
        seeded_db.tables[CROSS_REFERENCES_TABLE] = {
            k: v for k, v in seeded_db.tables[CROSS_REFERENCES_TABLE].items() if v["acr_part_id"] != p2
        }
        before = seeded_db.state()

        with pytest.raises(ImportExecutionError) as exc:
            ImportExecutor(seeded_db, settings).execute(parsed, diff)

        assert not exc.value.retryable
        assert seeded_db.state() == before
        assert seeded_db.import_history == {}

    def test_snapshot_failure(self, db, settings):
        parsed, diff = analyze(db, make_workbook(**NEW_PART_WORKBOOK))
        db.fail("fetch_current_records", DatastoreError("connection refused", retryable=True))
        with pytest.raises(ImportExecutionError) as exc:
            ImportExecutor(db, settings).execute(parsed, diff)

        assert exc.value.stage == "snapshot"
        assert exc.value.retryable
        assert db.calls.get("execute_atomic_import") is None

    def test_import_record_failure(self, db, settings):
        db.fail("insert_import_record", DatastoreError("disk full"))
        with pytest.raises(ImportRecordError) as exc:
            run_import(db, settings, make_workbook(**NEW_PART_WORKBOOK))

        # The data was committed even though it cannot be rolled back
        assert len(db.rows(PARTS_TABLE)) == 1
        assert exc.value.counts["parts_added"] == 1
        assert exc.value.summary["adds"] == 4


class TestRetention:
    def test_old_records_are_pruned(self, db, settings):
        ids = []
        for n in range(4):
            data = make_workbook(parts=[PART_HEADERS, part_row(f"ACR-{n}")])
            ids.append(run_import(db, settings, data).import_id)

        assert set(db.import_history) == set(ids[1:])

    def test_prune_failure_does_not_fail_the_import(self, db, settings):
        db.fail("prune_import_records", DatastoreError("timeout", retryable=True))
        result = run_import(db, settings, make_workbook(**NEW_PART_WORKBOOK))
        assert result.import_id in db.import_history

    def test_baseline_is_exempt_and_replaced(self, seeded_db, settings):
        executor = ImportExecutor(seeded_db, settings)
        first = executor.capture_baseline()
        second = executor.capture_baseline(label="after cleanup")

        for n in range(4):
            run_import(seeded_db, settings, make_workbook(parts=[PART_HEADERS, part_row(f"ACR-{n}")]))

        baselines = [r for r in seeded_db.import_history.values() if r["is_baseline"]]
        assert [b["id"] for b in baselines] == [second.id]
        assert first.id not in seeded_db.import_history
        assert second.snapshot.counts()[PARTS_TABLE] == 2
        assert len(seeded_db.import_history) == 4
