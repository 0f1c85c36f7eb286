"""End-to-end tests of ImportPipeline against the in-memory datastore."""

import pytest

from catalogsync import ImportPipeline, WorkbookExporter
from catalogsync.errors import DatastoreError, ErrorKind
from catalogsync.models import ExistingData
from catalogsync.schema import PARTS_TABLE

from conftest import PART_HEADERS, VEHICLE_HEADERS, make_workbook, part_row, vehicle_row


@pytest.fixture
def pipeline(seeded_db, settings):
    return ImportPipeline(seeded_db, settings)


def export(db, **kwargs) -> bytes:
    return WorkbookExporter().export(ExistingData.from_tables(db.fetch_current_records()), **kwargs)


class TestPreview:
    def test_preview_writes_nothing(self, pipeline, seeded_db):
        before = seeded_db.state()
        preview = pipeline.preview(make_workbook(parts=[PART_HEADERS, part_row("ACR-300")]), "c.xlsx")

        assert preview.valid
        assert preview.diff.summary()["total_adds"] == 1
        assert seeded_db.state() == before
        assert seeded_db.calls.get("execute_atomic_import") is None
        assert preview.to_dict()["error"] is None

    def test_preview_reports_validation_errors_with_diff(self, pipeline):
        preview = pipeline.preview(make_workbook(
            parts=[PART_HEADERS, part_row("ACR-300"), part_row("ACR-300")],
        ), "c.xlsx")

        assert not preview.valid
        assert preview.errors[0].code.value == "E2_DUPLICATE_ACR_SKU"
        assert preview.diff is not None

    def test_preview_of_unreadable_file(self, pipeline):
        preview = pipeline.preview(b"garbage", "c.xlsx")
        assert not preview.valid
        assert preview.error.kind is ErrorKind.PARSE

    def test_preview_when_datastore_is_down(self, pipeline, seeded_db):
        seeded_db.fail("fetch_current_records", DatastoreError("connection refused", retryable=True))
        preview = pipeline.preview(make_workbook(parts=[PART_HEADERS, part_row("ACR-300")]), "c.xlsx")
        assert preview.error.kind is ErrorKind.EXECUTION
        assert preview.error.retryable


class TestExecute:
    def test_execute_and_roll_back(self, pipeline, seeded_db):
        before = seeded_db.state()
        data = make_workbook(
            parts=[PART_HEADERS, part_row("ACR-300", tmk="T-1")],
            vehicles=[VEHICLE_HEADERS, vehicle_row("ACR-300", make="VW", model="GOL")],
        )

        result = pipeline.execute(data, "c.xlsx", imported_by="ana")
        assert result.success
        assert result.summary.adds == 3
        assert [r.id for r in pipeline.list_rollback_candidates()] == [result.import_id]

        outcome = pipeline.rollback(result.import_id)
        assert outcome.success
        assert outcome.restored_counts[PARTS_TABLE] == 2
        assert seeded_db.state() == before
        assert pipeline.list_rollback_candidates() == []

    def test_validation_errors_block_execution(self, pipeline, seeded_db):
        before = seeded_db.state()
        result = pipeline.execute(make_workbook(
            parts=[PART_HEADERS, part_row("ACR-300", part_type=None)],
        ), "c.xlsx")

        assert not result.success
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.validation.errors
        assert seeded_db.state() == before
        assert seeded_db.import_history == {}

    def test_edit_exported_workbook(self, pipeline, seeded_db):
        data = export(seeded_db, with_instructions=True)
        assert pipeline.preview(data, "export.xlsx").diff.summary()["total_changes"] == 0

        result = pipeline.execute(data, "export.xlsx")
        assert result.success
        assert result.summary.total == 0

    def test_write_failure_is_reported(self, pipeline, seeded_db):
        seeded_db.fail("execute_atomic_import", *[DatastoreError("timeout", retryable=True)] * 3)
        result = pipeline.execute(make_workbook(parts=[PART_HEADERS, part_row("ACR-300")]), "c.xlsx")

        assert not result.success
        assert result.error.kind is ErrorKind.EXECUTION
        assert result.error.retryable
        assert result.error.details["attempts"] == 3

    def test_import_record_failure_is_reported(self, pipeline, seeded_db):
        seeded_db.fail("insert_import_record", DatastoreError("disk full"))
        result = pipeline.execute(make_workbook(parts=[PART_HEADERS, part_row("ACR-300")]), "c.xlsx")

        assert not result.success
        assert result.error.kind is ErrorKind.IMPORT_RECORD
        assert "ACR-300" in {r["acr_sku"] for r in seeded_db.rows(PARTS_TABLE)}


class TestRollback:
    def test_sequential_error_names_newest_import(self, pipeline):
        first = pipeline.execute(make_workbook(parts=[PART_HEADERS, part_row("ACR-A")]), "a.xlsx")
        second = pipeline.execute(make_workbook(parts=[PART_HEADERS, part_row("ACR-B")]), "b.xlsx")

        outcome = pipeline.rollback(first.import_id)
        assert not outcome.success
        assert outcome.error.kind is ErrorKind.ROLLBACK_SEQUENTIAL
        assert outcome.error.details["newest_import_id"] == second.import_id

    def test_conflict_is_reported(self, pipeline, seeded_db):
        result = pipeline.execute(make_workbook(parts=[PART_HEADERS, part_row("ACR-A")]), "a.xlsx")
        seeded_db.manual_edit(PARTS_TABLE, seeded_db.part_ids["ACR-200"], part_type="Disco")

        outcome = pipeline.rollback(result.import_id)
        assert outcome.error.kind is ErrorKind.ROLLBACK_CONFLICT
        assert outcome.error.details["conflicts"][0]["label"] == "ACR-200"
        assert outcome.to_dict()["success"] is False
