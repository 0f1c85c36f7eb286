#!/usr/bin/env python3
"""Example: preview, import and roll back a catalog workbook.

Connects to the Supabase Postgres database configured in ``.env`` (see
SupabaseClient for the variables), shows what the workbook would change and,
when asked, applies it.
"""

import logging
from pathlib import Path

from catalogsync import ImportPipeline, Settings
from catalogsync.ingest import SupabaseClient


def preview_workbook(path: str, apply: bool = False, imported_by: str = None):
    """Preview a workbook and optionally import it.

    Args:
        path: Path to the .xlsx workbook
        apply: Import the workbook when the preview is valid
        imported_by: Operator name recorded with the import
    """
    settings = Settings.from_env(".env")
    db = SupabaseClient()
    pipeline = ImportPipeline(db, settings)

    data = Path(path).read_bytes()
    file_name = Path(path).name

    try:
        preview = pipeline.preview(data, file_name)
        if preview.error:
            print(f"✗ {preview.error.kind.name}: {preview.error.message}")
            return None

        summary = preview.diff.summary()
        print(f"Changes for {file_name}:")
        print(f"  Adds:      {summary['total_adds']}")
        print(f"  Updates:   {summary['total_updates']}")
        print(f"  Deletes:   {summary['total_deletes']}")
        print(f"  Unchanged: {summary['total_unchanged']}")

        for issue in preview.errors:
            print(f"  ✗ {issue.code.value} {issue.sheet} row {issue.row}: {issue.message}")
        for issue in preview.warnings:
            print(f"  ! {issue.code.value} {issue.sheet} row {issue.row}: {issue.message}")
        for row in preview.diff.unresolved:
            print(f"  ? {row.table} row {row.row_number}: {row.reason}")

        if not preview.valid:
            print("✗ Workbook cannot be imported until the errors above are fixed")
            return preview
        if not apply:
            return preview

        result = pipeline.execute(data, file_name, imported_by=imported_by)
        if not result.success:
            print(f"✗ Import failed ({result.error.kind.name}): {result.error.message}")
            if result.error.retryable:
                print("  The failure looks temporary; try again shortly")
            return result

        print(f"✓ Imported as {result.import_id}: {result.summary.to_dict()}")
        candidates = pipeline.list_rollback_candidates()
        print(f"  {len(candidates)} import(s) can be rolled back, newest first:")
        for record in candidates:
            print(f"    {record.id}  {record.created_at}  {record.file_name}")
        return result
    finally:
        db.close()


if __name__ == "__main__":
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")

    if len(sys.argv) < 2:
        print("Usage: python preview_workbook.py <workbook.xlsx> [--apply] [--by NAME]")
        print("\nExample:")
        print("  python preview_workbook.py catalog.xlsx --apply --by ana")
        sys.exit(1)

    args = sys.argv[1:]
    operator = None
    if "--by" in args and args.index("--by") + 1 < len(args):
        operator = args[args.index("--by") + 1]

    preview_workbook(args[0], apply="--apply" in args, imported_by=operator)
