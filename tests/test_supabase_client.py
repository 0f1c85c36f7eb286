"""
Unit tests for SupabaseClient that need no database.

A fake connection pool stands in for psycopg2's so transaction handling can
be observed without a server.
"""

from datetime import datetime, timezone
from pathlib import Path
import re

import psycopg2
from psycopg2 import errors as pg_errors
import pytest

from catalogsync.errors import DatastoreError
from catalogsync.ingest.supabase_client import SupabaseClient, classify_database_error

SQL_SCRIPT = Path(__file__).parent.parent / "sql" / "catalog_import.sql"


class FakeCursor:
    def __init__(self, connection):
        self.connection = connection
        self.closed = False

    def execute(self, statement, params=None):
        self.connection.statements.append((str(statement), params))
        if self.connection.error is not None:
            raise self.connection.error

    def fetchone(self):
        return self.connection.row

    def close(self):
        self.closed = True


class FakeConnection:
    def __init__(self, error=None):
        self.error = error
        self.row = {"counts": {"parts_added": 1}}
        self.statements = []
        self.committed = False
        self.rolled_back = False
        self.autocommit = True

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.committed = True

    def rollback(self):
        self.rolled_back = True


class FakePool:
    def __init__(self, connection):
        self.connection = connection
        self.returned = []

    def getconn(self):
        return self.connection

    def putconn(self, conn, close=False):
        self.returned.append((conn, close))


def client_with(connection) -> SupabaseClient:
    client = SupabaseClient(db_url="postgresql://u:p@localhost:5432/db")
    client._pool = FakePool(connection)
    return client


class TestClassifyDatabaseError:
    def test_connection_errors_are_transient(self):
        error = classify_database_error(psycopg2.OperationalError("server closed the connection"))
        assert error.retryable
        assert error.details["error_type"] == "OperationalError"

    def test_deadlock_is_transient(self):
        assert classify_database_error(pg_errors.DeadlockDetected("deadlock")).retryable

    def test_constraint_violation_is_permanent(self):
        error = classify_database_error(
            psycopg2.IntegrityError("duplicate key value violates unique constraint")
        )
        assert not error.retryable
        assert isinstance(error, DatastoreError)

    def test_message_patterns(self):
        assert classify_database_error(psycopg2.DatabaseError("canceling statement due to statement timeout")).retryable

    def test_datastore_errors_pass_through(self):
        original = DatastoreError("boom", retryable=True)
        assert classify_database_error(original) is original


class TestConnectionSettings:
    def test_url_from_parts(self, monkeypatch):
        monkeypatch.delenv("SUPABASE_DB_URL", raising=False)
        client = SupabaseClient(host="db.example.com", database="postgres", user="postgres", password="pw")
        assert client.db_url == "postgresql://postgres:pw@db.example.com:5432/postgres"

    def test_missing_parts(self, monkeypatch):
        for name in ("SUPABASE_DB_URL", "SUPABASE_DB_HOST", "SUPABASE_DB_NAME",
                     "SUPABASE_DB_USER", "SUPABASE_DB_PASSWORD"):
            monkeypatch.delenv(name, raising=False)
        with pytest.raises(ValueError):
            SupabaseClient()

    def test_url_from_environment(self, monkeypatch):
        monkeypatch.setenv("SUPABASE_DB_URL", "postgresql://a:b@h:5432/d")
        assert SupabaseClient().db_url == "postgresql://a:b@h:5432/d"


class TestTransactions:
    def test_atomic_import_is_one_call(self):
        connection = FakeConnection()
        client = client_with(connection)

        counts = client.execute_atomic_import({"actor": "import", "parts": {"adds": [], "updates": [], "deletes": []}})

        assert counts == {"parts_added": 1}
        assert len(connection.statements) == 1
        assert "execute_atomic_import" in connection.statements[0][0]
        assert connection.committed
        assert not connection.autocommit

    def test_driver_error_rolls_back_and_is_classified(self):
        connection = FakeConnection(error=psycopg2.OperationalError("connection reset"))
        client = client_with(connection)

        with pytest.raises(DatastoreError) as exc:
            client.restore_snapshot({"parts": []})

        assert exc.value.retryable
        assert connection.rolled_back
        assert not connection.committed
        assert client._transaction_conn is None

    def test_current_timestamp_reads_server_clock(self):
        connection = FakeConnection()
        connection.row = {"now": datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)}

        assert client_with(connection).current_timestamp() == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
        assert "clock_timestamp()" in connection.statements[0][0]

    def test_unknown_table_rejected(self):
        client = client_with(FakeConnection())
        with pytest.raises(ValueError):
            client.fetch_current_records(["users"])


class TestSchemaScript:
    """The server-side import must accept every plan validation allows."""

    @pytest.fixture
    def import_function(self):
        text = SQL_SCRIPT.read_text()
        start = text.index("CREATE OR REPLACE FUNCTION execute_atomic_import")
        return text[start:text.index("$$ LANGUAGE plpgsql;", start)]

    def test_unique_keys_are_checked_at_commit(self):
        text = SQL_SCRIPT.read_text()
        assert "parts_acr_sku_key UNIQUE (acr_sku) DEFERRABLE INITIALLY DEFERRED" in text
        assert "UNIQUE (alias, alias_type) DEFERRABLE INITIALLY DEFERRED" in text
        assert not re.search(r"acr_sku VARCHAR\(50\) NOT NULL UNIQUE", text)

    @pytest.mark.parametrize("table", ["parts", "vehicle_applications", "cross_references", "vehicle_aliases"])
    def test_updates_run_before_inserts(self, import_function, table):
        assert import_function.index(f"UPDATE {table} ") < import_function.index(f"INSERT INTO {table} ")

    def test_blank_status_falls_back(self, import_function):
        assert "COALESCE(value->>'workflow_status', 'ACTIVE')" in import_function
        assert "COALESCE(u.value->>'workflow_status', p.workflow_status)" in import_function
