"""
Tests for the session store, statement execution and value cleaning.
"""
import math

import numpy as np
import pandas as pd
import pytest

from queryflow.config import Settings, load_settings
from queryflow.errors import SessionNotFoundError, SQLExecutionError, SQLParseError, TableNotFoundError
from queryflow.sessions import (
    SessionStore,
    affected_tables,
    clean_value,
    dataframe_to_table,
    unique_column_names,
)


class TestSessionStore:
    def test_create_get_delete(self, store):
        session = store.create()
        assert store.get(session.id) is session
        assert [s.id for s in store.list()] == [session.id]

        assert store.delete(session.id)
        assert not store.delete(session.id)
        with pytest.raises(SessionNotFoundError):
            store.get(session.id)

    def test_sessions_are_isolated(self, store):
        first = store.create()
        second = store.create()
        first.execute("CREATE TABLE only_here (id INTEGER)")

        assert first.list_tables() == ["only_here"]
        assert second.list_tables() == []

    def test_expiry(self):
        store = SessionStore(ttl_seconds=60)
        session = store.create()
        assert store.purge_expired(now=session._last_access_monotonic + 10) == 0
        assert store.purge_expired(now=session._last_access_monotonic + 61) == 1
        with pytest.raises(SessionNotFoundError):
            store.get(session.id)

    def test_sample_schema(self, store):
        session = store.create(sample=True)
        assert session.list_tables() == ["departments", "users"]
        users = session.scan_table("users")
        assert users.columns == ["id", "name", "age", "department_id"]
        assert len(users.rows) == 5

    def test_to_dict(self, store):
        payload = store.create().to_dict()
        assert set(payload) == {"id", "createdAt", "lastAccessedAt"}


class TestExecute:
    def test_ddl_and_dml(self, store):
        session = store.create()

        created = session.execute("CREATE TABLE items (id INTEGER, label TEXT)")
        assert created.success
        assert created.affected_tables == ["items"]

        inserted = session.execute("INSERT INTO items VALUES (1, 'a'), (2, 'b')")
        assert inserted.message == "2 row(s) affected"
        assert inserted.affected_tables == ["items"]

        selected = session.execute("SELECT * FROM items ORDER BY id")
        assert selected.data.columns == ["id", "label"]
        assert selected.data.rows == [{"id": 1, "label": "a"}, {"id": 2, "label": "b"}]
        assert "affectedTables" not in selected.to_dict()

    def test_script_stops_at_first_failure(self, store):
        session = store.create()
        with pytest.raises(SQLExecutionError) as excinfo:
            session.execute_script(
                "CREATE TABLE a (id INTEGER);\n"
                "INSERT INTO missing VALUES (1);\n"
                "CREATE TABLE b (id INTEGER);"
            )
        assert excinfo.value.details["statementIndex"] == 2
        assert session.list_tables() == ["a"]

    def test_script_skips_comments(self, session):
        results = session.execute_script("-- nothing here\nSELECT 1 AS one;\n-- trailing\n")
        assert len(results) == 1
        assert results[0].data.rows == [{"one": 1}]

    def test_syntax_error(self, session):
        with pytest.raises(SQLParseError):
            session.execute("SELEC * FROM users")

    def test_empty_statement(self, session):
        with pytest.raises(SQLParseError):
            session.execute("  ")

    def test_scan_missing_table(self, session):
        with pytest.raises(TableNotFoundError) as excinfo:
            session.scan_table("nope")
        assert excinfo.value.code == "NOT_FOUND"

    def test_table_schemas(self, session):
        schemas = {schema["name"]: schema for schema in session.table_schemas()}
        assert [c["name"] for c in schemas["users"]["columns"]] == ["id", "name", "age", "department_id"]
        assert schemas["users"]["columns"][0]["type"] == "INTEGER"


class TestSnapshot:
    def test_evaluate_predicate(self, session):
        with session.snapshot() as engine:
            outcomes = engine.evaluate_predicate(
                "age > 21", "FROM users", "CAST(users.rowid AS VARCHAR)"
            )
        assert outcomes == {"0": True, "1": False, "2": True, "3": None}

    def test_scan_table(self, session):
        with session.snapshot() as engine:
            table = engine.scan_table("departments")
        assert table.rows[0] == {"id": 1, "name": "Engineering", "budget": 500000}

    def test_snapshot_ignores_later_writes(self, session):
        with session.snapshot() as engine:
            before = engine.execute("SELECT COUNT(*) AS c FROM users").rows
            session.execute("INSERT INTO users VALUES (5, 'Eve', 40, 3)")
            after = engine.execute("SELECT COUNT(*) AS c FROM users").rows
        assert before == after == [{"c": 4}]
        assert session.execute("SELECT COUNT(*) AS c FROM users").data.rows == [{"c": 5}]


class TestHelpers:
    def test_unique_column_names(self):
        assert unique_column_names(["id", "id", "name", "id"]) == ["id", "id_1", "name", "id_2"]
        assert unique_column_names(["a", "a_1", "a"]) == ["a", "a_1", "a_2"]

    def test_clean_value(self):
        assert clean_value(np.int64(3)) == 3 and isinstance(clean_value(np.int64(3)), int)
        assert clean_value(float("nan")) is None
        assert clean_value(np.float64("inf")) is None
        assert clean_value(pd.NA) is None
        assert clean_value(np.bool_(True)) is True
        assert clean_value([np.int32(1), math.nan]) == [1, None]

    def test_dataframe_to_table(self):
        df = pd.DataFrame({"a": [1, 2], "b": [1.5, float("nan")]})
        table = dataframe_to_table(df, "t")
        assert table.rows == [{"a": 1, "b": 1.5}, {"a": 2, "b": None}]

    @pytest.mark.parametrize("sql, expected", [
        ("CREATE TABLE IF NOT EXISTS t (id INT)", ["t"]),
        ("create or replace table main.t as select 1", ["main.t"]),
        ("DROP TABLE IF EXISTS \"My Table\"", ["My Table"]),
        ("UPDATE t SET x = 1", ["t"]),
        ("DELETE FROM t WHERE x = 1", ["t"]),
        ("SELECT 1", []),
    ])
    def test_affected_tables(self, sql, expected):
        assert affected_tables(sql) == expected


class TestSettings:
    def test_defaults(self):
        assert load_settings({}) == Settings()

    def test_overrides(self):
        settings = load_settings({
            "QUERYFLOW_TIMEOUT_SECONDS": "2.5",
            "QUERYFLOW_MAX_ROWS": "50",
            "QUERYFLOW_DEBUG": "true",
            "QUERYFLOW_PORT": "9000",
        })
        assert settings.timeout_seconds == 2.5
        assert settings.max_rows == 50
        assert settings.debug
        assert settings.port == 9000

    def test_bad_number(self):
        with pytest.raises(ValueError):
            load_settings({"QUERYFLOW_MAX_ROWS": "lots"})
