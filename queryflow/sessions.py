"""
Session store and SQL engine adapter.

Each session owns an isolated in-memory DuckDB database. Statements run on
their own cursor; a visualization reads through a SessionSnapshot, a cursor
held inside one transaction so concurrent DDL/DML on the same session is
never observed half-way.
"""
import math
import re
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

import duckdb
import numpy as np
import pandas as pd
import sqlparse

from queryflow.errors import (
    QueryTimeoutError,
    SessionNotFoundError,
    SQLExecutionError,
    SQLParseError,
    TableNotFoundError,
)
from queryflow.logs import DebugLogger
from queryflow.models import ExecutionResult, TableData


SAMPLE_SCHEMA_SQL = """
CREATE TABLE users (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  age INTEGER,
  department_id INTEGER
);

CREATE TABLE departments (
  id INTEGER PRIMARY KEY,
  name TEXT NOT NULL,
  budget REAL
);

INSERT INTO users (id, name, age, department_id) VALUES
  (1, 'Alice', 30, 1),
  (2, 'Bob', 25, 1),
  (3, 'Charlie', 35, 2),
  (4, 'Diana', 28, 2),
  (5, 'Eve', 22, 1);

INSERT INTO departments (id, name, budget) VALUES
  (1, 'Engineering', 500000),
  (2, 'Marketing', 300000);
"""

ROW_RETURNING_TYPES = {'SELECT'}
ROW_RETURNING_KEYWORDS = {'SHOW', 'DESCRIBE', 'PRAGMA', 'EXPLAIN', 'SUMMARIZE', 'VALUES', 'FROM'}

_NAME = r'((?:"[^"]+"|\w+)(?:\s*\.\s*(?:"[^"]+"|\w+))?)'
_RE_AFFECTED_TABLE = re.compile(
    r'^\s*(?:'
    r'CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?(?:TABLE|VIEW)(?:\s+IF\s+NOT\s+EXISTS)?'
    r'|DROP\s+(?:TABLE|VIEW)(?:\s+IF\s+EXISTS)?'
    r'|ALTER\s+TABLE'
    r'|INSERT\s+(?:OR\s+\w+\s+)?INTO'
    r'|UPDATE'
    r'|DELETE\s+FROM'
    r'|TRUNCATE(?:\s+TABLE)?'
    r')\s+' + _NAME,
    re.IGNORECASE,
)


# ============================================================================
# Value helpers
# ============================================================================

def clean_value(obj: Any) -> Any:
    """Convert numpy/pandas scalars to Python values; NaN/inf/NA become None."""
    if obj is None or obj is pd.NA or obj is pd.NaT:
        return None
    if isinstance(obj, np.integer):
        return int(obj)
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, (float, np.floating)):
        value = float(obj)
        if math.isnan(value) or math.isinf(value):
            return None
        return value
    if isinstance(obj, np.ndarray):
        return [clean_value(item) for item in obj.tolist()]
    if isinstance(obj, pd.Timestamp):
        return obj.to_pydatetime()
    if isinstance(obj, dict):
        return {k: clean_value(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [clean_value(item) for item in obj]
    return obj


def unique_column_names(names: List[str]) -> List[str]:
    """Suffix repeated names (id, id -> id, id_1) so rows can be dicts."""
    seen: Dict[str, int] = {}
    result = []
    for name in names:
        if name not in seen:
            seen[name] = 0
            result.append(name)
            continue
        seen[name] += 1
        candidate = f"{name}_{seen[name]}"
        while candidate in seen:
            seen[name] += 1
            candidate = f"{name}_{seen[name]}"
        seen[candidate] = 0
        result.append(candidate)
    return result


def dataframe_to_table(df: pd.DataFrame, name: str) -> TableData:
    """Convert a DataFrame to TableData with JSON-safe values."""
    columns = unique_column_names([str(col) for col in df.columns])
    if df.empty:
        return TableData(table_name=name, columns=columns, rows=[])

    rows = []
    for record in df.itertuples(index=False, name=None):
        rows.append({col: clean_value(value) for col, value in zip(columns, record)})
    return TableData(table_name=name, columns=columns, rows=rows)


def affected_tables(sql: str) -> List[str]:
    match = _RE_AFFECTED_TABLE.match(sql)
    if not match:
        return []
    return [match.group(1).replace('"', '')]


def _statement_returns_rows(statement: str) -> bool:
    parsed = sqlparse.parse(statement)
    if not parsed:
        return False
    if parsed[0].get_type() in ROW_RETURNING_TYPES:
        return True
    first = parsed[0].token_first(skip_cm=True)
    return first is not None and first.value.upper() in ROW_RETURNING_KEYWORDS


def _wrap_engine_error(exc: Exception, clause: Optional[str] = None):
    """Translate a DuckDB exception into the error taxonomy."""
    message = str(exc).strip()
    if isinstance(exc, duckdb.ParserException):
        return SQLParseError(message)
    return SQLExecutionError(message, clause=clause)


# ============================================================================
# Snapshot
# ============================================================================

class SessionSnapshot:
    """Read-only view of one session's tables for the duration of one request."""

    def __init__(self, cursor):
        self.cursor = cursor
        self.interrupted = False

    def interrupt(self):
        """Abort the statement currently running on this snapshot."""
        self.interrupted = True
        try:
            self.cursor.interrupt()
        except duckdb.Error as exc:  # pragma: no cover - connection already closed
            DebugLogger.log("Interrupt failed: {}", exc)

    def fetch(self, sql: str, clause: Optional[str] = None) -> Tuple[List[str], List[tuple]]:
        """Run a query; return (column names, rows as tuples)."""
        if self.interrupted:
            raise QueryTimeoutError()
        DebugLogger.log("Engine query: {}", sql)
        try:
            result = self.cursor.execute(sql)
            columns = [desc[0] for desc in result.description]
            rows = result.fetchall()
        except duckdb.Error as exc:
            if self.interrupted:
                raise QueryTimeoutError() from exc
            raise _wrap_engine_error(exc, clause) from exc
        return columns, [tuple(clean_value(value) for value in row) for row in rows]

    def table_columns(self, table_name: str, clause: Optional[str] = None) -> List[str]:
        """Column names of a table, or SQLExecutionError if it does not exist."""
        columns, _ = self.fetch(f"SELECT * FROM {table_name} LIMIT 0", clause)
        return columns

    def scan_table(self, table_name: str) -> TableData:
        """Full-table scan as TableData."""
        columns, rows = self.fetch(f"SELECT * FROM {table_name}")
        names = unique_column_names(columns)
        return TableData(
            table_name=table_name,
            columns=names,
            rows=[dict(zip(names, row)) for row in rows],
        )

    def evaluate_predicate(
        self,
        predicate: str,
        source_sql: str,
        key_sql: str,
        clause: Optional[str] = None,
    ) -> Dict[str, Optional[bool]]:
        """Truth value of `predicate` for every row of `source_sql`, keyed by `key_sql`.

        Batched form of a per-row probe: the engine evaluates the predicate
        exactly as it would inside the real query.
        """
        sql = f"SELECT {key_sql} AS __qf_key, CAST(({predicate}) AS BOOLEAN) AS __qf_ok\n{source_sql}"
        _, rows = self.fetch(sql, clause)
        return {key: ok for key, ok in rows}

    def execute(self, sql: str) -> TableData:
        """Run a row-returning statement and return its rows."""
        columns, rows = self.fetch(sql)
        names = unique_column_names(columns)
        return TableData(table_name='result', columns=names, rows=[dict(zip(names, row)) for row in rows])


# ============================================================================
# Session database
# ============================================================================

def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SessionDatabase:
    """One session's isolated relational database."""

    def __init__(self, session_id: str):
        self.id = session_id
        self.connection = duckdb.connect(database=":memory:")
        self.created_at = _utc_now()
        self.last_accessed_at = self.created_at
        self._last_access_monotonic = time.monotonic()
        self._lock = threading.Lock()

    def touch(self):
        self.last_accessed_at = _utc_now()
        self._last_access_monotonic = time.monotonic()

    def idle_seconds(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.monotonic()) - self._last_access_monotonic

    def to_dict(self) -> Dict[str, str]:
        return {
            'id': self.id,
            'createdAt': self.created_at.isoformat(),
            'lastAccessedAt': self.last_accessed_at.isoformat(),
        }

    def _cursor(self):
        # DuckDBPyConnection is not thread-safe; each caller gets its own cursor
        with self._lock:
            return self.connection.cursor()

    @contextmanager
    def _db_cursor(self):
        """Context manager for a session cursor with automatic cleanup."""
        cursor = self._cursor()
        try:
            yield cursor
        finally:
            cursor.close()

    @contextmanager
    def snapshot(self) -> Iterator[SessionSnapshot]:
        """Open a read transaction; everything read through it sees one state."""
        with self._db_cursor() as cursor:
            cursor.execute("BEGIN TRANSACTION")
            try:
                yield SessionSnapshot(cursor)
            finally:
                try:
                    cursor.execute("ROLLBACK")
                except duckdb.Error as exc:
                    # An interrupted statement may already have aborted the transaction
                    DebugLogger.log("Snapshot rollback skipped: {}", exc)

    def execute(self, sql: str) -> ExecutionResult:
        """Execute one statement (DDL, DML or query)."""
        if sql is None or not sql.strip():
            raise SQLParseError("SQL text is empty")
        statement = sql.strip()
        returns_rows = _statement_returns_rows(statement)

        with self._db_cursor() as cursor:
            try:
                result = cursor.execute(statement)
                if returns_rows:
                    df = result.fetchdf()
                else:
                    rows = result.fetchall() if result.description else []
            except duckdb.Error as exc:
                raise _wrap_engine_error(exc) from exc

        if returns_rows:
            data = dataframe_to_table(df, 'result')
            return ExecutionResult(
                success=True,
                message=f"Query returned {len(data.rows)} row(s)",
                data=data,
            )

        tables = affected_tables(statement)
        if rows and len(rows[0]) == 1 and isinstance(rows[0][0], int):
            message = f"{rows[0][0]} row(s) affected"
        else:
            message = "Statement executed successfully"
        DebugLogger.log("Executed statement in session {}: {}", self.id, message)
        return ExecutionResult(success=True, message=message, affected_tables=tables)

    def execute_script(self, sql: str) -> List[ExecutionResult]:
        """Execute every statement in a script, stopping at the first failure."""
        if sql is None or not sql.strip():
            raise SQLParseError("SQL text is empty")
        statements = [stmt for stmt in sqlparse.split(sql) if sqlparse.format(stmt, strip_comments=True).strip()]
        results = []
        for index, statement in enumerate(statements, start=1):
            try:
                results.append(self.execute(statement))
            except (SQLParseError, SQLExecutionError) as exc:
                exc.details = {**(exc.details or {}), 'statementIndex': index, 'statement': statement}
                raise
        return results

    def list_tables(self) -> List[str]:
        with self._db_cursor() as cursor:
            rows = cursor.execute(
                "SELECT table_name FROM information_schema.tables "
                "WHERE table_schema = 'main' ORDER BY table_name"
            ).fetchall()
        return [row[0] for row in rows]

    def table_schemas(self) -> List[Dict[str, Any]]:
        """Name and column types of every table, in table order."""
        with self._db_cursor() as cursor:
            rows = cursor.execute(
                "SELECT table_name, column_name, data_type, is_nullable "
                "FROM information_schema.columns WHERE table_schema = 'main' "
                "ORDER BY table_name, ordinal_position"
            ).fetchall()

        schemas: Dict[str, List[Dict[str, Any]]] = {}
        for table_name, column_name, data_type, is_nullable in rows:
            schemas.setdefault(table_name, []).append({
                'name': column_name,
                'type': data_type,
                'isNotNull': is_nullable == 'NO',
            })
        return [{'name': name, 'columns': columns} for name, columns in schemas.items()]

    def scan_table(self, table_name: str) -> TableData:
        """Full-table scan through pandas for display."""
        if table_name not in self.list_tables():
            raise TableNotFoundError(table_name)
        quoted = '"' + table_name.replace('"', '""') + '"'
        with self._db_cursor() as cursor:
            try:
                df = cursor.execute(f"SELECT * FROM {quoted}").fetchdf()
            except duckdb.Error as exc:
                raise _wrap_engine_error(exc) from exc
        return dataframe_to_table(df, table_name)

    def close(self):
        with self._lock:
            self.connection.close()


# ============================================================================
# Session store
# ============================================================================

class SessionStore:
    """Owns all live sessions and expires idle ones."""

    def __init__(self, ttl_seconds: float):
        self.ttl_seconds = ttl_seconds
        self._sessions: Dict[str, SessionDatabase] = {}
        self._lock = threading.Lock()

    def create(self, sample: bool = False) -> SessionDatabase:
        self.purge_expired()
        session = SessionDatabase(uuid.uuid4().hex)
        if sample:
            session.execute_script(SAMPLE_SCHEMA_SQL)
        with self._lock:
            self._sessions[session.id] = session
        DebugLogger.log("Created session {} (sample={})", session.id, sample)
        return session

    def get(self, session_id: str) -> SessionDatabase:
        self.purge_expired()
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        session.touch()
        return session

    def list(self) -> List[SessionDatabase]:
        self.purge_expired()
        with self._lock:
            return list(self._sessions.values())

    def delete(self, session_id: str) -> bool:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return False
        session.close()
        DebugLogger.log("Deleted session {}", session_id)
        return True

    def purge_expired(self, now: Optional[float] = None) -> int:
        """Close sessions idle for longer than the TTL; return how many."""
        with self._lock:
            expired = [
                sid for sid, session in self._sessions.items()
                if session.idle_seconds(now) > self.ttl_seconds
            ]
            sessions = [self._sessions.pop(sid) for sid in expired]
        for session in sessions:
            session.close()
            DebugLogger.log("Expired session {}", session.id)
        return len(sessions)

    def clear(self):
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
