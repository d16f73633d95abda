"""
Error taxonomy for the visualizer.

Every failure that reaches a caller is a VisualizationError carrying one of
the API error codes, so the HTTP layer can surface kind and message as-is.
"""
from typing import Any, Dict, Optional

VALIDATION_ERROR = 'VALIDATION_ERROR'
SQL_PARSE_ERROR = 'SQL_PARSE_ERROR'
SQL_EXECUTION_ERROR = 'SQL_EXECUTION_ERROR'
SESSION_NOT_FOUND = 'SESSION_NOT_FOUND'
NOT_FOUND = 'NOT_FOUND'
INTERNAL_ERROR = 'INTERNAL_ERROR'


class VisualizationError(Exception):
    """Base class for all tagged errors."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {'code': self.code, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class ValidationError(VisualizationError):
    """Malformed request: missing session id, empty query."""
    code = VALIDATION_ERROR


class SQLParseError(VisualizationError):
    """The input is not a single recognizable SELECT statement."""
    code = SQL_PARSE_ERROR


class SQLExecutionError(VisualizationError):
    """A clause could not be evaluated against the session's tables."""
    code = SQL_EXECUTION_ERROR

    def __init__(self, message: str, clause: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        details = dict(details or {})
        if clause:
            details['clause'] = clause
        super().__init__(message, details or None)
        self.clause = clause


class QueryTimeoutError(SQLExecutionError):
    """The visualization ran past its time budget and was interrupted."""

    def __init__(self, timeout_seconds: Optional[float] = None):
        if timeout_seconds is None:
            message = "Query execution timed out"
        else:
            message = f"Query execution timed out after {timeout_seconds:g} seconds"
        super().__init__(message)
        self.timeout_seconds = timeout_seconds


class SessionNotFoundError(VisualizationError):
    code = SESSION_NOT_FOUND

    def __init__(self, session_id: str):
        super().__init__(f"Session '{session_id}' not found or expired")
        self.session_id = session_id


class TableNotFoundError(VisualizationError):
    code = NOT_FOUND

    def __init__(self, table_name: str):
        super().__init__(f"Table '{table_name}' not found")
        self.table_name = table_name
