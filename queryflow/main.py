"""
QueryFlow FastAPI Backend
HTTP adapter over the session store and the query visualizer
"""
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import Body, FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from queryflow.config import load_settings
from queryflow.errors import (
    INTERNAL_ERROR,
    NOT_FOUND,
    SESSION_NOT_FOUND,
    ValidationError,
    VisualizationError,
)
from queryflow.logs import DebugLogger
from queryflow.sessions import SessionStore
from queryflow.visualizer import QueryVisualizer

STATUS_CODES = {
    SESSION_NOT_FOUND: 404,
    NOT_FOUND: 404,
    INTERNAL_ERROR: 500,
}

settings = load_settings()
if settings.debug:
    DebugLogger.enable()

app = FastAPI(title="QueryFlow API", version="1.0.0")

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global session store and visualizer
session_store = SessionStore(ttl_seconds=settings.session_ttl_seconds)
query_visualizer = QueryVisualizer(session_store, settings)


def ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _required_text(payload: Dict[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required")
    return value


@app.exception_handler(VisualizationError)
async def visualization_error_handler(request: Request, exc: VisualizationError):
    return JSONResponse(
        status_code=STATUS_CODES.get(exc.code, 400),
        content={"success": False, "error": exc.to_dict()},
    )


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    DebugLogger.warn("Unhandled error on {} {}: {!r}", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": {"code": INTERNAL_ERROR, "message": str(exc) or "Internal error"}},
    )


@app.get("/api/health")
async def health():
    return ok({"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()})


# ============================================================================
# Sessions
# ============================================================================

@app.post("/api/sessions")
def create_session(sample: bool = Query(False)):
    """Create a session, optionally seeded with the sample users/departments schema"""
    session = session_store.create(sample=sample)
    return ok({"sessionId": session.id})


@app.get("/api/sessions")
def list_sessions():
    sessions = session_store.list()
    return ok({
        "activeSessionCount": len(sessions),
        "sessions": [session.to_dict() for session in sessions],
    })


@app.get("/api/sessions/{session_id}")
def get_session(session_id: str):
    return ok(session_store.get(session_id).to_dict())


@app.delete("/api/sessions/{session_id}")
def delete_session(session_id: str):
    return ok({"deleted": session_store.delete(session_id)})


# ============================================================================
# SQL
# ============================================================================

@app.post("/api/sql/execute")
def execute_sql(payload: Dict[str, Any] = Body(...)):
    """Execute one statement in a session"""
    session = session_store.get(_required_text(payload, "sessionId"))
    result = session.execute(_required_text(payload, "sql"))
    return ok(result.to_dict())


@app.post("/api/sql/execute-multiple")
def execute_multiple_sql(payload: Dict[str, Any] = Body(...)):
    """Execute a semicolon-separated script, stopping at the first failure"""
    session = session_store.get(_required_text(payload, "sessionId"))
    results = session.execute_script(_required_text(payload, "sql"))
    return ok([result.to_dict() for result in results])


@app.get("/api/sql/tables/{session_id}")
def get_tables(session_id: str):
    session = session_store.get(session_id)
    schemas = session.table_schemas()
    return ok({
        "tables": schemas,
        "tableData": [session.scan_table(schema["name"]).to_dict() for schema in schemas],
    })


@app.get("/api/sql/tables/{session_id}/{table_name}")
def get_table_data(session_id: str, table_name: str):
    session = session_store.get(session_id)
    return ok(session.scan_table(table_name).to_dict())


@app.post("/api/sql/visualize")
def visualize_query(payload: Dict[str, Any] = Body(...)):
    """Visualize a SELECT query stage by stage"""
    visualization = query_visualizer.visualize(
        _required_text(payload, "sessionId"),
        _required_text(payload, "query"),
    )
    return ok({"visualization": visualization.to_dict()})
