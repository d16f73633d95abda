"""
Runtime settings.

Defaults live in module constants; every value can be overridden through a
QUERYFLOW_* environment variable.
"""
import os
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_MAX_ROWS = 10000
DEFAULT_SESSION_TTL_SECONDS = 3600.0
DEFAULT_HOST = "0.0.0.0"
DEFAULT_PORT = 8000

_TRUE_VALUES = {'1', 'true', 'yes', 'on'}


@dataclass(frozen=True)
class Settings:
    """Values read once at startup."""
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_rows: int = DEFAULT_MAX_ROWS
    session_ttl_seconds: float = DEFAULT_SESSION_TTL_SECONDS
    debug: bool = False
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT


def _env_number(env: Mapping[str, str], name: str, default, cast):
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {raw!r}")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    """Build a Settings object from the environment (or the given mapping)."""
    env = os.environ if environ is None else environ
    return Settings(
        timeout_seconds=_env_number(env, 'QUERYFLOW_TIMEOUT_SECONDS', DEFAULT_TIMEOUT_SECONDS, float),
        max_rows=_env_number(env, 'QUERYFLOW_MAX_ROWS', DEFAULT_MAX_ROWS, int),
        session_ttl_seconds=_env_number(env, 'QUERYFLOW_SESSION_TTL_SECONDS', DEFAULT_SESSION_TTL_SECONDS, float),
        debug=env.get('QUERYFLOW_DEBUG', '').strip().lower() in _TRUE_VALUES,
        host=env.get('QUERYFLOW_HOST', DEFAULT_HOST),
        port=_env_number(env, 'QUERYFLOW_PORT', DEFAULT_PORT, int),
    )
