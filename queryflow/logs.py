"""
Debug logging utility shared by the parser, simulator and session store.
"""
import sys


class DebugLogger:
    """Centralized debug logging utility."""

    _enabled = False  # Switched on by QUERYFLOW_DEBUG or enable()

    @classmethod
    def log(cls, message: str, *args):
        """Log a debug message."""
        if cls._enabled:
            formatted = message.format(*args) if args else message
            print(f"DEBUG: {formatted}", file=sys.stderr)

    @classmethod
    def warn(cls, message: str, *args):
        """Log a warning. Warnings are printed even when debug output is off."""
        formatted = message.format(*args) if args else message
        print(f"WARNING: {formatted}", file=sys.stderr)

    @classmethod
    def disable(cls):
        """Disable debug logging."""
        cls._enabled = False

    @classmethod
    def enable(cls):
        """Enable debug logging."""
        cls._enabled = True

    @classmethod
    def is_enabled(cls) -> bool:
        return cls._enabled
