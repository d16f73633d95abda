#!/usr/bin/env python3
"""
QueryFlow Startup Script
Run this to start the FastAPI backend server
"""
import uvicorn

from queryflow.config import load_settings

if __name__ == "__main__":
    settings = load_settings()
    uvicorn.run(
        "queryflow.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,  # Auto-reload while debugging
        log_level="debug" if settings.debug else "info"
    )
