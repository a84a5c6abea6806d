"""
Server entry point: runs the webhook receiver against the configured store.

Usage:
    python -m intake.server
    # or
    uvicorn intake.server:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

import structlog
from fastapi import FastAPI

from intake.config import get_settings
from intake.database import Database, create_database
from intake.logging_config import setup_logging
from intake.retell_client import RetellClient
from intake.webhook import VERSION, register_webhook_routes

log = structlog.get_logger(__name__)

# Module-level references populated during lifespan
_db: Optional[Database] = None
_retell: Optional[RetellClient] = None

_settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start up: connect the store. Shut down: close it and the Retell client."""
    global _db, _retell
    _settings.ensure_dirs()
    setup_logging(_settings.log_dir, json_logs=True)
    _db = create_database(_settings)
    await _db.connect()
    _retell = RetellClient(_settings)
    log.info(
        "server_started",
        store="postgres" if _settings.database_url else str(_settings.database_path),
        fetch_call_details=_retell.enabled,
    )
    yield
    await _retell.close()
    await _db.close()
    log.info("server_stopped")


def create_app() -> FastAPI:
    """Create the FastAPI app with all routes."""

    app = FastAPI(
        title="Voice Call Intake",
        version=VERSION,
        lifespan=lifespan,
    )

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_webhook_routes(app, _settings, lambda: _db, lambda: _retell)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "intake.server:app",
        host=_settings.host,
        port=_settings.port,
        reload=False,
        log_level="info",
    )
