"""
FastAPI webhook receiver for Retell call events.

Every POST is written to the audit log before anything else happens. Only
unparseable JSON (400) and genuine processing failures (500) return non-2xx;
everything the pipeline deliberately ignores is acknowledged with 200 so the
vendor does not retry it.
"""

from __future__ import annotations

import json
from typing import Optional

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from intake.config import Settings
from intake.database import Database
from intake.events import audit_event_id
from intake.models import WebhookEvent, utcnow
from intake.pipeline import CallPipeline
from intake.retell_client import RetellClient

log = structlog.get_logger(__name__)

VERSION = "0.1.0"

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}


def _json(body: dict, status_code: int = 200) -> JSONResponse:
    return JSONResponse(body, status_code=status_code, headers=CORS_HEADERS)


def register_webhook_routes(
    app: FastAPI,
    settings: Settings,
    get_db,
    get_retell=lambda: None,
) -> None:
    """
    Attach the /webhook routes. ``get_db`` / ``get_retell`` are called per
    request so the server can wire them up during its lifespan.
    """

    @app.exception_handler(HTTPException)
    async def http_error(request: Request, exc: HTTPException):
        return _json(exc.detail if isinstance(exc.detail, dict) else {"error": exc.detail},
                     status_code=exc.status_code)

    @app.options("/webhook")
    async def webhook_preflight():
        return PlainTextResponse("ok", headers=CORS_HEADERS)

    @app.get("/webhook")
    async def webhook_status():
        return _json({
            "status": f"{settings.vendor_name} webhook endpoint is active",
            "timestamp": utcnow().isoformat(),
            "method": "GET",
            "version": VERSION,
        })

    @app.post("/webhook")
    async def receive_webhook(request: Request):
        db: Database = get_db()
        raw = await request.body()
        text = raw.decode("utf-8", errors="replace")

        if not text.strip():
            log.info("webhook_empty_body")
            return _json({
                "status": "success",
                "message": "Empty body received, likely a health check",
                "version": VERSION,
            })

        try:
            body = json.loads(text)
        except json.JSONDecodeError as e:
            log.warning("webhook_invalid_json", error=str(e))
            try:
                await db.log_webhook_event(
                    WebhookEvent(
                        provider=settings.webhook_provider,
                        event_id="invalid_json",
                        payload={"raw_body": text},
                    )
                )
            except Exception as store_error:
                log.exception("webhook_audit_failed", error=str(store_error))
                return _json({"error": str(store_error), "version": VERSION}, status_code=500)
            raise HTTPException(
                status_code=400,
                detail={"error": "Invalid JSON", "details": str(e)},
            )

        try:
            await db.log_webhook_event(
                WebhookEvent(
                    provider=settings.webhook_provider,
                    event_id=audit_event_id(body),
                    payload=body,
                )
            )
            log.info("webhook_received", event_id=audit_event_id(body))

            pipeline = CallPipeline(settings, db, retell=get_retell())
            result = await pipeline.process(body)
        except Exception as e:
            log.exception("webhook_processing_failed", error=str(e))
            return _json({"error": str(e), "version": VERSION}, status_code=500)

        return _json({**result, "version": VERSION})


def create_webhook_app(
    settings: Settings,
    db: Database,
    retell: Optional[RetellClient] = None,
) -> FastAPI:
    """Create and return the FastAPI app with webhook routes."""

    app = FastAPI(
        title="Voice Call Intake Webhook Receiver",
        version=VERSION,
    )

    # ── Health check ────────────────────────────────────────────
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    register_webhook_routes(app, settings, lambda: db, lambda: retell)
    return app
