"""
Webhook event classification.

The vendor has shipped several payload shapes over time; everything past this
module works on a single canonical ``CallEvent``.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from intake.models import CallEvent

log = structlog.get_logger(__name__)

# Candidate phone fields, highest priority first
PHONE_FIELDS = ("from_number", "to_number", "caller_number", "phone_number")

# Where the post-call analysis object may live on the call data
_ANALYSIS_KEYS = ("call_analysis", "post_call_analysis", "analysis")


def classify_event(body: Any) -> CallEvent:
    """
    Classify a decoded webhook body into ``(event_type, call_data)``.

    Supported shapes:
      - ``{"event": ..., "call": {...}}``
      - ``{"event_type": ..., "data": {...}}``
      - legacy: the body itself is the call data, type read from ``type``

    Never raises; the worst case is ``event_type == "unknown"``.
    """
    if not isinstance(body, dict):
        log.warning("webhook_body_not_object", body_type=type(body).__name__)
        return CallEvent()

    event = body.get("event")
    call = body.get("call")
    if event and isinstance(call, dict):
        return CallEvent(event_type=str(event), call_data=call)

    if body.get("event_type"):
        data = body.get("data")
        return CallEvent(
            event_type=str(body["event_type"]),
            call_data=data if isinstance(data, dict) else body,
        )

    if event:
        return CallEvent(event_type=str(event), call_data=body)

    log.info("legacy_webhook_shape", keys=sorted(body.keys())[:20])
    return CallEvent(event_type=str(body.get("type") or "unknown"), call_data=body)


def extract_call_id(call_data: dict) -> str:
    call_id = call_data.get("call_id")
    if not call_id and isinstance(call_data.get("call"), dict):
        call_id = call_data["call"].get("call_id")
    return str(call_id) if call_id else ""


def audit_event_id(body: Any) -> str:
    """Identifier stored on the raw audit row: the call id when present, else the event name."""
    if isinstance(body, dict):
        call = body.get("call")
        if isinstance(call, dict) and call.get("call_id"):
            return str(call["call_id"])
        data = body.get("data")
        if isinstance(data, dict) and data.get("call_id"):
            return str(data["call_id"])
        for key in ("call_id", "event", "event_type", "type"):
            if body.get(key):
                return str(body[key])
    return "unknown"


def candidate_phones(call_data: dict) -> list[Any]:
    """Raw candidate phone values in lookup priority order."""
    return [call_data.get(field) for field in PHONE_FIELDS]


def extract_analysis(call_data: dict) -> Optional[dict]:
    """Return the post-call analysis object carried on the call data, untouched."""
    for key in _ANALYSIS_KEYS:
        analysis = call_data.get(key)
        if isinstance(analysis, dict) and analysis:
            return analysis
    return None
