"""
Event dispatch: classifies a decoded webhook body and drives the
conversation state machine. Shared by the HTTP receiver and audit replay.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Optional

import structlog

from intake.config import Settings
from intake.conversations import ConversationStateMachine
from intake.database import Database
from intake.events import classify_event, extract_call_id
from intake.models import EventType, Outcome
from intake.retell_client import RetellClient

log = structlog.get_logger(__name__)


class CallPipeline:
    """Stateless per-request processor; safe to share across concurrent requests."""

    def __init__(self, settings: Settings, db: Database, retell: Optional[RetellClient] = None):
        self.settings = settings
        self.db = db
        self.machine = ConversationStateMachine(db, settings, retell=retell)
        self._handlers: dict[str, Callable[[dict], Awaitable[Outcome]]] = {
            EventType.CALL_STARTED.value: self.machine.on_call_started,
            EventType.CALL_ENDED.value: self.machine.on_call_ended,
            EventType.CALL_ANALYZED.value: self.machine.on_call_analyzed,
            EventType.TRANSCRIPT_UPDATE.value: self.machine.on_transcript_update,
        }

    async def process(self, body: Any) -> dict:
        """Process one webhook body. Store errors propagate to the caller."""
        event = classify_event(body)
        call_sid = extract_call_id(event.call_data)

        with structlog.contextvars.bound_contextvars(event_type=event.event_type, call_sid=call_sid):
            handler = self._handlers.get(event.event_type)
            if handler is None:
                log.info("unhandled_event_type")
                return {"success": True, "event_type": event.event_type, "processed": False}

            log.info("processing_event")
            outcome = await handler(event.call_data)

        result = {"success": True, "event_type": event.event_type, **outcome.model_dump(exclude_none=True)}
        if not outcome.reason:
            result.pop("reason", None)
        return result
