"""
Conversation lifecycle, keyed by the vendor's call id.

    no-record ──call_started──▶ active ──call_ended──▶ completed
                                    extraction_status: pending ──analysis──▶ complete

Every transition is an insert-or-ignore or an update scoped by ``call_sid``,
so duplicate and out-of-order deliveries converge on the same rows.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog

from intake.config import Settings
from intake.database import Database
from intake.events import candidate_phones, extract_analysis, extract_call_id
from intake.extraction import (
    map_extraction,
    optional_text,
    parse_optional_float,
    parse_optional_int,
    project_qualification,
)
from intake.leads import LeadResolver
from intake.models import Conversation, ExtractionStatus, Outcome, utcnow
from intake.retell_client import RetellClient
from intake.transcript import segment_transcript, utterances_from_transcript_object

log = structlog.get_logger(__name__)


def _epoch_ms_to_datetime(value: Any) -> Optional[datetime]:
    ms = parse_optional_int(value)
    if ms is None:
        return None
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _duration_seconds(call_data: dict) -> Optional[int]:
    ms = parse_optional_int(call_data.get("duration_ms"))
    return round(ms / 1000) if ms is not None else None


class ConversationStateMachine:
    """Applies call lifecycle events to the conversation store."""

    def __init__(
        self,
        db: Database,
        settings: Settings,
        resolver: Optional[LeadResolver] = None,
        retell: Optional[RetellClient] = None,
    ):
        self.db = db
        self.settings = settings
        self.resolver = resolver or LeadResolver(db, settings)
        self.retell = retell

    # ── call_started ────────────────────────────────────────────

    async def on_call_started(self, call_data: dict) -> Outcome:
        call_sid = extract_call_id(call_data)
        if not call_sid:
            log.warning("call_started_missing_call_id")
            return Outcome(reason="missing_call_id")

        # A late or repeated call_started must never reset a conversation
        existing = await self.db.get_conversation_by_call_sid(call_sid)
        if existing:
            log.info("conversation_already_exists", conversation_id=existing.id,
                     call_status=existing.call_status.value)
            return Outcome(reason="conversation_exists", conversation_id=existing.id,
                           lead_id=existing.lead_id)

        lead_id = await self.resolver.resolve(candidate_phones(call_data))

        conv = Conversation(
            call_sid=call_sid,
            lead_id=lead_id,
            direction=call_data.get("direction") or "inbound",
            started_at=_epoch_ms_to_datetime(call_data.get("start_timestamp")) or utcnow(),
            agent_id=call_data.get("agent_id") or self.settings.default_agent_id,
        )
        if not await self.db.insert_conversation(conv):
            winner = await self.db.get_conversation_by_call_sid(call_sid)
            log.info("conversation_insert_raced", call_sid=call_sid)
            return Outcome(
                reason="conversation_exists",
                conversation_id=winner.id if winner else None,
                lead_id=winner.lead_id if winner else lead_id,
            )

        await self.db.ensure_extraction(conv.id, lead_id, self.settings.extraction_version)
        log.info("conversation_created", conversation_id=conv.id, lead_id=lead_id)
        return Outcome(processed=True, conversation_id=conv.id, lead_id=lead_id)

    # ── call_ended ──────────────────────────────────────────────

    async def on_call_ended(self, call_data: dict) -> Outcome:
        call_sid = extract_call_id(call_data)
        if not call_sid:
            log.warning("call_ended_missing_call_id")
            return Outcome(reason="missing_call_id")

        if await self.db.get_conversation_by_call_sid(call_sid) is None:
            log.warning("call_ended_unknown_call_sid")
            return Outcome(reason="conversation_not_found")

        if self.retell is not None:
            call_data = await self.retell.enrich_call_data(call_data)

        analysis = extract_analysis(call_data)
        transcript = optional_text(call_data.get("transcript"))
        conv = await self.db.complete_conversation(
            call_sid,
            ended_at=_epoch_ms_to_datetime(call_data.get("end_timestamp")),
            fallback_ended_at=utcnow(),
            duration=_duration_seconds(call_data),
            recording_url=optional_text(call_data.get("recording_url")),
            transcript=transcript,
            agent_id=optional_text(call_data.get("agent_id")),
            call_analysis=analysis,
        )
        if conv is None:
            log.warning("call_ended_conversation_vanished")
            return Outcome(reason="conversation_not_found")
        log.info("conversation_completed", conversation_id=conv.id, duration=conv.duration)

        transcript_object = call_data.get("transcript_object")
        if transcript_object or transcript is not None:
            utterances = utterances_from_transcript_object(transcript_object) or segment_transcript(transcript)
            await self.db.replace_messages(conv.id, utterances)
            log.info("conversation_messages_saved", conversation_id=conv.id, count=len(utterances))

        if conv.lead_id:
            await self.db.touch_lead_contacted(conv.lead_id, conv.ended_at or utcnow())

        if analysis:
            await self.apply_analysis(conv, analysis)

        return Outcome(processed=True, conversation_id=conv.id, lead_id=conv.lead_id)

    # ── call_analyzed ───────────────────────────────────────────

    async def on_call_analyzed(self, call_data: dict) -> Outcome:
        call_sid = extract_call_id(call_data)
        if not call_sid:
            log.warning("call_analyzed_missing_call_id")
            return Outcome(reason="missing_call_id")

        analysis = extract_analysis(call_data)
        conv = await self.db.update_conversation_analysis(
            call_sid,
            sentiment_score=parse_optional_float(call_data.get("sentiment_score")),
            transcript=optional_text(call_data.get("transcript")),
            call_analysis=analysis,
        )
        if conv is None:
            log.warning("call_analyzed_unknown_call_sid")
            return Outcome(reason="conversation_not_found")

        if analysis:
            await self.apply_analysis(conv, analysis)
        else:
            log.info("call_analyzed_without_analysis", conversation_id=conv.id)

        return Outcome(processed=True, conversation_id=conv.id, lead_id=conv.lead_id)

    # ── transcript_update ───────────────────────────────────────

    async def on_transcript_update(self, call_data: dict) -> Outcome:
        call_sid = extract_call_id(call_data)
        if not call_sid:
            log.warning("transcript_update_missing_call_id")
            return Outcome(reason="missing_call_id")

        transcript = optional_text(call_data.get("transcript"))
        if transcript is None:
            log.info("transcript_update_empty")
            return Outcome(reason="empty_transcript")

        # Messages are only derived from the final transcript at call_ended
        if not await self.db.update_conversation_transcript(call_sid, transcript):
            log.warning("transcript_update_unknown_call_sid")
            return Outcome(reason="conversation_not_found")

        return Outcome(processed=True)

    # ── analysis projection ─────────────────────────────────────

    async def apply_analysis(self, conv: Conversation, analysis: dict) -> None:
        """Upsert the extraction and qualification rows for this conversation."""
        extraction = map_extraction(
            analysis,
            conversation_id=conv.id,
            lead_id=conv.lead_id,
            extraction_version=self.settings.extraction_version,
        )
        await self.db.upsert_extraction(extraction)

        qualification = project_qualification(extraction)
        if qualification is not None:
            await self.db.upsert_qualification(qualification)
        else:
            log.info("qualification_skipped_no_lead", conversation_id=conv.id)

        await self.db.set_extraction_status(conv.id, ExtractionStatus.COMPLETE)
        log.info("extraction_saved", conversation_id=conv.id, lead_id=conv.lead_id)


async def close_stale_conversations(db: Database, older_than_minutes: int) -> int:
    """Complete conversations stuck in ``active`` (their call_ended never arrived)."""
    now = utcnow()
    closed = await db.close_stale_conversations(now - timedelta(minutes=older_than_minutes), now)
    log.info("stale_conversations_closed", count=closed, older_than_minutes=older_than_minutes)
    return closed
