"""
SQLite-backed persistence layer using aiosqlite.

Owns the store contract the pipeline relies on: every natural key
(call_sid, phone_e164, conversation_id, (lead_id, conversation_id),
(conversation_id, seq)) is a UNIQUE constraint and every racing create is a
single ``INSERT ... ON CONFLICT`` statement.
"""

from __future__ import annotations

import json
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional, Sequence, TypeVar

import aiosqlite
from pydantic import BaseModel

from intake.models import (
    CallStatus,
    Conversation,
    ConversationExtraction,
    ConversationMessage,
    ExtractionStatus,
    Lead,
    PhoneLeadMapping,
    QualificationData,
    Utterance,
    WebhookEvent,
    utcnow,
)

M = TypeVar("M", bound=BaseModel)

# Columns holding JSON documents, per table
JSON_COLUMNS: dict[str, frozenset[str]] = {
    "webhook_events": frozenset({"payload"}),
    "conversations": frozenset({"call_analysis"}),
    "conversation_extractions": frozenset({
        "objection_details",
        "next_steps",
        "primary_concerns",
        "interested_properties",
        "requested_actions",
        "raw_extraction_data",
    }),
    "qualification_data": frozenset({"objection_details"}),
}

EXTRACTION_COLUMNS: tuple[str, ...] = tuple(ConversationExtraction.model_fields)
QUALIFICATION_COLUMNS: tuple[str, ...] = tuple(QualificationData.model_fields)

COUNTED_TABLES = (
    "webhook_events",
    "leads",
    "phone_lead_mapping",
    "conversations",
    "conversation_messages",
    "conversation_extractions",
    "qualification_data",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS webhook_events (
    id            TEXT PRIMARY KEY,
    provider      TEXT NOT NULL,
    event_id      TEXT DEFAULT 'unknown',
    payload       TEXT,
    received_at   TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS leads (
    id             TEXT PRIMARY KEY,
    first_name     TEXT DEFAULT '',
    last_name      TEXT DEFAULT '',
    phone_raw      TEXT DEFAULT '',
    phone_e164     TEXT DEFAULT '',
    source         TEXT DEFAULT '',
    status         TEXT DEFAULT 'new',
    last_contacted TEXT,
    created_at     TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS phone_lead_mapping (
    phone_e164    TEXT PRIMARY KEY,
    lead_id       TEXT NOT NULL,
    lead_name     TEXT DEFAULT '',
    phone_raw     TEXT DEFAULT '',
    last_updated  TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversations (
    id                 TEXT PRIMARY KEY,
    call_sid           TEXT NOT NULL UNIQUE,
    lead_id            TEXT,
    direction          TEXT DEFAULT 'inbound',
    call_status        TEXT NOT NULL DEFAULT 'active',
    extraction_status  TEXT NOT NULL DEFAULT 'pending',
    started_at         TEXT,
    ended_at           TEXT,
    duration           INTEGER,
    recording_url      TEXT,
    transcript         TEXT,
    sentiment_score    REAL,
    agent_id           TEXT,
    call_analysis      TEXT,
    created_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS conversation_messages (
    conversation_id  TEXT NOT NULL,
    seq              INTEGER NOT NULL,
    role             TEXT NOT NULL,
    content          TEXT NOT NULL,
    UNIQUE(conversation_id, seq)
);

CREATE TABLE IF NOT EXISTS conversation_extractions (
    conversation_id                TEXT PRIMARY KEY,
    lead_id                        TEXT,
    extraction_timestamp           TEXT,
    extraction_version             TEXT DEFAULT '',
    pre_approval_status            TEXT,
    current_lender                 TEXT,
    buying_timeline                TEXT,
    lead_temperature               TEXT,
    lead_score                     INTEGER,
    lead_qualification_status      TEXT,
    call_outcome                   TEXT,
    property_address               TEXT,
    property_mls_number            TEXT,
    property_price                 INTEGER,
    property_type                  TEXT,
    property_use                   TEXT,
    multiple_properties_interested INTEGER,
    annual_income                  INTEGER,
    monthly_debt_payments          INTEGER,
    credit_score_range             TEXT,
    debt_to_income_ratio           REAL,
    employment_status              TEXT,
    employment_length              TEXT,
    is_self_employed               INTEGER,
    loan_amount                    INTEGER,
    loan_type                      TEXT,
    down_payment_amount            INTEGER,
    down_payment_percentage        INTEGER,
    has_co_borrower                INTEGER,
    first_time_buyer               INTEGER,
    va_eligible                    INTEGER,
    ready_to_buy_timeline          TEXT,
    has_realtor                    INTEGER,
    realtor_name                   TEXT,
    preferred_contact_method       TEXT,
    best_time_to_call              TEXT,
    wants_credit_review            INTEGER,
    wants_down_payment_assistance  INTEGER,
    credit_concerns                INTEGER,
    debt_concerns                  INTEGER,
    down_payment_concerns          INTEGER,
    job_change_concerns            INTEGER,
    interest_rate_concerns         INTEGER,
    knows_overlays                 INTEGER,
    overlay_education_completed    INTEGER,
    objection_details              TEXT,
    next_steps                     TEXT,
    primary_concerns               TEXT,
    interested_properties          TEXT,
    requested_actions              TEXT,
    conversation_summary           TEXT,
    follow_up_date                 TEXT,
    raw_extraction_data            TEXT
);

CREATE TABLE IF NOT EXISTS qualification_data (
    lead_id                        TEXT NOT NULL,
    conversation_id                TEXT NOT NULL,
    annual_income                  INTEGER,
    loan_amount                    INTEGER,
    loan_type                      TEXT,
    down_payment_percentage        INTEGER,
    debt_to_income_ratio           REAL,
    estimated_credit_score         TEXT,
    is_self_employed               INTEGER,
    has_co_borrower                INTEGER,
    pre_approval_status            TEXT,
    current_lender                 TEXT,
    first_time_buyer               INTEGER,
    va_eligible                    INTEGER,
    property_type                  TEXT,
    property_use                   TEXT,
    property_address               TEXT,
    property_mls_number            TEXT,
    property_price                 INTEGER,
    has_specific_property          INTEGER,
    multiple_properties_interested INTEGER,
    lead_temperature               TEXT,
    time_frame                     TEXT,
    ready_to_buy_timeline          TEXT,
    credit_concerns                INTEGER,
    debt_concerns                  INTEGER,
    down_payment_concerns          INTEGER,
    job_change_concerns            INTEGER,
    interest_rate_concerns         INTEGER,
    knows_about_overlays           INTEGER,
    overlay_education_completed    INTEGER,
    wants_credit_review            INTEGER,
    wants_down_payment_assistance  INTEGER,
    objection_details              TEXT,
    preferred_contact_method       TEXT,
    best_time_to_call              TEXT,
    qualifying_notes               TEXT,
    updated_at                     TEXT NOT NULL,
    UNIQUE(lead_id, conversation_id)
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_received ON webhook_events(received_at);
CREATE INDEX IF NOT EXISTS idx_leads_phone ON leads(phone_e164);
CREATE INDEX IF NOT EXISTS idx_conversations_status ON conversations(call_status);
CREATE INDEX IF NOT EXISTS idx_conversations_lead ON conversations(lead_id);
"""


def _to_db(value: Any, as_json: bool = False) -> Any:
    if as_json:
        return json.dumps(value, default=str) if value is not None else None
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _row_to_model(model: type[M], row: Any, table: str) -> M:
    data = dict(row)
    for col in JSON_COLUMNS.get(table, ()):
        if data.get(col) is not None:
            data[col] = json.loads(data[col])
    return model.model_validate(data)


class Database:
    """Async SQLite wrapper for the call intake pipeline."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()

    # ── Webhook audit log ───────────────────────────────────────

    async def log_webhook_event(self, event: WebhookEvent) -> None:
        """Append a raw webhook to the audit log. Never updated afterwards."""
        await self._db.execute(
            """
            INSERT INTO webhook_events (id, provider, event_id, payload, received_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.provider,
                event.event_id,
                _to_db(event.payload, as_json=True),
                _to_db(event.received_at),
            ),
        )
        await self._db.commit()

    async def list_webhook_events(
        self, since: Optional[datetime] = None, limit: int = 1000
    ) -> list[WebhookEvent]:
        cursor = await self._db.execute(
            """
            SELECT * FROM webhook_events
            WHERE received_at >= ?
            ORDER BY received_at ASC
            LIMIT ?
            """,
            (_to_db(since) if since else "", limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_model(WebhookEvent, r, "webhook_events") for r in rows]

    # ── Leads & phone mappings ──────────────────────────────────

    async def get_mapping(self, phone_e164: str) -> Optional[PhoneLeadMapping]:
        cursor = await self._db.execute(
            "SELECT * FROM phone_lead_mapping WHERE phone_e164 = ?",
            (phone_e164,),
        )
        row = await cursor.fetchone()
        return PhoneLeadMapping.model_validate(dict(row)) if row else None

    async def insert_mapping_if_absent(self, mapping: PhoneLeadMapping) -> None:
        """Insert-or-ignore on phone_e164; the first writer for a number wins."""
        await self._db.execute(
            """
            INSERT INTO phone_lead_mapping (phone_e164, lead_id, lead_name, phone_raw, last_updated)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(phone_e164) DO NOTHING
            """,
            (
                mapping.phone_e164,
                mapping.lead_id,
                mapping.lead_name,
                mapping.phone_raw,
                _to_db(mapping.last_updated),
            ),
        )
        await self._db.commit()

    async def insert_lead(self, lead: Lead) -> None:
        await self._db.execute(
            """
            INSERT INTO leads
                (id, first_name, last_name, phone_raw, phone_e164, source, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                lead.id,
                lead.first_name,
                lead.last_name,
                lead.phone_raw,
                lead.phone_e164,
                lead.source,
                lead.status,
                _to_db(lead.created_at),
            ),
        )
        await self._db.commit()

    async def delete_lead(self, lead_id: str) -> None:
        await self._db.execute("DELETE FROM leads WHERE id = ?", (lead_id,))
        await self._db.commit()

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        cursor = await self._db.execute("SELECT * FROM leads WHERE id = ?", (lead_id,))
        row = await cursor.fetchone()
        return Lead.model_validate(dict(row)) if row else None

    async def touch_lead_contacted(self, lead_id: str, when: datetime) -> None:
        """Only ``last_contacted`` is written; the rest of the lead belongs to humans."""
        await self._db.execute(
            "UPDATE leads SET last_contacted = ? WHERE id = ?",
            (_to_db(when), lead_id),
        )
        await self._db.commit()

    # ── Conversations ───────────────────────────────────────────

    async def get_conversation_by_call_sid(self, call_sid: str) -> Optional[Conversation]:
        cursor = await self._db.execute(
            "SELECT * FROM conversations WHERE call_sid = ?",
            (call_sid,),
        )
        row = await cursor.fetchone()
        return _row_to_model(Conversation, row, "conversations") if row else None

    async def insert_conversation(self, conv: Conversation) -> bool:
        """Insert-or-ignore on call_sid. Returns False when the call already had a row."""
        cursor = await self._db.execute(
            """
            INSERT INTO conversations
                (id, call_sid, lead_id, direction, call_status, extraction_status,
                 started_at, agent_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(call_sid) DO NOTHING
            """,
            (
                conv.id,
                conv.call_sid,
                conv.lead_id,
                conv.direction,
                _to_db(conv.call_status),
                _to_db(conv.extraction_status),
                _to_db(conv.started_at),
                conv.agent_id,
                _to_db(conv.created_at),
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    async def complete_conversation(
        self,
        call_sid: str,
        ended_at: Optional[datetime],
        fallback_ended_at: datetime,
        duration: Optional[int] = None,
        recording_url: Optional[str] = None,
        transcript: Optional[str] = None,
        agent_id: Optional[str] = None,
        call_analysis: Optional[dict] = None,
    ) -> Optional[Conversation]:
        """
        Mark the call completed. Absent values keep what is stored, and an
        extraction that already landed stays ``complete``.
        """
        await self._db.execute(
            """
            UPDATE conversations
            SET call_status = ?,
                ended_at = COALESCE(?, ended_at, ?),
                duration = COALESCE(?, duration),
                recording_url = COALESCE(?, recording_url),
                transcript = COALESCE(?, transcript),
                agent_id = COALESCE(?, agent_id),
                call_analysis = COALESCE(?, call_analysis),
                extraction_status = CASE
                    WHEN extraction_status = ? THEN extraction_status
                    ELSE ?
                END
            WHERE call_sid = ?
            """,
            (
                CallStatus.COMPLETED.value,
                _to_db(ended_at),
                _to_db(fallback_ended_at),
                duration,
                recording_url,
                transcript,
                agent_id,
                _to_db(call_analysis, as_json=True),
                ExtractionStatus.COMPLETE.value,
                ExtractionStatus.PENDING.value,
                call_sid,
            ),
        )
        await self._db.commit()
        return await self.get_conversation_by_call_sid(call_sid)

    async def update_conversation_analysis(
        self,
        call_sid: str,
        sentiment_score: Optional[float] = None,
        transcript: Optional[str] = None,
        call_analysis: Optional[dict] = None,
    ) -> Optional[Conversation]:
        await self._db.execute(
            """
            UPDATE conversations
            SET sentiment_score = COALESCE(?, sentiment_score),
                transcript = COALESCE(?, transcript),
                call_analysis = COALESCE(?, call_analysis)
            WHERE call_sid = ?
            """,
            (sentiment_score, transcript, _to_db(call_analysis, as_json=True), call_sid),
        )
        await self._db.commit()
        return await self.get_conversation_by_call_sid(call_sid)

    async def update_conversation_transcript(self, call_sid: str, transcript: str) -> bool:
        cursor = await self._db.execute(
            "UPDATE conversations SET transcript = ? WHERE call_sid = ?",
            (transcript, call_sid),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    async def set_extraction_status(self, conversation_id: str, status: ExtractionStatus) -> None:
        await self._db.execute(
            "UPDATE conversations SET extraction_status = ? WHERE id = ?",
            (status.value, conversation_id),
        )
        await self._db.commit()

    async def close_stale_conversations(self, cutoff: datetime, now: datetime) -> int:
        """Complete every conversation still ``active`` that started before ``cutoff``."""
        cursor = await self._db.execute(
            """
            UPDATE conversations
            SET call_status = ?,
                ended_at = ?,
                extraction_status = CASE
                    WHEN extraction_status = ? THEN extraction_status
                    ELSE ?
                END
            WHERE call_status = ? AND COALESCE(started_at, created_at) < ?
            """,
            (
                CallStatus.COMPLETED.value,
                _to_db(now),
                ExtractionStatus.COMPLETE.value,
                ExtractionStatus.PENDING.value,
                CallStatus.ACTIVE.value,
                _to_db(cutoff),
            ),
        )
        await self._db.commit()
        return cursor.rowcount

    # ── Messages ────────────────────────────────────────────────

    async def replace_messages(self, conversation_id: str, utterances: Sequence[Utterance]) -> None:
        """
        Make the stored messages equal ``utterances``: upsert by
        (conversation_id, seq) and drop any tail left by a longer earlier
        transcript. Committed once.
        """
        await self._db.executemany(
            """
            INSERT INTO conversation_messages (conversation_id, seq, role, content)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(conversation_id, seq) DO UPDATE SET
                role = excluded.role,
                content = excluded.content
            """,
            [(conversation_id, u.seq, u.role.value, u.content) for u in utterances],
        )
        await self._db.execute(
            "DELETE FROM conversation_messages WHERE conversation_id = ? AND seq >= ?",
            (conversation_id, len(utterances)),
        )
        await self._db.commit()

    async def get_messages(self, conversation_id: str) -> list[ConversationMessage]:
        cursor = await self._db.execute(
            "SELECT * FROM conversation_messages WHERE conversation_id = ? ORDER BY seq ASC",
            (conversation_id,),
        )
        rows = await cursor.fetchall()
        return [ConversationMessage.model_validate(dict(r)) for r in rows]

    # ── Extractions & qualification ─────────────────────────────

    async def ensure_extraction(
        self, conversation_id: str, lead_id: Optional[str], extraction_version: str = ""
    ) -> None:
        """Create the empty extraction row a later upsert will fill in."""
        await self._db.execute(
            """
            INSERT INTO conversation_extractions
                (conversation_id, lead_id, extraction_timestamp, extraction_version)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(conversation_id) DO NOTHING
            """,
            (conversation_id, lead_id, _to_db(utcnow()), extraction_version),
        )
        await self._db.commit()

    async def upsert_extraction(self, extraction: ConversationExtraction) -> None:
        await self._upsert(
            "conversation_extractions",
            EXTRACTION_COLUMNS,
            ("conversation_id",),
            extraction,
        )

    async def get_extraction(self, conversation_id: str) -> Optional[ConversationExtraction]:
        cursor = await self._db.execute(
            "SELECT * FROM conversation_extractions WHERE conversation_id = ?",
            (conversation_id,),
        )
        row = await cursor.fetchone()
        return _row_to_model(ConversationExtraction, row, "conversation_extractions") if row else None

    async def upsert_qualification(self, qualification: QualificationData) -> None:
        await self._upsert(
            "qualification_data",
            QUALIFICATION_COLUMNS,
            ("lead_id", "conversation_id"),
            qualification,
        )

    async def get_qualification(
        self, lead_id: str, conversation_id: str
    ) -> Optional[QualificationData]:
        cursor = await self._db.execute(
            "SELECT * FROM qualification_data WHERE lead_id = ? AND conversation_id = ?",
            (lead_id, conversation_id),
        )
        row = await cursor.fetchone()
        return _row_to_model(QualificationData, row, "qualification_data") if row else None

    # ── Reporting ───────────────────────────────────────────────

    async def table_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for table in COUNTED_TABLES:
            cursor = await self._db.execute(f"SELECT COUNT(*) AS cnt FROM {table}")
            row = await cursor.fetchone()
            counts[table] = row["cnt"] if row else 0
        return counts

    async def conversation_status_counts(self) -> dict[str, int]:
        cursor = await self._db.execute(
            "SELECT call_status, COUNT(*) AS cnt FROM conversations GROUP BY call_status"
        )
        rows = await cursor.fetchall()
        return {r["call_status"]: r["cnt"] for r in rows}

    # ── Helpers ─────────────────────────────────────────────────

    async def _upsert(
        self,
        table: str,
        columns: Sequence[str],
        key: Sequence[str],
        record: BaseModel,
    ) -> None:
        json_cols = JSON_COLUMNS.get(table, frozenset())
        data = record.model_dump()
        updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c not in key)
        await self._db.execute(
            f"""
            INSERT INTO {table} ({", ".join(columns)})
            VALUES ({", ".join("?" for _ in columns)})
            ON CONFLICT({", ".join(key)}) DO UPDATE SET {updates}
            """,
            tuple(_to_db(data[c], as_json=c in json_cols) for c in columns),
        )
        await self._db.commit()


def create_database(settings) -> "Database":
    """Pick the store backend: PostgreSQL when a DSN is configured, SQLite otherwise."""
    if settings.database_url:
        from intake.pg_database import PostgresDatabase

        return PostgresDatabase(settings.database_url)  # type: ignore[return-value]
    return Database(settings.database_path)
