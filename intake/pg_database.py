"""
PostgreSQL store for production deployments.
Uses asyncpg; same contract as the SQLite ``Database``.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence, TypeVar

import asyncpg
import structlog
from pydantic import BaseModel

from intake.database import (
    COUNTED_TABLES,
    EXTRACTION_COLUMNS,
    JSON_COLUMNS,
    QUALIFICATION_COLUMNS,
)
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

log = structlog.get_logger(__name__)

M = TypeVar("M", bound=BaseModel)

# ── Schema DDL ──────────────────────────────────────────────────
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS webhook_events (
    id            TEXT PRIMARY KEY,
    provider      VARCHAR(100) NOT NULL,
    event_id      VARCHAR(255) DEFAULT 'unknown',
    payload       JSONB,
    received_at   TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS leads (
    id             TEXT PRIMARY KEY,
    first_name     VARCHAR(255) DEFAULT '',
    last_name      VARCHAR(255) DEFAULT '',
    phone_raw      VARCHAR(50) DEFAULT '',
    phone_e164     VARCHAR(50) DEFAULT '',
    source         VARCHAR(255) DEFAULT '',
    status         VARCHAR(30) DEFAULT 'new',
    last_contacted TIMESTAMPTZ,
    created_at     TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS phone_lead_mapping (
    phone_e164    VARCHAR(50) PRIMARY KEY,
    lead_id       TEXT NOT NULL,
    lead_name     VARCHAR(255) DEFAULT '',
    phone_raw     VARCHAR(50) DEFAULT '',
    last_updated  TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS conversations (
    id                 TEXT PRIMARY KEY,
    call_sid           VARCHAR(255) NOT NULL UNIQUE,
    lead_id            TEXT,
    direction          VARCHAR(20) DEFAULT 'inbound',
    call_status        VARCHAR(20) NOT NULL DEFAULT 'active',
    extraction_status  VARCHAR(20) NOT NULL DEFAULT 'pending',
    started_at         TIMESTAMPTZ,
    ended_at           TIMESTAMPTZ,
    duration           BIGINT,
    recording_url      TEXT,
    transcript         TEXT,
    sentiment_score    DOUBLE PRECISION,
    agent_id           VARCHAR(255),
    call_analysis      JSONB,
    created_at         TIMESTAMPTZ NOT NULL DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS conversation_messages (
    conversation_id  TEXT NOT NULL,
    seq              INT NOT NULL,
    role             VARCHAR(10) NOT NULL,
    content          TEXT NOT NULL,
    UNIQUE(conversation_id, seq)
);

CREATE TABLE IF NOT EXISTS conversation_extractions (
    conversation_id                TEXT PRIMARY KEY,
    lead_id                        TEXT,
    extraction_timestamp           TIMESTAMPTZ,
    extraction_version             VARCHAR(20) DEFAULT '',
    pre_approval_status            TEXT,
    current_lender                 TEXT,
    buying_timeline                TEXT,
    lead_temperature               TEXT,
    lead_score                     BIGINT,
    lead_qualification_status      TEXT,
    call_outcome                   TEXT,
    property_address               TEXT,
    property_mls_number            TEXT,
    property_price                 BIGINT,
    property_type                  TEXT,
    property_use                   TEXT,
    multiple_properties_interested BOOLEAN,
    annual_income                  BIGINT,
    monthly_debt_payments          BIGINT,
    credit_score_range             TEXT,
    debt_to_income_ratio           DOUBLE PRECISION,
    employment_status              TEXT,
    employment_length              TEXT,
    is_self_employed               BOOLEAN,
    loan_amount                    BIGINT,
    loan_type                      TEXT,
    down_payment_amount            BIGINT,
    down_payment_percentage        BIGINT,
    has_co_borrower                BOOLEAN,
    first_time_buyer               BOOLEAN,
    va_eligible                    BOOLEAN,
    ready_to_buy_timeline          TEXT,
    has_realtor                    BOOLEAN,
    realtor_name                   TEXT,
    preferred_contact_method       TEXT,
    best_time_to_call              TEXT,
    wants_credit_review            BOOLEAN,
    wants_down_payment_assistance  BOOLEAN,
    credit_concerns                BOOLEAN,
    debt_concerns                  BOOLEAN,
    down_payment_concerns          BOOLEAN,
    job_change_concerns            BOOLEAN,
    interest_rate_concerns         BOOLEAN,
    knows_overlays                 BOOLEAN,
    overlay_education_completed    BOOLEAN,
    objection_details              JSONB,
    next_steps                     JSONB,
    primary_concerns               JSONB,
    interested_properties          JSONB,
    requested_actions              JSONB,
    conversation_summary           TEXT,
    follow_up_date                 TEXT,
    raw_extraction_data            JSONB
);

CREATE TABLE IF NOT EXISTS qualification_data (
    lead_id                        TEXT NOT NULL,
    conversation_id                TEXT NOT NULL,
    annual_income                  BIGINT,
    loan_amount                    BIGINT,
    loan_type                      TEXT,
    down_payment_percentage        BIGINT,
    debt_to_income_ratio           DOUBLE PRECISION,
    estimated_credit_score         TEXT,
    is_self_employed               BOOLEAN,
    has_co_borrower                BOOLEAN,
    pre_approval_status            TEXT,
    current_lender                 TEXT,
    first_time_buyer               BOOLEAN,
    va_eligible                    BOOLEAN,
    property_type                  TEXT,
    property_use                   TEXT,
    property_address               TEXT,
    property_mls_number            TEXT,
    property_price                 BIGINT,
    has_specific_property          BOOLEAN,
    multiple_properties_interested BOOLEAN,
    lead_temperature               TEXT,
    time_frame                     TEXT,
    ready_to_buy_timeline          TEXT,
    credit_concerns                BOOLEAN,
    debt_concerns                  BOOLEAN,
    down_payment_concerns          BOOLEAN,
    job_change_concerns            BOOLEAN,
    interest_rate_concerns         BOOLEAN,
    knows_about_overlays           BOOLEAN,
    overlay_education_completed    BOOLEAN,
    wants_credit_review            BOOLEAN,
    wants_down_payment_assistance  BOOLEAN,
    objection_details              JSONB,
    preferred_contact_method       TEXT,
    best_time_to_call              TEXT,
    qualifying_notes               TEXT,
    updated_at                     TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE(lead_id, conversation_id)
);

CREATE INDEX IF NOT EXISTS idx_webhook_events_received ON webhook_events(received_at);
CREATE INDEX IF NOT EXISTS idx_leads_phone ON leads(phone_e164);
CREATE INDEX IF NOT EXISTS idx_conversations_status ON conversations(call_status);
CREATE INDEX IF NOT EXISTS idx_conversations_lead ON conversations(lead_id);
"""


def _json(value: Any) -> Optional[str]:
    return json.dumps(value, default=str) if value is not None else None


def _record_to_model(model: type[M], row: asyncpg.Record, table: str) -> M:
    data = dict(row)
    for col in JSON_COLUMNS.get(table, ()):
        if isinstance(data.get(col), str):
            data[col] = json.loads(data[col])
    return model.model_validate(data)


class PostgresDatabase:
    """asyncpg pool wrapper implementing the intake store contract."""

    def __init__(self, database_url: str):
        self.database_url = database_url
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Create connection pool and initialise schema."""
        self._pool = await asyncpg.create_pool(
            self.database_url,
            min_size=2,
            max_size=10,
        )
        async with self._pool.acquire() as conn:
            await conn.execute(SCHEMA_SQL)
        log.info("database_connected", url=self.database_url[:30] + "...")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            log.info("database_closed")

    # ── Webhook audit log ───────────────────────────────────────

    async def log_webhook_event(self, event: WebhookEvent) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO webhook_events (id, provider, event_id, payload, received_at)
                   VALUES ($1, $2, $3, $4::jsonb, $5)""",
                event.id, event.provider, event.event_id,
                _json(event.payload), event.received_at,
            )

    async def list_webhook_events(
        self, since: Optional[datetime] = None, limit: int = 1000
    ) -> list[WebhookEvent]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """SELECT * FROM webhook_events
                   WHERE $1::timestamptz IS NULL OR received_at >= $1::timestamptz
                   ORDER BY received_at ASC LIMIT $2""",
                since, limit,
            )
            return [_record_to_model(WebhookEvent, r, "webhook_events") for r in rows]

    # ── Leads & phone mappings ──────────────────────────────────

    async def get_mapping(self, phone_e164: str) -> Optional[PhoneLeadMapping]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM phone_lead_mapping WHERE phone_e164 = $1", phone_e164
            )
            return PhoneLeadMapping.model_validate(dict(row)) if row else None

    async def insert_mapping_if_absent(self, mapping: PhoneLeadMapping) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO phone_lead_mapping (phone_e164, lead_id, lead_name, phone_raw, last_updated)
                   VALUES ($1, $2, $3, $4, $5)
                   ON CONFLICT (phone_e164) DO NOTHING""",
                mapping.phone_e164, mapping.lead_id, mapping.lead_name,
                mapping.phone_raw, mapping.last_updated,
            )

    async def insert_lead(self, lead: Lead) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO leads
                   (id, first_name, last_name, phone_raw, phone_e164, source, status, created_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8)""",
                lead.id, lead.first_name, lead.last_name, lead.phone_raw,
                lead.phone_e164, lead.source, lead.status, lead.created_at,
            )

    async def delete_lead(self, lead_id: str) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute("DELETE FROM leads WHERE id = $1", lead_id)

    async def get_lead(self, lead_id: str) -> Optional[Lead]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow("SELECT * FROM leads WHERE id = $1", lead_id)
            return Lead.model_validate(dict(row)) if row else None

    async def touch_lead_contacted(self, lead_id: str, when: datetime) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE leads SET last_contacted = $1 WHERE id = $2", when, lead_id
            )

    # ── Conversations ───────────────────────────────────────────

    async def get_conversation_by_call_sid(self, call_sid: str) -> Optional[Conversation]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversations WHERE call_sid = $1", call_sid
            )
            return _record_to_model(Conversation, row, "conversations") if row else None

    async def insert_conversation(self, conv: Conversation) -> bool:
        async with self._pool.acquire() as conn:
            inserted = await conn.fetchval(
                """INSERT INTO conversations
                   (id, call_sid, lead_id, direction, call_status, extraction_status,
                    started_at, agent_id, created_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                   ON CONFLICT (call_sid) DO NOTHING
                   RETURNING id""",
                conv.id, conv.call_sid, conv.lead_id, conv.direction,
                conv.call_status.value, conv.extraction_status.value,
                conv.started_at, conv.agent_id, conv.created_at,
            )
            return inserted is not None

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
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """UPDATE conversations
                   SET call_status = $1,
                       ended_at = COALESCE($2, ended_at, $3),
                       duration = COALESCE($4, duration),
                       recording_url = COALESCE($5, recording_url),
                       transcript = COALESCE($6, transcript),
                       agent_id = COALESCE($7, agent_id),
                       call_analysis = COALESCE($8::jsonb, call_analysis),
                       extraction_status = CASE
                           WHEN extraction_status = $9 THEN extraction_status
                           ELSE $10
                       END
                   WHERE call_sid = $11
                   RETURNING *""",
                CallStatus.COMPLETED.value, ended_at, fallback_ended_at, duration,
                recording_url, transcript, agent_id, _json(call_analysis),
                ExtractionStatus.COMPLETE.value, ExtractionStatus.PENDING.value,
                call_sid,
            )
            return _record_to_model(Conversation, row, "conversations") if row else None

    async def update_conversation_analysis(
        self,
        call_sid: str,
        sentiment_score: Optional[float] = None,
        transcript: Optional[str] = None,
        call_analysis: Optional[dict] = None,
    ) -> Optional[Conversation]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                """UPDATE conversations
                   SET sentiment_score = COALESCE($1, sentiment_score),
                       transcript = COALESCE($2, transcript),
                       call_analysis = COALESCE($3::jsonb, call_analysis)
                   WHERE call_sid = $4
                   RETURNING *""",
                sentiment_score, transcript, _json(call_analysis), call_sid,
            )
            return _record_to_model(Conversation, row, "conversations") if row else None

    async def update_conversation_transcript(self, call_sid: str, transcript: str) -> bool:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                "UPDATE conversations SET transcript = $1 WHERE call_sid = $2",
                transcript, call_sid,
            )
            return result != "UPDATE 0"

    async def set_extraction_status(self, conversation_id: str, status: ExtractionStatus) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                "UPDATE conversations SET extraction_status = $1 WHERE id = $2",
                status.value, conversation_id,
            )

    async def close_stale_conversations(self, cutoff: datetime, now: datetime) -> int:
        async with self._pool.acquire() as conn:
            result = await conn.execute(
                """UPDATE conversations
                   SET call_status = $1,
                       ended_at = $2,
                       extraction_status = CASE
                           WHEN extraction_status = $3 THEN extraction_status
                           ELSE $4
                       END
                   WHERE call_status = $5 AND COALESCE(started_at, created_at) < $6""",
                CallStatus.COMPLETED.value, now,
                ExtractionStatus.COMPLETE.value, ExtractionStatus.PENDING.value,
                CallStatus.ACTIVE.value, cutoff,
            )
            return int(result.split()[-1])

    # ── Messages ────────────────────────────────────────────────

    async def replace_messages(self, conversation_id: str, utterances: Sequence[Utterance]) -> None:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """INSERT INTO conversation_messages (conversation_id, seq, role, content)
                       VALUES ($1, $2, $3, $4)
                       ON CONFLICT (conversation_id, seq) DO UPDATE SET
                           role = EXCLUDED.role,
                           content = EXCLUDED.content""",
                    [(conversation_id, u.seq, u.role.value, u.content) for u in utterances],
                )
                await conn.execute(
                    "DELETE FROM conversation_messages WHERE conversation_id = $1 AND seq >= $2",
                    conversation_id, len(utterances),
                )

    async def get_messages(self, conversation_id: str) -> list[ConversationMessage]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM conversation_messages WHERE conversation_id = $1 ORDER BY seq ASC",
                conversation_id,
            )
            return [ConversationMessage.model_validate(dict(r)) for r in rows]

    # ── Extractions & qualification ─────────────────────────────

    async def ensure_extraction(
        self, conversation_id: str, lead_id: Optional[str], extraction_version: str = ""
    ) -> None:
        async with self._pool.acquire() as conn:
            await conn.execute(
                """INSERT INTO conversation_extractions
                   (conversation_id, lead_id, extraction_timestamp, extraction_version)
                   VALUES ($1, $2, $3, $4)
                   ON CONFLICT (conversation_id) DO NOTHING""",
                conversation_id, lead_id, utcnow(), extraction_version,
            )

    async def upsert_extraction(self, extraction: ConversationExtraction) -> None:
        await self._upsert(
            "conversation_extractions", EXTRACTION_COLUMNS, ("conversation_id",), extraction
        )

    async def get_extraction(self, conversation_id: str) -> Optional[ConversationExtraction]:
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM conversation_extractions WHERE conversation_id = $1",
                conversation_id,
            )
            return (
                _record_to_model(ConversationExtraction, row, "conversation_extractions")
                if row else None
            )

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
        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM qualification_data WHERE lead_id = $1 AND conversation_id = $2",
                lead_id, conversation_id,
            )
            return _record_to_model(QualificationData, row, "qualification_data") if row else None

    # ── Reporting ───────────────────────────────────────────────

    async def table_counts(self) -> dict[str, int]:
        async with self._pool.acquire() as conn:
            return {
                table: await conn.fetchval(f"SELECT COUNT(*) FROM {table}")
                for table in COUNTED_TABLES
            }

    async def conversation_status_counts(self) -> dict[str, int]:
        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT call_status, COUNT(*) AS cnt FROM conversations GROUP BY call_status"
            )
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
        placeholders = ", ".join(
            f"${i}::jsonb" if c in json_cols else f"${i}"
            for i, c in enumerate(columns, start=1)
        )
        updates = ", ".join(f"{c} = EXCLUDED.{c}" for c in columns if c not in key)
        values = [_json(data[c]) if c in json_cols else data[c] for c in columns]
        async with self._pool.acquire() as conn:
            await conn.execute(
                f"""INSERT INTO {table} ({", ".join(columns)})
                    VALUES ({placeholders})
                    ON CONFLICT ({", ".join(key)}) DO UPDATE SET {updates}""",
                *values,
            )
