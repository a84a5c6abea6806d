"""
Shared data models used across the application.
"""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


# ── Enums ───────────────────────────────────────────────────────
class EventType(str, enum.Enum):
    CALL_STARTED = "call_started"
    CALL_ENDED = "call_ended"
    CALL_ANALYZED = "call_analyzed"
    TRANSCRIPT_UPDATE = "transcript_update"


class CallStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class ExtractionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETE = "complete"


class Role(str, enum.Enum):
    AGENT = "agent"
    LEAD = "lead"


# ── Classified webhook event ───────────────────────────────────
class CallEvent(BaseModel):
    """Canonical form of an inbound webhook, whatever shape it arrived in."""
    event_type: str = "unknown"
    call_data: dict[str, Any] = Field(default_factory=dict)


class Outcome(BaseModel):
    """Result of driving one event through the state machine."""
    processed: bool = False
    reason: str = ""
    conversation_id: Optional[str] = None
    lead_id: Optional[str] = None


# ── Persisted records ──────────────────────────────────────────
class WebhookEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    provider: str
    event_id: str = "unknown"
    payload: Any = None
    received_at: datetime = Field(default_factory=utcnow)


class Lead(BaseModel):
    id: str = Field(default_factory=new_id)
    first_name: str = ""
    last_name: str = ""
    phone_raw: str = ""
    phone_e164: str = ""
    source: str = ""
    status: str = "new"
    last_contacted: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class PhoneLeadMapping(BaseModel):
    phone_e164: str
    lead_id: str
    lead_name: str = ""
    phone_raw: str = ""
    last_updated: datetime = Field(default_factory=utcnow)


class Conversation(BaseModel):
    id: str = Field(default_factory=new_id)
    call_sid: str
    lead_id: Optional[str] = None
    direction: str = "inbound"
    call_status: CallStatus = CallStatus.ACTIVE
    extraction_status: ExtractionStatus = ExtractionStatus.PENDING
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    duration: Optional[int] = Field(default=None, description="Seconds")
    recording_url: Optional[str] = None
    transcript: Optional[str] = None
    sentiment_score: Optional[float] = None
    agent_id: Optional[str] = None
    call_analysis: Optional[dict] = None
    created_at: datetime = Field(default_factory=utcnow)


class Utterance(BaseModel):
    role: Role
    content: str
    seq: int


class ConversationMessage(Utterance):
    conversation_id: str


# ── Extraction / qualification ─────────────────────────────────
class ConversationExtraction(BaseModel):
    conversation_id: str
    lead_id: Optional[str] = None
    extraction_timestamp: datetime = Field(default_factory=utcnow)
    extraction_version: str = ""

    # Core qualification
    pre_approval_status: Optional[str] = None
    current_lender: Optional[str] = None
    buying_timeline: Optional[str] = None
    lead_temperature: Optional[str] = None
    lead_score: Optional[int] = None
    lead_qualification_status: Optional[str] = None
    call_outcome: Optional[str] = None

    # Property
    property_address: Optional[str] = None
    property_mls_number: Optional[str] = None
    property_price: Optional[int] = None
    property_type: Optional[str] = None
    property_use: Optional[str] = None
    multiple_properties_interested: Optional[bool] = None

    # Financial
    annual_income: Optional[int] = None
    monthly_debt_payments: Optional[int] = None
    credit_score_range: Optional[str] = None
    debt_to_income_ratio: Optional[float] = None
    employment_status: Optional[str] = None
    employment_length: Optional[str] = None
    is_self_employed: Optional[bool] = None

    # Loan
    loan_amount: Optional[int] = None
    loan_type: Optional[str] = None
    down_payment_amount: Optional[int] = None
    down_payment_percentage: Optional[int] = None
    has_co_borrower: Optional[bool] = None

    # Buyer profile
    first_time_buyer: Optional[bool] = None
    va_eligible: Optional[bool] = None
    ready_to_buy_timeline: Optional[str] = None
    has_realtor: Optional[bool] = None
    realtor_name: Optional[str] = None

    # Preferences and concerns
    preferred_contact_method: Optional[str] = None
    best_time_to_call: Optional[str] = None
    wants_credit_review: Optional[bool] = None
    wants_down_payment_assistance: Optional[bool] = None
    credit_concerns: Optional[bool] = None
    debt_concerns: Optional[bool] = None
    down_payment_concerns: Optional[bool] = None
    job_change_concerns: Optional[bool] = None
    interest_rate_concerns: Optional[bool] = None
    knows_overlays: Optional[bool] = None
    overlay_education_completed: Optional[bool] = None

    # Structured sub-objects, stored as JSON
    objection_details: Any = None
    next_steps: Any = None
    primary_concerns: Any = None
    interested_properties: Any = None
    requested_actions: Any = None

    conversation_summary: Optional[str] = None
    follow_up_date: Optional[str] = None

    raw_extraction_data: Any = None


class QualificationData(BaseModel):
    lead_id: str
    conversation_id: str

    # Financial profile
    annual_income: Optional[int] = None
    loan_amount: Optional[int] = None
    loan_type: Optional[str] = None
    down_payment_percentage: Optional[int] = None
    debt_to_income_ratio: Optional[float] = None
    estimated_credit_score: Optional[str] = None
    is_self_employed: Optional[bool] = None
    has_co_borrower: Optional[bool] = None
    pre_approval_status: Optional[str] = None
    current_lender: Optional[str] = None

    # Buyer profile
    first_time_buyer: Optional[bool] = None
    va_eligible: Optional[bool] = None
    property_type: Optional[str] = None
    property_use: Optional[str] = None
    property_address: Optional[str] = None
    property_mls_number: Optional[str] = None
    property_price: Optional[int] = None
    has_specific_property: Optional[bool] = None
    multiple_properties_interested: Optional[bool] = None
    lead_temperature: Optional[str] = None
    time_frame: Optional[str] = None
    ready_to_buy_timeline: Optional[str] = None

    # Concerns
    credit_concerns: Optional[bool] = None
    debt_concerns: Optional[bool] = None
    down_payment_concerns: Optional[bool] = None
    job_change_concerns: Optional[bool] = None
    interest_rate_concerns: Optional[bool] = None
    knows_about_overlays: Optional[bool] = None
    overlay_education_completed: Optional[bool] = None
    wants_credit_review: Optional[bool] = None
    wants_down_payment_assistance: Optional[bool] = None
    objection_details: Any = None

    # Contact preferences
    preferred_contact_method: Optional[str] = None
    best_time_to_call: Optional[str] = None

    qualifying_notes: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)
