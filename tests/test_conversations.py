"""Tests for the conversation state machine."""

import asyncio
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from intake.conversations import ConversationStateMachine, close_stale_conversations
from intake.models import CallStatus, Conversation, ExtractionStatus, Role, utcnow
from intake.retell_client import RetellClient

START_MS = 1760000000000
END_MS = START_MS + 120_000


@pytest.fixture
def machine(db, settings):
    return ConversationStateMachine(db, settings)


def _started(call_id="call_1", **extra):
    return {
        "call_id": call_id,
        "agent_id": "agent_x",
        "from_number": "+14155550100",
        "to_number": "+14155550199",
        "direction": "inbound",
        "start_timestamp": START_MS,
        **extra,
    }


def _ended(call_id="call_1", **extra):
    return {
        "call_id": call_id,
        "end_timestamp": END_MS,
        "duration_ms": 120_400,
        "recording_url": "https://example.com/call_1.wav",
        "transcript": "Agent: Hello\nLead: Hi\n\nCustomer: I'm interested",
        **extra,
    }


ANALYSIS = {
    "call_summary": "First-time buyer looking in Austin.",
    "custom_analysis_data": {
        "first_time_buyer": "true",
        "annual_income": "95000",
        "credit_score_range": "680-720",
        "lead_score": "8",
    },
}


@pytest.mark.asyncio
async def test_call_started_creates_conversation(machine, db):
    outcome = await machine.on_call_started(_started())
    assert outcome.processed is True

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.id == outcome.conversation_id
    assert conv.lead_id == outcome.lead_id
    assert conv.call_status == CallStatus.ACTIVE
    assert conv.extraction_status == ExtractionStatus.PENDING
    assert conv.agent_id == "agent_x"
    assert conv.started_at == datetime.fromtimestamp(START_MS / 1000, tz=timezone.utc)

    extraction = await db.get_extraction(conv.id)
    assert extraction is not None
    assert extraction.lead_id == conv.lead_id


@pytest.mark.asyncio
async def test_call_started_defaults(machine, db):
    await machine.on_call_started({"call_id": "call_1", "from_number": "+14155550100"})
    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.agent_id == "retell_agent"
    assert conv.direction == "inbound"
    assert conv.started_at is not None


@pytest.mark.asyncio
async def test_call_started_twice_keeps_one_row(machine, db):
    first = await machine.on_call_started(_started())
    second = await machine.on_call_started(_started())

    assert second.processed is False
    assert second.reason == "conversation_exists"
    assert second.conversation_id == first.conversation_id
    assert (await db.table_counts())["conversations"] == 1


@pytest.mark.asyncio
async def test_late_call_started_does_not_reopen(machine, db):
    await machine.on_call_started(_started())
    await machine.on_call_ended(_ended())

    await machine.on_call_started(_started())
    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.call_status == CallStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_call_id(machine, db):
    for handler in (machine.on_call_started, machine.on_call_ended,
                    machine.on_call_analyzed, machine.on_transcript_update):
        outcome = await handler({"from_number": "+14155550100"})
        assert outcome.processed is False
        assert outcome.reason == "missing_call_id"
    assert (await db.table_counts())["conversations"] == 0


@pytest.mark.asyncio
async def test_call_ended_completes_and_segments(machine, db):
    started = await machine.on_call_started(_started())
    outcome = await machine.on_call_ended(_ended())
    assert outcome.processed is True

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.call_status == CallStatus.COMPLETED
    assert conv.extraction_status == ExtractionStatus.PENDING
    assert conv.duration == 120
    assert conv.ended_at == datetime.fromtimestamp(END_MS / 1000, tz=timezone.utc)
    assert conv.recording_url == "https://example.com/call_1.wav"

    messages = await db.get_messages(conv.id)
    assert [(m.role, m.content, m.seq) for m in messages] == [
        (Role.AGENT, "Hello", 0),
        (Role.LEAD, "Hi", 1),
        (Role.LEAD, "I'm interested", 2),
    ]

    lead = await db.get_lead(started.lead_id)
    assert lead.last_contacted == conv.ended_at


@pytest.mark.asyncio
async def test_call_ended_before_started_changes_nothing(machine, db):
    outcome = await machine.on_call_ended(_ended())
    assert outcome.processed is False
    assert outcome.reason == "conversation_not_found"

    counts = await db.table_counts()
    assert counts["conversations"] == 0
    assert counts["conversation_messages"] == 0
    assert counts["leads"] == 0


@pytest.mark.asyncio
async def test_call_ended_prefers_transcript_object(machine, db):
    await machine.on_call_started(_started())
    await machine.on_call_ended(_ended(transcript_object=[
        {"role": "agent", "content": "Thanks for calling"},
        {"role": "user", "content": "Hello"},
    ]))

    conv = await db.get_conversation_by_call_sid("call_1")
    messages = await db.get_messages(conv.id)
    assert [(m.role, m.content) for m in messages] == [
        (Role.AGENT, "Thanks for calling"),
        (Role.LEAD, "Hello"),
    ]


@pytest.mark.asyncio
async def test_call_ended_with_inline_analysis(machine, db):
    started = await machine.on_call_started(_started())
    await machine.on_call_ended(_ended(call_analysis=ANALYSIS))

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.extraction_status == ExtractionStatus.COMPLETE
    assert conv.call_analysis == ANALYSIS

    extraction = await db.get_extraction(conv.id)
    assert extraction.first_time_buyer is True
    assert extraction.annual_income == 95000

    qualification = await db.get_qualification(started.lead_id, conv.id)
    assert qualification.estimated_credit_score == "680-720"


@pytest.mark.asyncio
async def test_call_analyzed_projects_extraction(machine, db):
    started = await machine.on_call_started(_started())
    await machine.on_call_ended(_ended())
    outcome = await machine.on_call_analyzed(
        {"call_id": "call_1", "sentiment_score": "0.8", "call_analysis": ANALYSIS}
    )
    assert outcome.processed is True

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.extraction_status == ExtractionStatus.COMPLETE
    assert conv.sentiment_score == 0.8

    extraction = await db.get_extraction(conv.id)
    assert extraction.lead_score == 8
    assert extraction.conversation_summary == "First-time buyer looking in Austin."
    assert extraction.raw_extraction_data == ANALYSIS

    qualification = await db.get_qualification(started.lead_id, conv.id)
    assert qualification.annual_income == 95000
    assert qualification.first_time_buyer is True
    assert qualification.qualifying_notes == "First-time buyer looking in Austin."


@pytest.mark.asyncio
async def test_analysis_before_call_ended_survives_it(machine, db):
    await machine.on_call_started(_started())
    await machine.on_call_analyzed({"call_id": "call_1", "call_analysis": ANALYSIS})
    await machine.on_call_ended(_ended())

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.call_status == CallStatus.COMPLETED
    assert conv.extraction_status == ExtractionStatus.COMPLETE


@pytest.mark.asyncio
async def test_call_analyzed_unknown_call(machine, db):
    outcome = await machine.on_call_analyzed({"call_id": "ghost", "call_analysis": ANALYSIS})
    assert outcome.reason == "conversation_not_found"
    assert (await db.table_counts())["conversation_extractions"] == 0


@pytest.mark.asyncio
async def test_call_analyzed_without_analysis_stays_pending(machine, db):
    await machine.on_call_started(_started())
    outcome = await machine.on_call_analyzed({"call_id": "call_1"})
    assert outcome.processed is True

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.extraction_status == ExtractionStatus.PENDING


@pytest.mark.asyncio
async def test_analysis_without_lead_skips_qualification(db, settings):
    machine = ConversationStateMachine(db, settings)
    await machine.on_call_started({"call_id": "call_1"})
    await machine.on_call_analyzed({"call_id": "call_1", "call_analysis": ANALYSIS})

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.lead_id is None
    assert conv.extraction_status == ExtractionStatus.COMPLETE
    counts = await db.table_counts()
    assert counts["conversation_extractions"] == 1
    assert counts["qualification_data"] == 0


@pytest.mark.asyncio
async def test_full_replay_is_idempotent(machine, db):
    for _ in range(2):
        await machine.on_call_started(_started())
        await machine.on_call_ended(_ended())
        await machine.on_call_analyzed({"call_id": "call_1", "call_analysis": ANALYSIS})

    counts = await db.table_counts()
    assert counts["conversations"] == 1
    assert counts["conversation_messages"] == 3
    assert counts["conversation_extractions"] == 1
    assert counts["qualification_data"] == 1
    assert counts["leads"] == 1
    assert counts["phone_lead_mapping"] == 1


@pytest.mark.asyncio
async def test_concurrent_calls_from_new_number_share_lead(machine, db):
    a, b = await asyncio.gather(
        machine.on_call_started(_started("call_a")),
        machine.on_call_started(_started("call_b")),
    )

    assert a.lead_id == b.lead_id
    counts = await db.table_counts()
    assert counts["conversations"] == 2
    assert counts["leads"] == 1
    assert counts["phone_lead_mapping"] == 1


@pytest.mark.asyncio
async def test_transcript_update_stores_text_only(machine, db):
    await machine.on_call_started(_started())
    outcome = await machine.on_transcript_update({"call_id": "call_1", "transcript": "Agent: Hello"})
    assert outcome.processed is True

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.transcript == "Agent: Hello"
    assert (await db.table_counts())["conversation_messages"] == 0


@pytest.mark.asyncio
async def test_transcript_update_edge_cases(machine, db):
    assert (await machine.on_transcript_update({"call_id": "call_1"})).reason == "empty_transcript"
    outcome = await machine.on_transcript_update({"call_id": "ghost", "transcript": "Agent: hi"})
    assert outcome.reason == "conversation_not_found"


@pytest.mark.asyncio
async def test_close_stale_conversations(db):
    await db.insert_conversation(Conversation(call_sid="stuck", started_at=utcnow() - timedelta(hours=1)))
    await db.insert_conversation(Conversation(call_sid="live", started_at=utcnow()))

    assert await close_stale_conversations(db, older_than_minutes=30) == 1
    assert (await db.get_conversation_by_call_sid("stuck")).call_status == CallStatus.COMPLETED
    assert (await db.get_conversation_by_call_sid("live")).call_status == CallStatus.ACTIVE


# ── Retell call fetch ───────────────────────────────────────────


def _retell(settings, handler) -> RetellClient:
    enabled = settings.model_copy(update={"fetch_call_details": True, "retell_api_key": "key_test"})
    return RetellClient(enabled, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_call_ended_enriched_from_retell(db, settings):
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={
            "call_id": "call_1",
            "transcript": None,
            "transcript_object": [
                {"role": "agent", "content": "Hello from Retell"},
                {"role": "user", "content": "Hi"},
            ],
            "call_analysis": ANALYSIS,
        })

    retell = _retell(settings, handler)
    machine = ConversationStateMachine(db, settings, retell=retell)
    await machine.on_call_started(_started())
    await machine.on_call_ended(_ended())
    await retell.close()

    assert seen[0].url.path == "/get-call/call_1"
    assert seen[0].headers["authorization"] == "Bearer key_test"

    conv = await db.get_conversation_by_call_sid("call_1")
    assert conv.transcript == "Agent: Hello\nLead: Hi\n\nCustomer: I'm interested"
    assert conv.extraction_status == ExtractionStatus.COMPLETE
    messages = await db.get_messages(conv.id)
    assert messages[0].content == "Hello from Retell"


@pytest.mark.asyncio
async def test_retell_failure_falls_back_to_webhook_data(db, settings):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, json={"error": "unavailable"})

    retell = _retell(settings, handler)
    machine = ConversationStateMachine(db, settings, retell=retell)
    await machine.on_call_started(_started())
    outcome = await machine.on_call_ended(_ended())
    await retell.close()

    assert outcome.processed is True
    conv = await db.get_conversation_by_call_sid("call_1")
    assert len(await db.get_messages(conv.id)) == 3


@pytest.mark.asyncio
async def test_retell_disabled_without_key(settings):
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    retell = RetellClient(settings, transport=httpx.MockTransport(handler))
    data = {"call_id": "call_1"}
    assert retell.enabled is False
    assert await retell.enrich_call_data(data) is data
