"""Tests for the webhook receiver."""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from intake.models import CallStatus, ExtractionStatus
from intake.webhook import VERSION, create_webhook_app


@pytest_asyncio.fixture
async def client(db, settings):
    app = create_webhook_app(settings, db)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"


@pytest.mark.asyncio
async def test_get_reports_active(client):
    resp = await client.get("/webhook")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "Retell webhook endpoint is active"
    assert body["method"] == "GET"
    assert body["version"] == VERSION
    assert "timestamp" in body
    assert resp.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio
async def test_options_preflight(client):
    resp = await client.options("/webhook")
    assert resp.status_code == 200
    assert resp.text == "ok"
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "content-type" in resp.headers["access-control-allow-headers"]


@pytest.mark.asyncio
async def test_empty_body_is_health_check(client, db):
    resp = await client.post("/webhook", content=b"")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Empty body received, likely a health check"
    assert (await db.table_counts())["webhook_events"] == 0


@pytest.mark.asyncio
async def test_invalid_json_rejected_and_audited(client, db):
    resp = await client.post(
        "/webhook",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 400
    assert resp.json()["error"] == "Invalid JSON"
    assert resp.headers["access-control-allow-origin"] == "*"

    events = await db.list_webhook_events()
    assert len(events) == 1
    assert events[0].event_id == "invalid_json"
    assert events[0].payload == {"raw_body": "{not json"}


@pytest.mark.asyncio
async def test_unknown_event_only_audited(client, db):
    resp = await client.post("/webhook", json={"event": "ping"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["event_type"] == "ping"
    assert body["processed"] is False

    counts = await db.table_counts()
    assert counts["webhook_events"] == 1
    assert sum(counts.values()) == 1


@pytest.mark.asyncio
async def test_call_ended_for_unknown_call_acknowledged(client, db, call_payload):
    resp = await client.post("/webhook", json=call_payload("call_ended", transcript="Agent: hi"))
    assert resp.status_code == 200
    body = resp.json()
    assert body["processed"] is False
    assert body["reason"] == "conversation_not_found"

    counts = await db.table_counts()
    assert counts["webhook_events"] == 1
    assert counts["conversations"] == 0
    assert counts["conversation_messages"] == 0


@pytest.mark.asyncio
async def test_full_call_lifecycle(client, db, call_payload):
    started = call_payload(
        "call_started",
        agent_id="agent_x",
        from_number="(415) 555-0100",
        to_number="+14155550199",
        start_timestamp=1760000000000,
    )
    ended = call_payload(
        "call_ended",
        end_timestamp=1760000120000,
        duration_ms=120000,
        transcript="Agent: Hello\nLead: Hi\n\nCustomer: I'm interested",
    )
    analyzed = {
        "event_type": "call_analyzed",
        "data": {
            "call_id": "call_abc123",
            "call_analysis": {
                "call_summary": "Interested in pre-approval.",
                "custom_analysis_data": {"first_time_buyer": "true", "annual_income": "95000"},
            },
        },
    }

    for payload in (started, ended, analyzed):
        resp = await client.post("/webhook", json=payload)
        assert resp.status_code == 200
        assert resp.json()["processed"] is True

    conv = await db.get_conversation_by_call_sid("call_abc123")
    assert conv.call_status == CallStatus.COMPLETED
    assert conv.extraction_status == ExtractionStatus.COMPLETE
    assert conv.duration == 120
    assert len(await db.get_messages(conv.id)) == 3

    mapping = await db.get_mapping("+14155550100")
    assert mapping.lead_id == conv.lead_id

    extraction = await db.get_extraction(conv.id)
    assert extraction.first_time_buyer is True
    assert extraction.annual_income == 95000

    qualification = await db.get_qualification(conv.lead_id, conv.id)
    assert qualification.qualifying_notes == "Interested in pre-approval."


@pytest.mark.asyncio
async def test_replayed_deliveries_converge(client, db, call_payload):
    payloads = [
        call_payload("call_started", from_number="+14155550100"),
        call_payload("call_ended", transcript="Agent: Hello\nLead: Hi"),
        call_payload("call_analyzed", call_analysis={"custom_analysis_data": {"lead_score": "5"}}),
    ]
    for _ in range(2):
        for payload in payloads:
            assert (await client.post("/webhook", json=payload)).status_code == 200

    counts = await db.table_counts()
    assert counts["webhook_events"] == 6
    assert counts["conversations"] == 1
    assert counts["conversation_messages"] == 2
    assert counts["conversation_extractions"] == 1
    assert counts["qualification_data"] == 1
    assert counts["leads"] == 1


@pytest.mark.asyncio
async def test_store_failure_returns_500(client, db, call_payload, monkeypatch):
    async def boom(call_sid):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(db, "get_conversation_by_call_sid", boom)

    resp = await client.post("/webhook", json=call_payload("call_started"))
    assert resp.status_code == 500
    assert resp.json()["error"] == "store unavailable"
    assert (await db.table_counts())["webhook_events"] == 1


@pytest.mark.asyncio
async def test_oversized_number_in_analysis_is_nulled(client, db, call_payload):
    await client.post("/webhook", json=call_payload("call_started", from_number="+14155550100"))

    resp = await client.post("/webhook", json=call_payload(
        "call_analyzed",
        call_analysis={"annual_income": "99999999999999999999", "lead_score": 7},
    ))
    assert resp.status_code == 200
    assert resp.json()["processed"] is True

    conv = await db.get_conversation_by_call_sid("call_abc123")
    assert conv.extraction_status == ExtractionStatus.COMPLETE

    extraction = await db.get_extraction(conv.id)
    assert extraction.annual_income is None
    assert extraction.lead_score == 7

    qualification = await db.get_qualification(conv.lead_id, conv.id)
    assert qualification.annual_income is None


@pytest.mark.asyncio
async def test_invalid_json_audit_failure_returns_500(client, db, monkeypatch):
    async def boom(event):
        raise RuntimeError("store unavailable")

    monkeypatch.setattr(db, "log_webhook_event", boom)

    resp = await client.post(
        "/webhook",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )
    assert resp.status_code == 500
    assert resp.json()["error"] == "store unavailable"
    assert resp.headers["access-control-allow-origin"] == "*"
