"""Tests for phone → lead resolution."""

import asyncio

import pytest

from intake.leads import LeadResolver
from intake.models import Lead, PhoneLeadMapping


async def _seed_lead(db, phone: str, first_name: str = "Dana") -> str:
    lead = Lead(first_name=first_name, last_name="Reyes", phone_e164=phone)
    await db.insert_lead(lead)
    await db.insert_mapping_if_absent(PhoneLeadMapping(phone_e164=phone, lead_id=lead.id))
    return lead.id


@pytest.mark.asyncio
async def test_first_mapped_candidate_wins(db, settings):
    lead_b = await _seed_lead(db, "+14155550101")
    resolver = LeadResolver(db, settings)

    lead_id = await resolver.resolve(["+14155550100", "+14155550101", "+14155550102"])

    assert lead_id == lead_b
    assert (await db.table_counts())["leads"] == 1


@pytest.mark.asyncio
async def test_higher_priority_mapping_preferred(db, settings):
    lead_a = await _seed_lead(db, "+14155550100", "Ana")
    await _seed_lead(db, "+14155550101", "Ben")

    assert await LeadResolver(db, settings).resolve(["+14155550100", "+14155550101"]) == lead_a


@pytest.mark.asyncio
async def test_matches_after_normalisation(db, settings):
    lead_id = await _seed_lead(db, "+14155550100")
    assert await LeadResolver(db, settings).resolve(["(415) 555-0100"]) == lead_id


@pytest.mark.asyncio
async def test_unknown_caller_gets_placeholder(db, settings):
    lead_id = await LeadResolver(db, settings).resolve([None, "+14155550100", "+14155550199"])

    lead = await db.get_lead(lead_id)
    assert lead.first_name == "Unknown"
    assert lead.last_name == "Caller"
    assert lead.phone_e164 == "+14155550100"
    assert lead.source == "Retell Voice Agent"
    assert lead.status == "new"

    mapping = await db.get_mapping("+14155550100")
    assert mapping.lead_id == lead_id
    assert await db.get_mapping("+14155550199") is None


@pytest.mark.asyncio
async def test_repeat_caller_reuses_placeholder(db, settings):
    resolver = LeadResolver(db, settings)
    first = await resolver.resolve(["+14155550100"])
    second = await resolver.resolve(["4155550100"])

    assert first == second
    assert (await db.table_counts())["leads"] == 1


@pytest.mark.asyncio
async def test_concurrent_unknown_callers_share_one_lead(db, settings):
    resolver = LeadResolver(db, settings)

    results = await asyncio.gather(*(resolver.resolve(["+14155550100"]) for _ in range(5)))

    assert len(set(results)) == 1
    counts = await db.table_counts()
    assert counts["leads"] == 1
    assert counts["phone_lead_mapping"] == 1


@pytest.mark.asyncio
async def test_no_numbers(db, settings):
    assert await LeadResolver(db, settings).resolve([None, "", None]) is None
    assert (await db.table_counts())["leads"] == 0


class _BrokenLeadStore:
    async def get_mapping(self, phone_e164):
        return None

    async def insert_lead(self, lead):
        raise RuntimeError("leads table unavailable")


@pytest.mark.asyncio
async def test_creation_failure_is_not_fatal(settings):
    assert await LeadResolver(_BrokenLeadStore(), settings).resolve(["+14155550100"]) is None
