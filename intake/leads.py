"""
Lead resolution: maps the phone numbers on a call to the lead that owns them,
creating a placeholder lead for callers nobody has seen before.
"""

from __future__ import annotations

from typing import Any, Iterable, Optional

import structlog

from intake.config import Settings
from intake.database import Database
from intake.models import Lead, PhoneLeadMapping
from intake.phone_utils import normalise_candidates

log = structlog.get_logger(__name__)

UNKNOWN_FIRST_NAME = "Unknown"
UNKNOWN_LAST_NAME = "Caller"


class LeadResolver:
    """
    Find-or-create the lead for a call.

    Candidates are tried in order and the first mapped number wins. For an
    unknown caller the mapping insert is insert-or-ignore on ``phone_e164``;
    whoever loses that race deletes the lead it just created and adopts the
    winner's, so one number never ends up with two placeholder leads.
    """

    def __init__(self, db: Database, settings: Settings):
        self.db = db
        self.settings = settings

    async def resolve(self, raw_numbers: Iterable[Any]) -> Optional[str]:
        """Return the owning lead id, or None if no lead could be found or created."""
        candidates = normalise_candidates(raw_numbers, self.settings.default_region)
        if not candidates:
            log.warning("lead_resolution_no_phone_numbers")
            return None

        for phone in candidates:
            mapping = await self.db.get_mapping(phone)
            if mapping:
                log.info("lead_mapping_found", phone=phone, lead_id=mapping.lead_id)
                return mapping.lead_id

        log.info("lead_mapping_missing", candidates=candidates)
        try:
            return await self._create_placeholder(candidates[0])
        except Exception as e:
            log.error("lead_creation_failed", phone=candidates[0], error=str(e))
            return None

    async def _create_placeholder(self, phone: str) -> str:
        lead = Lead(
            first_name=UNKNOWN_FIRST_NAME,
            last_name=UNKNOWN_LAST_NAME,
            phone_raw=phone,
            phone_e164=phone,
            source=self.settings.lead_source,
            status="new",
        )
        await self.db.insert_lead(lead)
        await self.db.insert_mapping_if_absent(
            PhoneLeadMapping(
                phone_e164=phone,
                lead_id=lead.id,
                lead_name=lead.full_name,
                phone_raw=phone,
            )
        )

        mapping = await self.db.get_mapping(phone)
        if mapping is None:
            raise RuntimeError(f"phone mapping for {phone} missing after insert")

        if mapping.lead_id != lead.id:
            # Another request mapped this number first
            await self.db.delete_lead(lead.id)
            log.info("lead_creation_lost_race", phone=phone, lead_id=mapping.lead_id)
            return mapping.lead_id

        log.info("lead_created", phone=phone, lead_id=lead.id)
        return lead.id
