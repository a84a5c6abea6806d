"""
Retell API client: fetches the complete call record when a webhook only
carries a partial one.
"""

from __future__ import annotations

import httpx
import structlog
from typing import Optional

from intake.config import Settings

log = structlog.get_logger(__name__)


class RetellClient:
    """Async client for the Retell voice AI platform."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.retell_base_url.rstrip("/")
        self.headers = {
            "Authorization": f"Bearer {settings.retell_api_key}",
            "Content-Type": "application/json",
        }
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def enabled(self) -> bool:
        return bool(self.settings.fetch_call_details and self.settings.retell_api_key)

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=30.0,
                transport=self._transport,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def get_call(self, call_id: str) -> dict:
        """Fetch call details (transcript_object, call_analysis, ...) from Retell."""
        client = await self._client()
        resp = await client.get(f"/get-call/{call_id}")
        resp.raise_for_status()
        data = resp.json()
        log.info(
            "retell_call_fetched",
            call_id=call_id,
            has_transcript_object=bool(data.get("transcript_object")),
            has_call_analysis=bool(data.get("call_analysis")),
        )
        return data

    async def enrich_call_data(self, call_data: dict) -> dict:
        """
        Overlay the full call record on the webhook's call data.
        Any failure is logged and the webhook data is used as-is.
        """
        call_id = call_data.get("call_id")
        if not self.enabled or not call_id:
            return call_data
        try:
            fetched = await self.get_call(str(call_id))
        except (httpx.HTTPError, ValueError) as e:
            log.warning("retell_call_fetch_failed", call_id=call_id, error=str(e))
            return call_data
        return {**call_data, **{k: v for k, v in fetched.items() if v is not None}}
