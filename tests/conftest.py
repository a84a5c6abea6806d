"""Shared fixtures: a throwaway SQLite store and Retell-shaped payload builders."""

import pytest
import pytest_asyncio

from intake.config import Settings
from intake.database import Database


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_path=tmp_path / "test.db",
        database_url="",
        log_dir=tmp_path / "logs",
        retell_api_key="",
        fetch_call_details=False,
    )


@pytest_asyncio.fixture
async def db(tmp_path):
    database = Database(tmp_path / "test.db")
    await database.connect()
    yield database
    await database.close()


@pytest.fixture
def call_payload():
    """Build a ``{event, call}`` webhook body for one call."""

    def _build(event: str, call_id: str = "call_abc123", **call_fields) -> dict:
        return {"event": event, "call": {"call_id": call_id, **call_fields}}

    return _build
