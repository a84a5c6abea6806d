"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from pathlib import Path
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/intake.db"), description="SQLite file (local/dev)")
    database_url: str = Field(default="", description="PostgreSQL DSN (blank = use SQLite)")

    # ── Vendor ──────────────────────────────────────────────────
    webhook_provider: str = Field(default="retell", description="Provider tag on audit rows")
    vendor_name: str = Field(default="Retell")
    default_agent_id: str = Field(default="retell_agent")
    retell_api_key: str = Field(default="", description="Retell API key (blank = no call fetch)")
    retell_base_url: str = Field(default="https://api.retellai.com")
    fetch_call_details: bool = Field(default=False, description="Fetch the full call on call_ended")

    # ── Pipeline ────────────────────────────────────────────────
    default_region: str = Field(default="US", min_length=2, max_length=2)
    extraction_version: str = Field(default="2.0")
    stale_call_minutes: int = Field(default=30, ge=1)

    # ── Paths ───────────────────────────────────────────────────
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    @property
    def lead_source(self) -> str:
        return f"{self.vendor_name} Voice Agent"

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [self.log_dir, self.database_path.parent]:
            d.mkdir(parents=True, exist_ok=True)


def get_settings() -> Settings:
    """Factory – cached at module level after first call."""
    return Settings()  # type: ignore[call-arg]
