# survey_settings.py
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_FILE = Path(__file__).parent / ".env"


class Settings(BaseSettings):
    # .env is loaded by load_settings(); only the process environment is read here
    model_config = SettingsConfigDict(extra="ignore")

    # ─── Survey platform ───────────────────────────────────────────────────────
    survey_api_base_url: str = "https://api.formr.org"
    survey_client_id: Optional[str] = None
    survey_client_secret: Optional[str] = None
    survey_run_name: Optional[str] = None
    survey_start_id: str = "start"        # enrollment instrument (contact addresses)
    survey_weekly_id: str = "weekly"      # recurring instrument (activity records)
    survey_timeout_seconds: int = 60

    # Field names inside the exported result rows
    session_field: str = "session"
    timestamp_field: str = "created"
    expired_field: str = "expired"
    email_field_name: str = "email"
    # Naive timestamps in exports are wall-clock time here
    survey_timezone: str = "UTC"

    # ─── Email ─────────────────────────────────────────────────────────────────
    sender_address: str = "Weekly Survey <no-reply@example.com>"
    reply_to: Optional[str] = None
    email_backend: Literal["sendgrid", "console"] = "sendgrid"
    sendgrid_api_key: Optional[str] = None
    email_timeout_seconds: int = 15
    send_interval_seconds: float = Field(default=5.0, ge=0)
    survey_url: str = ""

    @field_validator("email_backend", mode="before")
    @classmethod
    def _lower_backend(cls, v):
        return v.lower() if isinstance(v, str) else v


def load_settings(**overrides) -> Settings:
    """Load local .env (development) and build settings; keyword overrides win."""
    load_dotenv(dotenv_path=ENV_FILE)
    return Settings(**overrides)
