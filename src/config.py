"""
Remindly — Centralized configuration.

Loads all settings from .env. Credentials for a single external capability
(LLM, Google Maps, ElevenLabs) are optional here: a missing key only fails
the call that needs it, with a ConfigurationError.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (two levels up from src/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class ConfigurationError(Exception):
    """Raised when a capability is called without its required configuration."""


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (only required by the bot entry point)
    TELEGRAM_BOT_TOKEN: str = ""
    ALLOWED_USER_IDS: list[int] = []

    # LLM: provider-agnostic (gemini, anthropic, openai)
    LLM_PROVIDER: str = "gemini"
    LLM_MODEL: str = ""          # empty → smart default per provider
    LLM_API_KEY: str = ""

    # Google Maps Places API (location triggers)
    GOOGLE_MAPS_API_KEY: str = ""

    # ElevenLabs text-to-speech
    ELEVENLABS_API_KEY: str = ""
    ELEVENLABS_DEFAULT_VOICE_ID: str = ""
    ELEVENLABS_MODEL_ID: str = "eleven_multilingual_v2"

    # SQLite
    DATABASE_PATH: str = "data/remindly.db"

    # Local reference time zone for working hours and weekday checks
    TIMEZONE: str = "UTC"

    # Location triggers
    LOCATION_MAX_TRIGGER_METERS: int = 60
    DEFAULT_SCAN_RADIUS: int = 500
    SCAN_RATE_LIMIT_PER_MINUTE: int = 6

    # Enrichment: run inline (True) or through the background queue (False)
    USE_SYNC_AI: bool = False

    # Upper bound for any single external capability call
    EXTERNAL_TIMEOUT_SECONDS: float = 15.0

    @field_validator("ALLOWED_USER_IDS", mode="before")
    @classmethod
    def parse_user_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(uid.strip()) for uid in v.split(",") if uid.strip()]
        return []

    @field_validator("USE_SYNC_AI", mode="before")
    @classmethod
    def parse_flag(cls, v: str | bool) -> bool:
        if isinstance(v, bool):
            return v
        return str(v).strip().lower() in ("1", "true", "yes", "on")

    @field_validator("LOCATION_MAX_TRIGGER_METERS", mode="before")
    @classmethod
    def parse_max_meters(cls, v: str | int) -> int:
        try:
            meters = int(v)
        except (TypeError, ValueError):
            meters = 60
        return max(10, meters)


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        ALLOWED_USER_IDS=os.getenv("ALLOWED_USER_IDS", ""),
        LLM_PROVIDER=os.getenv("LLM_PROVIDER", "gemini"),
        LLM_MODEL=os.getenv("LLM_MODEL", ""),
        LLM_API_KEY=os.getenv("LLM_API_KEY", ""),
        GOOGLE_MAPS_API_KEY=os.getenv("GOOGLE_MAPS_API_KEY", ""),
        ELEVENLABS_API_KEY=os.getenv("ELEVENLABS_API_KEY", ""),
        ELEVENLABS_DEFAULT_VOICE_ID=os.getenv("ELEVENLABS_DEFAULT_VOICE_ID", ""),
        ELEVENLABS_MODEL_ID=os.getenv("ELEVENLABS_MODEL_ID", "eleven_multilingual_v2"),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/remindly.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        LOCATION_MAX_TRIGGER_METERS=os.getenv("LOCATION_MAX_TRIGGER_METERS", "60"),
        DEFAULT_SCAN_RADIUS=int(os.getenv("DEFAULT_SCAN_RADIUS", "500")),
        SCAN_RATE_LIMIT_PER_MINUTE=int(os.getenv("SCAN_RATE_LIMIT_PER_MINUTE", "6")),
        USE_SYNC_AI=os.getenv("USE_SYNC_AI", "0"),
        EXTERNAL_TIMEOUT_SECONDS=float(os.getenv("EXTERNAL_TIMEOUT_SECONDS", "15")),
    )


# Singleton, imported by all other modules as:
#   from src.config import settings
settings = _load_settings()
