"""
ChoreMinder — Centralized configuration.

Loads all settings from .env and validates required keys.
Core components receive their configuration through constructor arguments;
this module only provides the defaults.
"""

from __future__ import annotations

import os
import sys
from datetime import date
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from choreminder/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Telegram (host process + chat delivery channel)
    TELEGRAM_BOT_TOKEN: str
    ADMIN_CHAT_IDS: list[int] = []

    # SQLite
    DATABASE_PATH: str = "data/choreminder.db"

    # Wall clock used for due dates and quiet hours
    TIMEZONE: str = "UTC"

    # Dispatcher sweep
    SWEEP_INTERVAL_SECONDS: int = 60
    CLAIM_TIMEOUT_MINUTES: int = 10
    DEFAULT_MAX_ATTEMPTS: int = 3
    DEFAULT_RETRY_DELAY_MINUTES: int = 30

    # Due-chore scan
    DUE_SCAN_INTERVAL_SECONDS: int = 300
    DUE_SOON_WINDOW_HOURS: int = 24

    # Instance generation
    GENERATION_HOUR: int = 2
    GENERATION_HORIZON_DAYS: int = 7
    INITIAL_HORIZON_DAYS: int = 30

    # Extra holiday dates on top of the fixed calendar
    HOLIDAYS: list[date] = []

    @field_validator("ADMIN_CHAT_IDS", mode="before")
    @classmethod
    def parse_chat_ids(cls, v: str | list[int]) -> list[int]:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [int(cid.strip()) for cid in v.split(",") if cid.strip()]
        return []

    @field_validator("HOLIDAYS", mode="before")
    @classmethod
    def parse_holidays(cls, v: str | list) -> list:
        if isinstance(v, list):
            return v
        if isinstance(v, str) and v.strip():
            return [date.fromisoformat(d.strip()) for d in v.split(",") if d.strip()]
        return []

    @field_validator("GENERATION_HOUR", mode="before")
    @classmethod
    def parse_hour(cls, v: str | int) -> int:
        hour = int(v)
        if not 0 <= hour <= 23:
            raise ValueError(f"GENERATION_HOUR out of range: {hour}")
        return hour


def _load_settings() -> Settings:
    """Load settings from environment, validating required keys."""
    token = os.getenv("TELEGRAM_BOT_TOKEN", "")

    if not token or token.startswith("your-"):
        print("ERROR: TELEGRAM_BOT_TOKEN is missing or not set in .env", file=sys.stderr)
        sys.exit(1)

    return Settings(
        TELEGRAM_BOT_TOKEN=token,
        ADMIN_CHAT_IDS=os.getenv("ADMIN_CHAT_IDS", ""),
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/choreminder.db"),
        TIMEZONE=os.getenv("TIMEZONE", "UTC"),
        SWEEP_INTERVAL_SECONDS=os.getenv("SWEEP_INTERVAL_SECONDS", "60"),
        CLAIM_TIMEOUT_MINUTES=os.getenv("CLAIM_TIMEOUT_MINUTES", "10"),
        DEFAULT_MAX_ATTEMPTS=os.getenv("DEFAULT_MAX_ATTEMPTS", "3"),
        DEFAULT_RETRY_DELAY_MINUTES=os.getenv("DEFAULT_RETRY_DELAY_MINUTES", "30"),
        DUE_SCAN_INTERVAL_SECONDS=os.getenv("DUE_SCAN_INTERVAL_SECONDS", "300"),
        DUE_SOON_WINDOW_HOURS=os.getenv("DUE_SOON_WINDOW_HOURS", "24"),
        GENERATION_HOUR=os.getenv("GENERATION_HOUR", "2"),
        GENERATION_HORIZON_DAYS=os.getenv("GENERATION_HORIZON_DAYS", "7"),
        INITIAL_HORIZON_DAYS=os.getenv("INITIAL_HORIZON_DAYS", "30"),
        HOLIDAYS=os.getenv("HOLIDAYS", ""),
    )


# Singleton — imported by other modules as:
#   from choreminder.config import settings
settings = _load_settings()
