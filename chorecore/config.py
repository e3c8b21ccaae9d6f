"""
ChoreCore — Centralized configuration.

Loads all settings from .env and validates them.
Every other module reads its tunables from the `settings` singleton.
"""

from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, field_validator

# Load .env from project root (one level up from chorecore/config.py)
_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_ENV_PATH)


def _split_csv(v: str | list[str]) -> list[str]:
    if isinstance(v, list):
        return v
    if isinstance(v, str) and v.strip():
        return [item.strip() for item in v.split(",") if item.strip()]
    return []


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Document store (SQLite)
    DATABASE_PATH: str = "data/chorecore.db"
    STORE_TIMEOUT_SECONDS: float = 5.0
    TRANSACTION_MAX_ATTEMPTS: int = 5

    # Reward ledger
    DEFAULT_REWARD_POINTS: int = 10

    # Photo uploads
    MAX_UPLOAD_BYTES: int = 5 * 1024 * 1024
    ALLOWED_UPLOAD_CONTENT_TYPES: list[str] = [
        "image/jpeg", "image/jpg", "image/png", "image/heic",
    ]

    # Paths whose writes by an under-13 user need approved guardian consent
    CONSENT_GATED_PATHS: list[str] = []

    # Change-feed consumer
    CHANGE_FEED_POLL_SECONDS: float = 1.0
    CHANGE_FEED_BATCH_SIZE: int = 50

    # Award notifications (optional)
    TELEGRAM_BOT_TOKEN: str = ""
    TELEGRAM_CHAT_IDS: dict[str, int] = {}

    LOG_LEVEL: str = "INFO"

    @field_validator("ALLOWED_UPLOAD_CONTENT_TYPES", "CONSENT_GATED_PATHS", mode="before")
    @classmethod
    def parse_csv(cls, v: str | list[str]) -> list[str]:
        return _split_csv(v)

    @field_validator("TELEGRAM_CHAT_IDS", mode="before")
    @classmethod
    def parse_chat_ids(cls, v: str | dict[str, int]) -> dict[str, int]:
        if isinstance(v, dict):
            return v
        chat_ids: dict[str, int] = {}
        for pair in _split_csv(v):
            uid, _, chat_id = pair.partition(":")
            chat_ids[uid.strip()] = int(chat_id)
        return chat_ids

    @field_validator("TRANSACTION_MAX_ATTEMPTS")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("TRANSACTION_MAX_ATTEMPTS must be >= 1")
        return v


def _load_settings() -> Settings:
    """Load settings from environment."""
    return Settings(
        DATABASE_PATH=os.getenv("DATABASE_PATH", "data/chorecore.db"),
        STORE_TIMEOUT_SECONDS=os.getenv("STORE_TIMEOUT_SECONDS", "5.0"),
        TRANSACTION_MAX_ATTEMPTS=os.getenv("TRANSACTION_MAX_ATTEMPTS", "5"),
        DEFAULT_REWARD_POINTS=os.getenv("DEFAULT_REWARD_POINTS", "10"),
        MAX_UPLOAD_BYTES=os.getenv("MAX_UPLOAD_BYTES", str(5 * 1024 * 1024)),
        ALLOWED_UPLOAD_CONTENT_TYPES=os.getenv(
            "ALLOWED_UPLOAD_CONTENT_TYPES", "image/jpeg,image/jpg,image/png,image/heic",
        ),
        CONSENT_GATED_PATHS=os.getenv("CONSENT_GATED_PATHS", ""),
        CHANGE_FEED_POLL_SECONDS=os.getenv("CHANGE_FEED_POLL_SECONDS", "1.0"),
        CHANGE_FEED_BATCH_SIZE=os.getenv("CHANGE_FEED_BATCH_SIZE", "50"),
        TELEGRAM_BOT_TOKEN=os.getenv("TELEGRAM_BOT_TOKEN", ""),
        TELEGRAM_CHAT_IDS=os.getenv("TELEGRAM_CHAT_IDS", ""),
        LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO"),
    )


# Singleton — imported by all other modules as:
#   from chorecore.config import settings
settings = _load_settings()
