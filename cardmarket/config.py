# cardmarket/config.py
from __future__ import annotations

import logging
import os
from typing import FrozenSet

from dotenv import load_dotenv
from pydantic import BaseModel, Field

# Load .env locally (safe in prod too)
load_dotenv()


def _env_flag(name: str, default: str = "1") -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


def _env_ids(name: str) -> FrozenSet[str]:
    raw = os.getenv(name, "")
    return frozenset(x.strip() for x in raw.split(",") if x.strip())


# -------------------
# Config (env-driven)
# -------------------
class Settings(BaseModel):
    app_name: str = Field(default_factory=lambda: os.getenv("APP_NAME", "Card Marketplace Orders API"))
    database_url: str = Field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./cardmarket.db").strip())
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").strip().upper())

    # Users allowed to cancel any order, resolve refunds and confirm payments.
    admin_user_ids: FrozenSet[str] = Field(default_factory=lambda: _env_ids("ADMIN_USER_IDS"))
    notifications_enabled: bool = Field(default_factory=lambda: _env_flag("NOTIFICATIONS_ENABLED"))
    # "sql" stores in-app rows, "log" only writes them to the log.
    notification_backend: str = Field(default_factory=lambda: os.getenv("NOTIFICATION_BACKEND", "sql").strip().lower())


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
