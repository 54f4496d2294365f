"""Runtime settings for the membership API, read from the environment."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class Settings:
    """Runtime configuration for the API and its store."""

    database_url: Optional[str] = None
    database_name: str = "project_management"
    store_backend: str = "memory"
    mongo_transactions: bool = False
    notification_page_size: int = 50
    activity_page_size: int = 50
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"
    port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        backend = os.getenv("STORE_BACKEND") or ("mongo" if database_url else "memory")
        origins = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]
        return cls(
            database_url=database_url,
            database_name=os.getenv("DATABASE_NAME", "project_management"),
            store_backend=backend.lower(),
            mongo_transactions=_env_bool("MONGO_TRANSACTIONS"),
            notification_page_size=int(os.getenv("NOTIFICATION_PAGE_SIZE", "50")),
            activity_page_size=int(os.getenv("ACTIVITY_PAGE_SIZE", "50")),
            cors_origins=origins or ["*"],
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", "8000")),
        )


def configure_logging(level: str) -> None:
    level_value = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=level_value,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
