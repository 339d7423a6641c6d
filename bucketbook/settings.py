from __future__ import annotations

import os
from dataclasses import dataclass

from bucketbook.money import normalize_currency


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./bucketbook.db"
    frontend_origin: str = "http://localhost:3000"
    default_currency: str = "USD"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            default_currency=get_system_default_currency(),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).upper(),
        )
