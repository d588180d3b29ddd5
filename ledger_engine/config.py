from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _list_env(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./ledger.db"
    frontend_origin: str = "http://localhost:3000"
    log_level: str = "INFO"
    upcoming_days: int = 30
    max_catch_up_runs: int = 366
    extra_categories: tuple[str, ...] = ()

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            frontend_origin=os.getenv("FRONTEND_ORIGIN", cls.frontend_origin),
            log_level=os.getenv("LOG_LEVEL", cls.log_level).strip().upper() or "INFO",
            upcoming_days=_int_env("LEDGER_UPCOMING_DAYS", cls.upcoming_days),
            max_catch_up_runs=_int_env("LEDGER_MAX_CATCH_UP_RUNS", cls.max_catch_up_runs),
            extra_categories=_list_env("LEDGER_EXTRA_CATEGORIES"),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


def configure_logging(level: str | int = "INFO") -> None:
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
    root.setLevel(level)
