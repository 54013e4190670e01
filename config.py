import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional, Tuple

from dotenv import load_dotenv

CONFLICT_CHECK_MODES = ("per_date", "range")


@dataclass(frozen=True)
class Settings:
    database_url: Optional[str]
    sql_echo: bool = False
    cors_origins: Tuple[str, ...] = ("*",)
    conflict_check_mode: str = "per_date"
    log_level: str = "INFO"


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _parse_origins(raw: str) -> Tuple[str, ...]:
    # CORS_ORIGINS=https://a.example,https://b.example
    origins = tuple(p.strip() for p in raw.split(",") if p.strip())
    return origins or ("*",)


@lru_cache
def get_settings() -> Settings:
    # .env never overrides variables already set in the process environment.
    load_dotenv(override=False)

    mode = os.environ.get("CONFLICT_CHECK_MODE", "per_date").strip().lower()
    if mode not in CONFLICT_CHECK_MODES:
        raise ValueError(
            f"Invalid CONFLICT_CHECK_MODE: {mode!r}. Expected one of {', '.join(CONFLICT_CHECK_MODES)}."
        )

    return Settings(
        database_url=os.environ.get("DATABASE_URL") or None,
        sql_echo=_parse_bool(os.environ.get("SQL_ECHO", "0")),
        cors_origins=_parse_origins(os.environ.get("CORS_ORIGINS", "*")),
        conflict_check_mode=mode,
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper(),
    )


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
    )
