from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

APP_VERSION = "1.0.0"
EXPORT_VERSION = "1.0.0"
REPO_ROOT = Path(__file__).resolve().parents[3]
load_dotenv(REPO_ROOT / ".env")

DEFAULT_PBKDF2_ITERATIONS = 100_000
DEFAULT_WINDOW_DAYS = 21
DEFAULT_MAX_UNLOCK_ATTEMPTS = 3
DEFAULT_LOCKOUT_SECONDS = 30
DEFAULT_COOLDOWN_HOURS = 24
DEFAULT_RETENTION_DAYS = 365


def resolve_db_path() -> str:
    db_env = (os.getenv("MINDWELL_DB_PATH") or os.getenv("DB_PATH") or "").strip()
    db_path = Path(db_env) if db_env else (REPO_ROOT / "mindwell.db")
    if not db_path.is_absolute():
        db_path = REPO_ROOT / db_path
    return str(db_path)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass(frozen=True)
class Settings:
    database_url: str
    pbkdf2_iterations: int = DEFAULT_PBKDF2_ITERATIONS
    window_days: int = DEFAULT_WINDOW_DAYS
    max_unlock_attempts: int = DEFAULT_MAX_UNLOCK_ATTEMPTS
    lockout_seconds: int = DEFAULT_LOCKOUT_SECONDS
    cooldown_hours: int = DEFAULT_COOLDOWN_HOURS


def load_settings(database_url: str | None = None) -> Settings:
    return Settings(
        database_url=database_url or f"sqlite:///{resolve_db_path()}",
        pbkdf2_iterations=_env_int("MINDWELL_PBKDF2_ITERATIONS", DEFAULT_PBKDF2_ITERATIONS),
        window_days=_env_int("MINDWELL_WINDOW_DAYS", DEFAULT_WINDOW_DAYS),
        max_unlock_attempts=_env_int("MINDWELL_MAX_UNLOCK_ATTEMPTS", DEFAULT_MAX_UNLOCK_ATTEMPTS),
        lockout_seconds=_env_int("MINDWELL_LOCKOUT_SECONDS", DEFAULT_LOCKOUT_SECONDS, minimum=0),
        cooldown_hours=_env_int("MINDWELL_COOLDOWN_HOURS", DEFAULT_COOLDOWN_HOURS, minimum=0),
    )
