# backend/backoffice/config.py
from __future__ import annotations
import os


def _env_flag(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/backoffice.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///backoffice.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Consignment codes look like KON-20260118-0001
    CONSIGNMENT_CODE_PREFIX = "KON"

    # Unit recorded on stock entries when the product has none
    DEFAULT_UNIT = "Kg"

    # Fail fast (409 Conflict) instead of waiting on a locked balance row.
    # SQLite ignores SELECT ... FOR UPDATE entirely.
    LOCK_NOWAIT = _env_flag("LOCK_NOWAIT", True)
