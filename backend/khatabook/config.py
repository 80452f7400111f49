# backend/khatabook/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/khatabook.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///khatabook.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Bearer token lifetime for the auth context
    SESSION_TTL_HOURS = _env_int("SESSION_TTL_HOURS", 24)

    # Courier <-> shop owner payment-change negotiation
    PAYMENT_CHANGE_MAX_REQUESTS = _env_int("PAYMENT_CHANGE_MAX_REQUESTS", 3)
    PAYMENT_CHANGE_REQUEST_TTL_MINUTES = _env_int("PAYMENT_CHANGE_REQUEST_TTL_MINUTES", 120)  # 0 disables expiry

    # Ledger reads
    LEDGER_RECENT_TRANSACTIONS = _env_int("LEDGER_RECENT_TRANSACTIONS", 5)
    LEDGER_PAGE_LIMIT_MAX = _env_int("LEDGER_PAGE_LIMIT_MAX", 100)

    # "log" or "memory"
    NOTIFICATION_TRANSPORT = os.environ.get("NOTIFICATION_TRANSPORT", "log")
