# backend/tradebooks/config.py
from __future__ import annotations
import os


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _bps_list_env(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return tuple(int(part) for part in raw.split(",") if part.strip())


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/tradebooks.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",
        "sqlite:///tradebooks.sqlite3",
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # GST slabs accepted on invoice lines, in basis points (4% and 18% plus exempt)
    TAX_RATE_BUCKETS_BPS = _bps_list_env("TAX_RATE_BUCKETS_BPS", (0, 400, 1800))

    DEFAULT_PAYMENT_TERMS_DAYS = _int_env("DEFAULT_PAYMENT_TERMS_DAYS", 30)

    # Optimistic-concurrency retry policy for write operations
    RETRY_ATTEMPTS = _int_env("RETRY_ATTEMPTS", 3)
    RETRY_BACKOFF_SECONDS = _float_env("RETRY_BACKOFF_SECONDS", 0.1)

    # Browser origins allowed to call the API (comma-separated)
    CORS_ALLOWED_ORIGINS = tuple(
        origin.strip()
        for origin in os.environ.get(
            "CORS_ALLOWED_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173"
        ).split(",")
        if origin.strip()
    )
