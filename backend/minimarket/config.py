# backend/minimarket/config.py
from __future__ import annotations
import os


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # Server of record, stored in backend/instance/minimarket.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL",  # optional alternative location
        "sqlite:///minimarket.sqlite3",  # default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    BCRYPT_ROUNDS = _env_int("BCRYPT_ROUNDS", 12)
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Offline client (LocalStore, SyncManager, cache worker)
    OFFLINE_DATABASE_URL = os.environ.get("OFFLINE_DATABASE_URL", "sqlite:///offline.sqlite3")
    OFFLINE_CACHE_URL = os.environ.get("OFFLINE_CACHE_URL", "sqlite:///offline-cache.sqlite3")
    SYNC_SERVER_URL = os.environ.get("SYNC_SERVER_URL", "http://127.0.0.1:5000")
    SYNC_API_TOKEN = os.environ.get("SYNC_API_TOKEN")

    # 15 minutes between automatic sync cycles
    SYNC_INTERVAL_SECONDS = _env_int("SYNC_INTERVAL_SECONDS", 900)
    SYNC_TIMEOUT_SECONDS = _env_int("SYNC_TIMEOUT_SECONDS", 15)
    SYNC_MAX_RETRIES = _env_int("SYNC_MAX_RETRIES", 5)
    SYNC_BACKOFF_BASE_SECONDS = _env_int("SYNC_BACKOFF_BASE_SECONDS", 30)
    SYNC_BACKOFF_MAX_SECONDS = _env_int("SYNC_BACKOFF_MAX_SECONDS", 3600)
    SYNC_OWN_SALES_ONLY = _env_bool("SYNC_OWN_SALES_ONLY", False)
    CONNECTIVITY_POLL_SECONDS = _env_int("CONNECTIVITY_POLL_SECONDS", 10)
    SYNC_LOG_RETENTION_DAYS = _env_int("SYNC_LOG_RETENTION_DAYS", 30)

    # Browser origins allowed to call the API (admin UI dev servers)
    CORS_ORIGINS = {
        "http://localhost:5173",
        "http://127.0.0.1:5173",
        "http://localhost:4173",
        "http://127.0.0.1:4173",
    }
