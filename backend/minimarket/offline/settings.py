# Overview: Settings of the offline client, built from the Flask Config or the environment.

from __future__ import annotations

from dataclasses import dataclass

from ..config import Config


@dataclass(frozen=True)
class OfflineSettings:
    database_url: str = "sqlite:///offline.sqlite3"
    cache_url: str = "sqlite:///offline-cache.sqlite3"
    server_url: str = "http://127.0.0.1:5000"
    api_token: str | None = None

    sync_interval: float = 900
    request_timeout: float = 15
    max_retries: int = 5
    backoff_base: float = 30
    backoff_max: float = 3600
    own_sales_only: bool = False
    connectivity_poll: float = 10
    log_retention_days: int = 30

    @classmethod
    def from_config(cls, config=None) -> "OfflineSettings":
        """
        Accepts a Flask app.config mapping or a Config-like class.

        Missing keys fall back to Config, which reads the environment.
        """
        def get(key: str):
            if config is None:
                return getattr(Config, key)
            if isinstance(config, dict) or hasattr(config, "get"):
                value = config.get(key)
                return getattr(Config, key) if value is None else value
            return getattr(config, key, getattr(Config, key))

        return cls(
            database_url=get("OFFLINE_DATABASE_URL"),
            cache_url=get("OFFLINE_CACHE_URL"),
            server_url=get("SYNC_SERVER_URL"),
            api_token=get("SYNC_API_TOKEN") or None,
            sync_interval=float(get("SYNC_INTERVAL_SECONDS")),
            request_timeout=float(get("SYNC_TIMEOUT_SECONDS")),
            max_retries=int(get("SYNC_MAX_RETRIES")),
            backoff_base=float(get("SYNC_BACKOFF_BASE_SECONDS")),
            backoff_max=float(get("SYNC_BACKOFF_MAX_SECONDS")),
            own_sales_only=bool(get("SYNC_OWN_SALES_ONLY")),
            connectivity_poll=float(get("CONNECTIVITY_POLL_SECONDS")),
            log_retention_days=int(get("SYNC_LOG_RETENTION_DAYS")),
        )
