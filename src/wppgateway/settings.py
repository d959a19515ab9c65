"""Process configuration loaded from environment variables.

All settings are read once and cached; tests call reset_settings() after
changing the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Literal

AppRole = Literal["public", "worker"]


@dataclass(frozen=True)
class Settings:
    """Gateway configuration.

    Attributes:
        database_url: libpq DSN or URL for Postgres.
        evolution_base_url: Provider base URL (e.g. http://localhost:8080).
        evolution_api_key: Provider API key, sent as the `apikey` header.
        evolution_timeout: Timeout (seconds) applied to every Provider call.
        evolution_webhook_secret: Shared secret expected in X-Webhook-Secret.
            Empty disables the check.
        public_webhook_base_url: Public base URL the Provider posts webhooks to.
        tasks_backend: "inline" (threads in this process) or "http" (worker).
        worker_base_url: Worker base URL for the http tasks backend.
        internal_task_secret: Shared secret for worker task endpoints.
        sync_settle_delay: Seconds to wait after "connected" before syncing.
        app_role: "public" or "worker".
        redis_url: Redis URL for cross-process fan-out and sync state. Required
            when sync tasks run in a separate worker.
        evolution_websocket_enabled: Also consume the Provider's push socket.
        evolution_ws_url: Push-socket base URL; defaults to evolution_base_url.
    """

    database_url: str = ""
    evolution_base_url: str = "http://localhost:8080"
    evolution_api_key: str = ""
    evolution_timeout: float = 30.0
    evolution_webhook_secret: str = ""
    public_webhook_base_url: str = ""
    tasks_backend: str = "inline"
    worker_base_url: str = "http://worker:8000"
    internal_task_secret: str = ""
    sync_settle_delay: float = 3.0
    app_role: AppRole = "public"
    redis_url: str = ""
    evolution_websocket_enabled: bool = False
    evolution_ws_url: str = ""


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number, got {raw!r}")


def _bool_env(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings from the environment (cached)."""
    role = os.environ.get("APP_ROLE", "public")
    if role not in ("public", "worker"):
        role = "public"

    return Settings(
        database_url=os.environ.get("DATABASE_URL", ""),
        evolution_base_url=os.environ.get(
            "EVOLUTION_BASE_URL", "http://localhost:8080"
        ).rstrip("/"),
        evolution_api_key=os.environ.get("EVOLUTION_API_KEY", ""),
        evolution_timeout=_float_env("EVOLUTION_TIMEOUT", 30.0),
        evolution_webhook_secret=os.environ.get("EVOLUTION_WEBHOOK_SECRET", ""),
        public_webhook_base_url=os.environ.get("PUBLIC_WEBHOOK_BASE_URL", "").rstrip("/"),
        tasks_backend=os.environ.get("TASKS_BACKEND", "inline"),
        worker_base_url=os.environ.get("WORKER_BASE_URL", "http://worker:8000").rstrip("/"),
        internal_task_secret=os.environ.get("INTERNAL_TASK_SECRET", ""),
        sync_settle_delay=_float_env("SYNC_SETTLE_DELAY", 3.0),
        app_role=role,  # type: ignore[arg-type]
        redis_url=os.environ.get("REDIS_URL", ""),
        evolution_websocket_enabled=_bool_env("EVOLUTION_WEBSOCKET_ENABLED"),
        evolution_ws_url=os.environ.get("EVOLUTION_WS_URL", "").rstrip("/"),
    )


def reset_settings() -> None:
    """Drop the cached settings (for tests)."""
    get_settings.cache_clear()
