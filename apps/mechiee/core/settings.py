from __future__ import annotations

import os
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreBackend(str, Enum):
    mongo = "mongo"
    memory = "memory"


class Settings(BaseSettings):
    """Unified application settings for the Mechiee dispatch service.

    Loads from env with support for repo ".env" files. Avoids manual load_dotenv().
    """

    _app_env = (os.getenv("APP_ENV") or "").strip().lower()
    _env_files = (
        []
        if _app_env in {"test", "ci"}
        else [
            str((Path(__file__).resolve().parents[1] / ".env")),  # apps/mechiee/.env
            str((Path(__file__).resolve().parents[3] / ".env")),  # repo root .env
        ]
    )

    model_config = SettingsConfigDict(
        env_file=_env_files,
        case_sensitive=False,
        extra="ignore",
    )

    # --- App / Core ---
    app_env: str = Field(default="dev", alias="APP_ENV")
    app_name: str = Field(default="mechiee", alias="APP_NAME")
    debug: bool = Field(default=False, alias="DEBUG")
    # Logging
    log_level: str | None = Field(default=None, alias="MECHIEE_LOG_LEVEL")
    log_level_fallback: str | None = Field(default=None, alias="LOG_LEVEL")

    cors_allow_origins: list[str] = Field(default=["*"], alias="CORS_ALLOW_ORIGINS")

    # --- Persistence ---
    store_backend: StoreBackend = Field(default=StoreBackend.mongo, alias="STORE_BACKEND")
    mongo_uri: str = Field(default="mongodb://localhost:27017", alias="MONGO_URI")
    mongo_database: str = Field(default="mechiee", alias="MONGO_DATABASE")
    mongo_timeout_ms: int = Field(default=5000, alias="MONGO_TIMEOUT_MS", ge=100)

    # --- Dispatch ---
    dispatch_radius_km: float = Field(default=5.0, alias="DISPATCH_RADIUS_KM", gt=0)

    # --- Notifications / chat ---
    notification_ttl_seconds: int = Field(
        default=600, alias="NOTIFICATION_TTL_SECONDS", ge=60
    )
    # Advertised to clients; the server never runs a typing timer.
    typing_quiet_interval_seconds: float = Field(
        default=3.0, alias="TYPING_QUIET_INTERVAL_SECONDS", gt=0
    )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


# Convenience singleton for modules expecting a module-level "settings"
settings = get_settings()
