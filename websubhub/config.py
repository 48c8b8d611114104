from __future__ import annotations

import os
from typing import Any

from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

load_dotenv()


class Settings(BaseModel):
    HUB_DB_PATH: str = Field(default="hub.db", description="SQLite file holding subscriptions")
    API_TOKEN: str = Field(default="dev_token")  # bearer for publish/admin routes
    API_KEYS: str = Field(default="", description="comma-separated API keys")
    CORS_ALLOW_ORIGINS: str = Field(default="*")
    LOG_LEVEL: str = Field(default="INFO")
    VERIFY_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    DELIVERY_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)
    VERIFY_TLS: bool = Field(default=True)
    FANOUT_CONCURRENCY: int = Field(default=32, ge=1)
    DELIVERY_MAX_FAILURES: int = Field(
        default=1,
        ge=1,
        description="consecutive failed pushes before a subscriber is evicted",
    )
    CONTENT_SOURCE_URL: str = Field(default="https://api.adviceslip.com/advice")
    DEMO_TOPIC: str = Field(default="advice")


def _load_settings(existing: Settings | None = None) -> Settings:
    values: dict[str, Any] = {}
    for name, field in Settings.model_fields.items():
        env_value = os.getenv(name)
        if env_value is None:
            if existing is not None and hasattr(existing, name):
                values[name] = getattr(existing, name)
                continue
            values[name] = field.get_default(call_default_factory=True)
        else:
            values[name] = env_value

    try:
        return Settings(**values)
    except ValidationError as exc:
        bad = sorted({str(error["loc"][0]) for error in exc.errors() if error.get("loc")})
        raise RuntimeError(
            f"Invalid configuration for: {', '.join(bad)}"
        ) from exc


settings = _load_settings()


def reload_settings() -> Settings:
    global settings
    fresh = _load_settings(settings)
    settings.__dict__.update(fresh.__dict__)
    return settings
