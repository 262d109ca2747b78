from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in {'1', 'true', 'yes', 'y', 'on'}


@dataclass(frozen=True)
class Settings:
    app_name: str
    cors_origins: str
    scheduler_enabled: bool


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv('APP_NAME', 'contract-sync-api'),
        cors_origins=os.getenv('CORS_ORIGINS', 'http://localhost:3000'),
        scheduler_enabled=_env_bool('SCHEDULER_ENABLED', True)
    )
