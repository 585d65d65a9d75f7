"""
Runtime configuration read from the environment.

Required keys are checked together so a misconfigured deployment reports
everything that is missing in one error instead of failing key by key.
"""

import os
from functools import lru_cache
from typing import List, Mapping, Optional

from pydantic import BaseModel, Field

from errors import ConfigurationError

REQUIRED_ENV = ("DATABASE_URL", "DATABASE_NAME")
TRUE_VALUES = {"1", "true", "yes", "on"}


class Settings(BaseModel):
    database_url: str
    database_name: str
    jwt_secret: str = "dev-secret-change-me"
    jwt_expires_min: int = Field(60, ge=1)
    timezone: str = "Europe/Paris"
    batch_size: int = Field(400, ge=1, le=500)
    use_transactions: bool = True
    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    port: int = 8000


def load_settings(environ: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if environ is None else environ
    missing = [key for key in REQUIRED_ENV if not env.get(key)]
    if missing:
        raise ConfigurationError(missing)

    origins = [o.strip() for o in env.get("CORS_ORIGINS", "*").split(",") if o.strip()]
    return Settings(
        database_url=env["DATABASE_URL"],
        database_name=env["DATABASE_NAME"],
        jwt_secret=env.get("JWT_SECRET", "dev-secret-change-me"),
        jwt_expires_min=int(env.get("JWT_EXPIRES_MIN", "60")),
        timezone=env.get("COOP_TIMEZONE", "Europe/Paris"),
        batch_size=int(env.get("BATCH_SIZE", "400")),
        use_transactions=env.get("MONGO_TRANSACTIONS", "true").lower() in TRUE_VALUES,
        log_level=env.get("LOG_LEVEL", "INFO"),
        cors_origins=origins or ["*"],
        port=int(env.get("PORT", "8000")),
    )


@lru_cache
def get_settings() -> Settings:
    return load_settings()
