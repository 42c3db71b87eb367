# progression/core/config.py
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# .env lives next to pyproject.toml
ENV_FILE = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_FILE, override=False)


class Settings(BaseSettings):
    # ---- App / Infra ----
    ENVIRONMENT: Literal["development", "production"] = "development"
    DATABASE_URL: Optional[str] = None
    LOG_LEVEL: str = "INFO"

    # ---- Leveling ----
    # Level N needs N * LEVEL_XP_UNIT current XP to cross into N + 1.
    LEVEL_XP_UNIT: int = Field(default=1000, ge=1)

    # ---- Peer validation ----
    DEFAULT_REQUIRED_VALIDATIONS: int = Field(default=2, ge=1)
    VALIDATION_EXPIRY_DAYS: int = Field(default=7, ge=1)

    # ---- Weekly consistency bonus ----
    WEEKLY_BONUS_MIN_DAYS: int = Field(default=3, ge=1)
    WEEKLY_BONUS_LOOKBACK_DAYS: int = Field(default=7, ge=1)

    # Unknown reason codes: raise in development, warn + 0 XP in production.
    STRICT_CATALOG: Optional[bool] = None

    model_config = SettingsConfigDict(
        env_file=str(ENV_FILE),
        env_file_encoding="utf-8",
        env_prefix="PROGRESSION_",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def strict_catalog(self) -> bool:
        if self.STRICT_CATALOG is not None:
            return self.STRICT_CATALOG
        return self.ENVIRONMENT == "development"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def require_database_url(settings: Optional[Settings] = None) -> str:
    """
    Runtime check with a clear message when the PostgreSQL store is used without a DSN.
    """
    settings = settings or get_settings()
    if not settings.DATABASE_URL:
        raise RuntimeError(
            "PROGRESSION_DATABASE_URL is not set. Check .env or the process environment."
        )
    return settings.DATABASE_URL
