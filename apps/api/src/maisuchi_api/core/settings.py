from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./maisuchi.db"
    database_echo: bool = False

    # Application URLs
    frontend_url: str = "http://localhost:5173"
    api_base_url: str = "http://localhost:8000"

    # Internal API security (checkout + admin collaborators)
    checkout_api_key: str = ""

    # Loyalty claims
    loyalty_daily_claim_limit: int = Field(default=3, ge=0)
    loyalty_timezone: str = "America/Toronto"
    loyalty_redemption_code_prefix: str = "RWD"
    loyalty_verify_balance_on_claim: bool = True

    # Loyalty balances
    loyalty_balance_max_retries: int = Field(default=5, ge=1)
    loyalty_points_per_currency_unit: int = Field(default=1, ge=0)
    loyalty_history_default_limit: int = 10

    # Loyalty reconciliation worker
    loyalty_reconciliation_worker_enabled: bool = False
    loyalty_reconciliation_interval_seconds: int = 15 * 60

    @field_validator("loyalty_timezone", mode="before")
    @classmethod
    def _normalize_timezone(cls, value: object) -> str:
        if value is None:
            return "UTC"
        text = str(value).strip()
        return text or "UTC"

    @field_validator("loyalty_redemption_code_prefix", mode="before")
    @classmethod
    def _normalize_code_prefix(cls, value: object) -> str:
        if value is None:
            return "RWD"
        text = str(value).strip().upper()
        return text or "RWD"


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
