# coinvest/core/config.py
from __future__ import annotations

from decimal import Decimal
from typing import Dict, Set

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # --- Core ---
    DATABASE_URL: str = "sqlite:///./coinvest.db"
    DB_POOL_TIMEOUT: int = 10
    LOG_LEVEL: str = "INFO"

    # comma separated; empty = any admin id is accepted
    ADMIN_USER_IDS: str | None = None

    # --- Business constants ---
    WELCOME_BONUS: Decimal = Decimal("1000")
    HOLDING_PERIOD_MULTIPLIERS: Dict[int, Decimal] = {
        5: Decimal("1.05"),
        10: Decimal("1.07"),
        20: Decimal("1.10"),
    }

    # --- Identifiers ---
    REFERENCE_DIGITS: int = 6
    IDENTIFIER_ATTEMPTS: int = 20

    # --- Concurrency ---
    CONFLICT_RETRIES: int = 5
    LOCK_TIMEOUT_SECONDS: float = 10.0

    # --- Settlement ---
    SETTLEMENT_ENABLED: bool = True
    SETTLEMENT_INTERVAL_SECONDS: int = 300

    def admin_ids(self) -> Set[str]:
        if not self.ADMIN_USER_IDS:
            return set()
        return {x.strip() for x in self.ADMIN_USER_IDS.split(",") if x.strip()}


settings = Settings()
