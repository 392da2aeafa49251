"""
Runtime settings shared by the engines and their adapters.

Values come from the environment so that the CLI, the API adapter and the
test-suite can point the engines at different databases without code changes.
"""

import functools
import os
from dataclasses import dataclass, field


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    """Settings loaded from environment variables."""

    DATABASE_URL: str = field(
        default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./nebula.db")
    )
    DATABASE_ECHO: bool = field(
        default_factory=lambda: os.getenv("DATABASE_ECHO", "false").lower() == "true"
    )
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    LOG_JSON: bool = field(
        default_factory=lambda: os.getenv("LOG_JSON", "true").lower() == "true"
    )

    # Escrow account that sits between buyer and seller during a trade
    SYSTEM_PLAYER_ID: int = field(
        default_factory=lambda: int(os.getenv("SYSTEM_PLAYER_ID", "0"))
    )
    DEFAULT_COMMISSION_RATE: str = field(
        default_factory=lambda: os.getenv("DEFAULT_COMMISSION_RATE", "0.05")
    )

    CORS_ORIGINS: list[str] = field(
        default_factory=lambda: _split_csv(os.getenv("CORS_ORIGINS", "http://localhost:3000"))
    )


@functools.lru_cache()
def get_settings() -> Settings:
    """
    Get settings (cached).

    Call `get_settings.cache_clear()` after changing the environment in tests.
    """
    return Settings()
