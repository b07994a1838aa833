"""Configuration management for the invite code service.

This module provides centralized configuration management using Pydantic BaseSettings
with environment variable support and caching for performance.

Flow Diagram — get_settings()
=============================
::
    ┌─────────────┐
    │  Call get_  │
    │  settings() │
    └──────┬──────┘
           ▼
    ┌─────────────┐
    │ Check cache  │
    │ (lru_cache)  │
    └──────┬──────┘
    HIT?  │
    ┌─────┴─────┐
    │ NO         │ YES
    ▼            ▼
┌─────────┐  ┌─────────┐
│ Create  │  │ Return  │
│ Settings│  │ cached  │
│ instance│  │ value   │
└─────────┘  └─────────┘

How to Use
===========
**Step 1 — Import**::
    from invite_api.config import get_settings

**Step 2 — Get settings**::
    settings = get_settings()
    alphabet = settings.INVITE_ALPHABET

Key Behaviours
===============
- Settings are cached after first access for performance.
- Environment variables override defaults automatically.
- SYSTEM_SALT has no default: a deployment without one fails at startup.
- The invite alphabet is checked once here so a bad deployment never
  issues codes it cannot read back.

Classes:
    Settings:  Pydantic model for all configuration values.
"""

__all__ = ["Settings", "get_settings"]

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from invite_api.codec import check_alphabet


class Settings(BaseSettings):
    APP_NAME: str = "invite-codes-api"
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    # PostgreSQL
    DATABASE_URL: str = "postgresql+asyncpg://invites:invites@db:5432/invites"
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False

    # Redis (locks, cache, rate limiting)
    REDIS_URL: str = "redis://redis:6379/0"
    REDIS_REPLICA_URL: str = ""
    REDIS_SOCKET_TIMEOUT_SECONDS: float = 2.0

    # Invite code format
    INVITE_ALPHABET: str = "K7Q2N5XR8BMVY9CW3PFGJH6DZT4SL"
    SYSTEM_SALT: str

    # Redemption protocol
    INVITE_LOCK_TTL_MS: int = 5000
    INVITE_CACHE_TTL_SECONDS: int = 86400
    INVITE_MAX_CODE_ATTEMPTS: int = 10
    INVITE_DEFAULT_EXPIRES_DAYS: int = 30

    # Sliding-window rate limits, per client IP
    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_DEFAULT_MAX: int = 100
    RATE_LIMIT_STRICT_MAX: int = 5

    # Number of reverse proxies in front of the app whose X-Forwarded-For
    # entries are trusted. 0 ignores the header and uses the socket peer.
    TRUSTED_PROXY_HOPS: int = 0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
    )

    @field_validator("INVITE_ALPHABET")
    @classmethod
    def validate_alphabet(cls, v: str) -> str:
        return check_alphabet(v)

    @field_validator("SYSTEM_SALT")
    @classmethod
    def validate_salt(cls, v: str) -> str:
        if not v:
            raise ValueError("SYSTEM_SALT must not be empty")
        return v


@lru_cache()
def get_settings() -> Settings:
    return Settings()
