from __future__ import annotations

import sys
from functools import lru_cache
from typing import List

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_DEFAULT_JWT_SECRET = "change-me-in-production-use-long-random-string"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TOKENGATE_")

    # Database
    database_url: str = "sqlite:///./tokengate.db"
    log_sql: bool = False

    # Server
    environment: str = "development"
    log_level: str = "info"
    log_format: str = "json"  # json | plain
    allow_cors_origins: List[str] = ["*"]

    # Owner sessions (JWT)
    jwt_secret: str = _DEFAULT_JWT_SECRET
    jwt_expire_minutes: int = 480  # 8 hours

    # API tokens
    max_active_tokens: int = 10
    token_hash_rounds: int = 12
    max_prefix_candidates: int = 16

    # Per-token request throttling (sliding window)
    api_rate_limit: int = 100
    api_rate_window_ms: int = 60 * 1000

    # Login lockout
    login_max_attempts: int = 5
    login_lockout_minutes: int = 15
    login_ip_rate_limit: str = "20/minute"

    # Seeded admin account
    admin_email: str = "admin@tokengate.local"
    admin_password: str = "changeme"
    admin_name: str = "Tokengate Admin"

    @field_validator("jwt_secret")
    @classmethod
    def validate_jwt_secret(cls, v: str, info) -> str:
        """Refuse to start in production with the default JWT secret."""
        env = info.data.get("environment", "development")
        if env != "development" and v == _DEFAULT_JWT_SECRET:
            print(
                "\nFATAL: TOKENGATE_JWT_SECRET is set to the default value.\n"
                "   Set TOKENGATE_JWT_SECRET to a strong random string before "
                "running in production.\n"
                "   Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(48))\"\n",
                file=sys.stderr,
            )
            raise ValueError(
                "JWT secret must be changed from default in non-development environments. "
                "Set TOKENGATE_JWT_SECRET env var."
            )
        return v

    @field_validator("token_hash_rounds")
    @classmethod
    def validate_rounds(cls, v: int) -> int:
        # bcrypt accepts cost factors 4..31
        if not 4 <= v <= 31:
            raise ValueError("token_hash_rounds must be between 4 and 31")
        return v


@lru_cache
def get_settings() -> Settings:
    return Settings()


# Module-level singleton for convenience
settings = get_settings()
