"""
Configuration and settings for the drip·mate backend.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Database (Postgres expected, any SQLAlchemy URL works)
    database_url: Optional[str] = Field(default=None)

    # Development toggles
    use_in_memory_backends: bool = Field(default=False)

    # Comma separated list of origins allowed by CORS
    allowed_origins: str = Field(default="")

    # Shared secret for the whitelist admin routes
    admin_password: Optional[str] = Field(default=None)

    token_prefix: str = Field(default="BREW")

    # Mail (Resend)
    resend_api_key: Optional[str] = Field(default=None)
    mail_from: str = Field(default="drip·mate <hello@dripmate.app>")
    mail_subject: str = Field(default="Dein dripmate Beta-Zugang")
    app_url: str = Field(default="https://dripmate.app")
    mail_timeout_seconds: float = Field(default=10.0)

    # LLM / Gemini
    gemini_api_key: Optional[str] = Field(default=None)
    gemini_model: str = Field(default="gemini-3-flash-preview")

    # Rate limiting (slowapi; Redis storage when configured)
    redis_url: Optional[str] = Field(default=None)
    rate_limit_enabled: bool = Field(default=True)
    api_rate_limit: str = Field(default="100 per 15 minutes")
    ai_rate_limit: str = Field(default="10 per hour")

    @property
    def origins(self) -> list[str]:
        origins = [o.strip() for o in self.allowed_origins.split(",") if o.strip()]
        if self.environment == "development":
            origins.extend(
                [
                    "http://localhost:3000",
                    "http://localhost:5173",
                    "http://127.0.0.1:5173",
                ]
            )
        return origins


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
