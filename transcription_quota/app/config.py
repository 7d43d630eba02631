from __future__ import annotations

from typing import Optional

from pydantic import AnyUrl, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8-sig",
        case_sensitive=False,
        extra="ignore",
    )

    # Required when STORAGE_BACKEND=supabase
    SUPABASE_URL: Optional[AnyUrl] = None
    SUPABASE_SERVICE_ROLE_KEY: Optional[str] = None
    APP_ENV: str = "local"
    STORAGE_BACKEND: str = "supabase"  # supabase | memory
    FRONTEND_CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://localhost:5173"],
    )

    TRANSCRIPTION_PRO_LIMIT_MINUTES: int = 120
    TRANSCRIPTION_TOPUP_PACKAGE_MINUTES: int = 120
    TRANSCRIPTION_COST_CENTS_PER_MINUTE: float = 1.0
    # Comma-separated
    UNLIMITED_USER_IDS: str = ""
    UNLIMITED_USER_EMAILS: str = ""

    # Shared secret expected in X-Topup-Secret from the billing webhook relay
    TOPUP_WEBHOOK_SECRET: Optional[str] = None


settings = Settings()
