# /clinicbot/config/settings.py

import sys
from typing import List
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # MongoDB
    mongo_uri: str = "mongodb://localhost:27017/clinicbot"
    max_pool_size: int = 10
    min_pool_size: int = 1
    mongo_ssl: bool = False

    # Redis
    redis_url: str = "redis://localhost:6379"

    # AI APIs (optional probabilistic classifier)
    gemini_api_key: str | None = None
    openai_api_key: str | None = None
    llm_classifier_enabled: bool = True
    gemini_model: str = "gemini-1.5-flash"
    openai_model: str = "gpt-4o-mini"

    # Deployment
    environment: str = Field(default="production")
    api_version: str = "v1"
    api_key: str | None = None
    workers: int = 4

    # Dialogue behaviour
    default_language: str = "ru"
    supported_languages: List[str] = ["ru", "en", "kk"]
    session_timeout_minutes: int = 30
    max_fallback_retries: int = 3
    max_turn_attempts: int = 2
    booking_horizon_days: int = 7
    clinic_slots: List[str] = ["09:00", "10:00", "11:00", "14:00", "15:00", "16:00", "17:00"]
    clinic_timezone: str = "Asia/Almaty"
    # Used when the clinics collection has no entry for the session
    clinic_name: str = "Стоматология \"Белый зуб\""

    # Timeouts (seconds) for every suspension point of a turn
    store_timeout_seconds: float = 5.0
    classifier_timeout_seconds: float = 8.0
    completion_timeout_seconds: float = 10.0

    # Limits
    rate_limit_per_identity: int = 30
    rate_limit_window_seconds: int = 60
    rate_limit_per_minute: int = 300
    dedupe_ttl_seconds: int = 600
    clinic_cache_ttl_seconds: int = 1800

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # ---------------- Validators ---------------- #

    @field_validator("supported_languages", "clinic_slots", mode="before")
    @classmethod
    def parse_comma_separated(cls, v):
        """Accept comma-separated strings from the environment as well as lists."""
        if isinstance(v, str):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v

    @field_validator("default_language")
    @classmethod
    def language_code_must_be_short(cls, v: str) -> str:
        v = v.strip().lower()
        if len(v) != 2:
            raise ValueError("DEFAULT_LANGUAGE must be a two-letter language code")
        return v

    @field_validator("max_turn_attempts", "rate_limit_per_identity", "rate_limit_window_seconds")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @property
    def llm_configured(self) -> bool:
        return self.llm_classifier_enabled and bool(self.gemini_api_key or self.openai_api_key)


def validate_environment(settings_obj: Settings):
    try:
        if settings_obj.default_language not in settings_obj.supported_languages:
            raise ValueError("DEFAULT_LANGUAGE must be one of SUPPORTED_LANGUAGES")

        if settings_obj.environment == "production":
            if "localhost" in settings_obj.mongo_uri:
                raise ValueError("MONGO_URI must point to a real cluster in production")
            if not settings_obj.api_key:
                raise ValueError("API_KEY is required in production")

        return settings_obj

    except Exception as e:
        print(f"--- [ERROR] Environment validation failed: {e}")
        sys.exit(1)


settings = Settings()
