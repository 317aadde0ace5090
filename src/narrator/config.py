"""Application configuration using environment variables."""

from functools import lru_cache
from pathlib import Path
from typing import Literal, Optional

from pydantic import AliasChoices, AnyHttpUrl, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Resolve the project root once so that `.env` is discovered regardless of CWD
PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

DEFAULT_CORS_ORIGINS = (
    "http://localhost:8081",
    "http://localhost:19006",
    "exp://localhost:8081",
)


class Settings(BaseSettings):
    """Load configuration from environment variables and `.env`."""

    model_config = SettingsConfigDict(
        env_file=str(PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    environment: Literal["development", "production"] = Field(
        default="development",
        validation_alias=AliasChoices("ENVIRONMENT", "NODE_ENV", "environment"),
    )

    # Provider credentials; a provider without its key is left out of the registry
    openai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices("OPENAI_API_KEY", "openai_api_key"),
    )
    openai_base_url: AnyHttpUrl = Field(
        default_factory=lambda: AnyHttpUrl("https://api.openai.com/v1"),
        validation_alias=AliasChoices("OPENAI_BASE_URL", "openai_base_url"),
    )
    google_ai_api_key: Optional[SecretStr] = Field(
        default=None,
        validation_alias=AliasChoices(
            "GOOGLE_AI_API_KEY", "GEMINI_API_KEY", "google_ai_api_key"
        ),
    )
    gemini_live_url: str = Field(
        default=(
            "wss://generativelanguage.googleapis.com/ws/"
            "google.ai.generativelanguage.v1alpha.GenerativeService.BidiGenerateContent"
        ),
        validation_alias=AliasChoices("GEMINI_LIVE_URL", "gemini_live_url"),
    )
    gemini_model: str = Field(
        default="models/gemini-2.0-flash-exp",
        validation_alias=AliasChoices("GEMINI_MODEL", "gemini_model"),
    )
    gemini_voice: str = Field(
        default="Puck",
        validation_alias=AliasChoices("GEMINI_VOICE", "gemini_voice"),
    )
    ai_provider_type: str = Field(
        default="openai",
        validation_alias=AliasChoices("AI_PROVIDER_TYPE", "ai_provider_type"),
    )

    # Feature flags
    enable_wikipedia_integration: bool = Field(
        default=True,
        validation_alias=AliasChoices(
            "ENABLE_WIKIPEDIA_INTEGRATION", "enable_wikipedia_integration"
        ),
    )
    enable_spatial_redaction: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "ENABLE_SPATIAL_REDACTION", "enable_spatial_redaction"
        ),
    )
    enable_holiday_lookup: bool = Field(
        default=True,
        validation_alias=AliasChoices("ENABLE_HOLIDAY_LOOKUP", "enable_holiday_lookup"),
    )
    holiday_api_url: str = Field(
        default="https://date.nager.at/api/v3/publicholidays/{year}/{country}",
        validation_alias=AliasChoices("HOLIDAY_API_URL", "holiday_api_url"),
    )
    wikipedia_user_agent: str = Field(
        default="narrator-backend/0.1 (attraction narration service)",
        validation_alias=AliasChoices("WIKIPEDIA_USER_AGENT", "wikipedia_user_agent"),
    )
    wikipedia_requests_per_hour: int = Field(
        default=480,
        ge=1,
        validation_alias=AliasChoices(
            "WIKIPEDIA_REQUESTS_PER_HOUR", "wikipedia_requests_per_hour"
        ),
    )

    cors_origins: str = Field(
        default=",".join(DEFAULT_CORS_ORIGINS),
        validation_alias=AliasChoices("CORS_ALLOWED_ORIGINS", "cors_origins"),
    )

    request_timeout: float = Field(
        default=120.0,
        ge=1,
        validation_alias=AliasChoices("REQUEST_TIMEOUT_SECONDS", "request_timeout"),
    )
    audio_concurrency: int = Field(
        default=3,
        ge=1,
        le=6,
        validation_alias=AliasChoices("AUDIO_CONCURRENCY", "audio_concurrency"),
    )
    max_chunk_size: int = Field(
        default=3900,
        ge=100,
        le=4096,
        validation_alias=AliasChoices("MAX_CHUNK_SIZE", "max_chunk_size"),
    )
    first_chunk_target_seconds: float = Field(
        default=12.0,
        gt=0,
        validation_alias=AliasChoices(
            "FIRST_CHUNK_TARGET_SECONDS", "first_chunk_target_seconds"
        ),
    )
    rate_limit_sweep_interval: float = Field(
        default=300.0,
        gt=0,
        validation_alias=AliasChoices(
            "RATE_LIMIT_SWEEP_INTERVAL", "rate_limit_sweep_interval"
        ),
    )

    log_level: str = Field(
        default="INFO",
        validation_alias=AliasChoices("LOG_LEVEL", "log_level"),
    )
    log_file: Optional[Path] = Field(
        default=None,
        validation_alias=AliasChoices("LOG_FILE", "log_file"),
    )

    @field_validator("ai_provider_type")
    @classmethod
    def _normalize_provider(cls, value: str) -> str:
        return value.strip().lower() or "openai"

    @property
    def cors_allowed_origins(self) -> list[str]:
        """Comma separated ``CORS_ALLOWED_ORIGINS`` as a list."""

        return [item.strip() for item in self.cors_origins.split(",") if item.strip()]

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


@lru_cache
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()  # type: ignore[call-arg]
