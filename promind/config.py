"""
Bot configuration - pydantic-settings, read from the environment or .env.

Startup refuses to continue when the database, the assistant credentials or
the pricing table are unusable.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Bot database (required)
    database_url: str = ""
    main_database_url: str | None = None  # External shop orders DB (read-only)
    database_pool_size: int = 10
    database_max_overflow: int = 5
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600

    # Service
    service_name: str = "promind-bot"
    service_version: str = "0.3.0"
    admin_api_key: str = ""  # X-API-Key for operational endpoints
    api_host: str = "0.0.0.0"
    api_port: int = 8000

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Chat assistant (OpenAI Assistants API)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com/v1"
    openai_assistant_id: str = ""
    openai_image_model: str = "gpt-image-1"
    openai_image_size: str = "1024x1024"
    openai_image_quality: str = "low"
    prompt_optimizer_model: str = "gpt-4o-mini"
    video_prompt_optimization: bool = True

    # Video provider A - Kling ("lite")
    kling_access_key: str = ""
    kling_secret_key: str = ""
    kling_api_url: str = "https://api.klingai.com"
    kling_model: str = "kling-v1"

    # Video provider B - OpenAI-compatible video API ("pro")
    video_b_api_key: str = ""  # Falls back to openai_api_key
    video_b_base_url: str = "https://api.openai.com/v1"
    video_b_model: str = "sora-2-pro"
    video_b_size: str = "1280x720"

    # Polling policies (seconds / attempts)
    assistant_poll_interval_seconds: float = 3.0
    assistant_poll_max_attempts: int = 60
    kling_poll_interval_seconds: float = 5.0
    kling_poll_max_attempts: int = 60
    video_b_poll_interval_seconds: float = 10.0
    video_b_poll_max_attempts: int = 60

    # Pricing (tokens)
    text_cost: int = 1
    image_cost: int = 60
    video_base_cost_lite: int = 100
    video_base_cost_pro: int = 250
    video_base_duration: int = 5

    # Ledger
    initial_token_grant: int = 100
    subscription_days: int = 30
    plus_plan_tokens: int = 1000
    pro_plan_tokens: int = 3000
    topup_tokens: int = 500
    paid_order_status: str = "paid"

    # Interactive requests
    pending_request_ttl_seconds: int = 900

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The bot MUST NOT start without its database and assistant credentials.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
            )

        if not self.openai_api_key.strip():
            errors.append("OPENAI_API_KEY is required but empty or missing")

        if self.video_base_duration <= 0:
            errors.append("VIDEO_BASE_DURATION must be positive")
        for name in ("text_cost", "image_cost", "video_base_cost_lite", "video_base_cost_pro"):
            if getattr(self, name) <= 0:
                errors.append(f"{name.upper()} must be a positive token amount")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def sanitized_openai_api_key(self) -> str:
        """API key with BOM and any embedded whitespace removed."""
        return "".join(self.openai_api_key.replace("\ufeff", "").split())

    @property
    def video_b_key(self) -> str:
        """Key for video provider B (falls back to the assistant key)."""
        return self.video_b_api_key.strip() or self.sanitized_openai_api_key

    @property
    def kling_configured(self) -> bool:
        """Whether Kling credentials are present."""
        return bool(self.kling_access_key and self.kling_secret_key)


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
