"""Application configuration using Pydantic Settings."""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Number Pool Service"
    app_env: str = "development"
    debug: bool = False
    log_level: str = "INFO"

    # Database (Supabase PostgreSQL)
    database_url: str = "postgresql+asyncpg://localhost:5432/number_pool"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Voice provider (where pool numbers get imported on assignment)
    voice_provider: str = "vapi"  # "vapi" or "mock"
    vapi_api_key: str = ""
    vapi_base_url: str = "https://api.vapi.ai"
    vapi_credential_id: str = ""  # BYO SIP trunk credential for the pool provider
    import_timeout_seconds: float = 30.0

    # Pool behaviour
    default_region: str = "IE"
    reservation_ttl_minutes: int = 15
    recycle_cooldown_hours: int = 24
    low_inventory_threshold: int = 3

    # Background jobs
    background_jobs_enabled: bool = True
    maintenance_interval_seconds: int = 300
    queue_drain_interval_seconds: int = 60
    queue_batch_size: int = 10
    lease_ttl_seconds: int = 600

    # Telegram (Alerts)
    telegram_bot_token: str = ""
    telegram_alerts_chat_id: str = ""

    @field_validator("default_region", mode="before")
    @classmethod
    def upper_region(cls, v: str) -> str:
        return v.upper() if isinstance(v, str) else v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.app_env.lower() == "production"

    @property
    def use_mock_voice_provider(self) -> bool:
        """Use the mock provider when asked to, or when Vapi isn't configured outside production."""
        if self.voice_provider.lower() == "mock":
            return True
        return not self.vapi_api_key and not self.is_production


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
