"""Application settings - loaded from environment variables / .env"""

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="LEADENGINE_",
        case_sensitive=False,
        extra="ignore",
    )

    # ===========================================
    # CORE
    # ===========================================
    environment: str = "development"
    debug: bool = False
    log_level: str = "INFO"
    database_url: str = "sqlite+aiosqlite:///./leadengine.db"

    # ===========================================
    # LEAD TTL
    # ===========================================
    booking_lead_ttl_hours: int = 24
    manual_lead_ttl_hours: int = 24
    enquiry_lead_ttl_days: int = 30

    # ===========================================
    # ALLOCATION
    # ===========================================
    partner_selection_strategy: str = "first_eligible"  # first_eligible, round_robin
    lead_id_max_attempts: int = 20

    # ===========================================
    # EXPIRY SWEEP
    # ===========================================
    scheduler_enabled: bool = True
    expiry_sweep_interval_seconds: int = 300

    # ===========================================
    # REPORTING
    # ===========================================
    high_value_threshold: float = 50000
    analytics_window_days: int = 30
    default_page_size: int = 50
    max_page_size: int = 200

    @property
    def is_development(self) -> bool:
        return self.environment == "development"


@lru_cache
def get_settings() -> Settings:
    return Settings()
