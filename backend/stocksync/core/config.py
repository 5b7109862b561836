"""Application configuration using pydantic-settings.

All environment variables should be accessed through the settings object
rather than using os.getenv() directly. Engine thresholds (matcher acceptance,
retry bounds, health classification) live here as well so operators can tune
them per deployment without touching code.
"""

from functools import lru_cache
from typing import List, Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore extra env vars
    )

    # Database - defaults to a local SQLite file, override via env for PostgreSQL
    database_url: str = "sqlite:///./stocksync.db"

    # CORS - comma-separated origins or "*" for development only
    cors_origins: str = "http://localhost:3000,http://localhost:8000"

    # ==========================================================================
    # Ingredient matching
    # ==========================================================================
    matcher_bulk_threshold: float = 0.8  # automated repair, stricter
    matcher_suggestion_threshold: float = 0.6  # interactive suggestions
    template_match_threshold: float = 0.85

    # ==========================================================================
    # Deduction
    # ==========================================================================
    # "reject": a decrement that would go below zero is an execution error.
    # "clamp": floor the item at zero and record the shortfall on the ledger row.
    deduction_shortfall_policy: Literal["reject", "clamp"] = "reject"
    deduction_timeout_seconds: float = 10.0

    # ==========================================================================
    # Repair / retry
    # ==========================================================================
    repair_max_attempts: int = 5
    repair_backoff_base_seconds: float = 2.0
    repair_backoff_max_seconds: float = 300.0  # 5 minutes
    repair_batch_size: int = 3
    repair_stale_after_seconds: int = 600

    # ==========================================================================
    # Sync health
    # ==========================================================================
    health_missing_mapping_warning: int = 5
    health_failed_deductions_critical: int = 3
    health_check_interval_seconds: int = 300
    repair_interval_seconds: int = 60

    # Server
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # API
    api_v1_prefix: str = "/api/v1"

    # Rate limiting
    rate_limit_enabled: bool = True

    @field_validator(
        "matcher_bulk_threshold",
        "matcher_suggestion_threshold",
        "template_match_threshold",
    )
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        # Combined match scores top out at 1.25 (similarity + bonuses)
        if v <= 0 or v > 2:
            raise ValueError(f"Match threshold must be in (0, 2], got {v}")
        return v

    @field_validator("repair_max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("repair_max_attempts must be at least 1")
        return v

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list."""
        if self.cors_origins == "*":
            return ["*"]
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
