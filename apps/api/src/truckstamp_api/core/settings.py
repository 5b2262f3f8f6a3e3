from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./truckstamp.db"
    redis_url: str = "redis://localhost:6379/0"
    log_level: str = "INFO"
    tracing_enabled: bool = True

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    # Check-in geofence
    checkin_radius_meters: float = 200.0
    vendor_location_max_age_minutes: int = 60
    checkin_cooldown_hours: int = 4
    loyalty_default_stamps_required: int = Field(default=10, gt=0)

    # Check-in rate limits
    # coarse per-user limiter fails open, per-vendor limiter fails closed
    checkin_rate_limit_user_max: int = 20
    checkin_rate_limit_user_window_seconds: int = 60 * 60
    checkin_rate_limit_vendor_max: int = 3
    checkin_rate_limit_vendor_window_seconds: int = 60 * 60
    rate_limit_unavailable_retry_seconds: int = 60

    # Idempotency claims
    idempotency_claim_stale_seconds: int = 10 * 60
    idempotency_claim_max_attempts: int = 10

    # Vendor tiers that unlock featured placement
    featured_eligible_tiers: list[str] = Field(default_factory=lambda: ["pro"])

    @field_validator("featured_eligible_tiers", mode="before")
    @classmethod
    def _parse_tier_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip() for item in value if str(item).strip()]
        return []


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
