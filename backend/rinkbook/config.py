"""
Configuration settings for the hockey training booking engine.
"""

from datetime import date, datetime
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field
import pytz


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Redis Configuration
    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_username: str = Field(default="default", alias="REDIS_USERNAME")
    redis_password: str = Field(default="", alias="REDIS_PASSWORD")
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")

    # Payment gateway
    stripe_secret_key: str = Field(default="", alias="STRIPE_SECRET_KEY")
    stripe_api_version: str = Field(default="2025-02-24.acacia", alias="STRIPE_API_VERSION")
    default_currency: str = Field(default="cad", alias="DEFAULT_CURRENCY")

    # Slot capacities
    max_group_capacity: int = Field(
        default=6,
        alias="MAX_GROUP_CAPACITY",
        description="Maximum players per group session slot"
    )
    sunday_ice_capacity: int = Field(default=20, alias="SUNDAY_ICE_CAPACITY")
    private_capacity: int = Field(default=1, alias="PRIVATE_CAPACITY")
    semi_private_capacity: int = Field(default=2, alias="SEMI_PRIVATE_CAPACITY")

    # Business Rules Configuration
    credit_validity_months: int = Field(default=12, alias="CREDIT_VALIDITY_MONTHS")
    auto_book_horizon_days: int = Field(
        default=14,
        alias="AUTO_BOOK_HORIZON_DAYS",
        description="Recurring schedules only auto-book occurrences within this many days"
    )
    cancellation_window_hours: int = Field(
        default=24,
        alias="CANCELLATION_WINDOW_HOURS",
        description="Cancellations at least this far ahead get their credit back"
    )
    low_credit_threshold: int = Field(default=3, alias="LOW_CREDIT_THRESHOLD")
    credit_expiry_warning_days: int = Field(default=30, alias="CREDIT_EXPIRY_WARNING_DAYS")

    # Application Configuration
    timezone: str = Field(default="America/Toronto", alias="TIMEZONE")
    saga_ttl_seconds: int = Field(
        default=7 * 24 * 3600,
        alias="SAGA_TTL_SECONDS",
        description="TTL for saga intent records in Redis"
    )
    stale_intent_seconds: int = Field(
        default=300,
        alias="STALE_INTENT_SECONDS",
        description="Pending saga intents older than this are picked up by reconciliation"
    )
    cron_secret: Optional[str] = Field(default=None, alias="CRON_SECRET")
    notification_webhook_url: Optional[str] = Field(default=None, alias="NOTIFICATION_WEBHOOK_URL")
    notification_timeout_seconds: float = Field(default=5.0, alias="NOTIFICATION_TIMEOUT_SECONDS")

    # Failure Simulation (for testing)
    simulate_booking_failure: bool = Field(
        default=False,
        alias="SIMULATE_BOOKING_FAILURE"
    )

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def get_redis_url(self) -> str:
        """Construct Redis URL from components or return provided URL."""
        if self.redis_url:
            return self.redis_url
        auth = f"{self.redis_username}:{self.redis_password}@" if self.redis_password else ""
        return f"redis://{auth}{self.redis_host}:{self.redis_port}"

    def get_timezone(self) -> pytz.timezone:
        """Get timezone object."""
        return pytz.timezone(self.timezone)

    def get_today_local(self) -> date:
        """Get today's date in the rink's timezone."""
        return self.get_current_time_local().date()

    def get_current_time_local(self) -> datetime:
        """Get current datetime in the rink's timezone."""
        tz = self.get_timezone()
        return datetime.now(tz)

    def localize(self, value: datetime) -> datetime:
        """Attach the rink's timezone to a naive datetime."""
        return self.get_timezone().localize(value)

    def capacity_for(self, session_type: str) -> int:
        """Maximum occupancy of one slot of the given session type."""
        capacities = {
            "group": self.max_group_capacity,
            "sunday": self.sunday_ice_capacity,
            "private": self.private_capacity,
            "semi_private": self.semi_private_capacity,
        }
        return capacities[session_type]


# Global settings instance
settings = Settings()
