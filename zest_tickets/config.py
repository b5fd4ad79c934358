"""
Environment-driven settings for the ticket service.

Loaded once at import; tests set the environment before importing the app.
"""

from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo
import os

from dotenv import load_dotenv

load_dotenv()


@dataclass
class Settings:
    """Service settings with local-development defaults."""

    environment: str = "development"

    database_url: str = "sqlite:///./zest_tickets.db"
    redis_url: str = "redis://localhost:6379/0"

    # HS256 secret used to verify caller bearer tokens
    auth_token_secret: str = "dev_secret_change_me"

    razorpay_key_id: Optional[str] = None
    razorpay_key_secret: Optional[str] = None
    razorpay_base_url: str = "https://api.razorpay.com"

    maintenance_api_token: Optional[str] = None

    # Ticket dates and times are wall-clock values in this zone
    local_tz: str = "Asia/Kolkata"

    max_tickets_per_booking: int = 50
    write_batch_size: int = 500
    scan_rate_limit_per_min: int = 60
    tickets_rate_limit_per_min: int = 30
    bookings_per_user_per_hour: int = 5
    expiry_sweep_interval_seconds: int = 900

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.local_tz)

    @classmethod
    def from_environment(cls) -> "Settings":
        """Load settings from environment variables."""
        env = os.environ
        return cls(
            environment=env.get("APP_ENV", "development"),
            database_url=env.get("DATABASE_URL", cls.database_url),
            redis_url=env.get("REDIS_URL", cls.redis_url),
            auth_token_secret=env.get("AUTH_TOKEN_SECRET", cls.auth_token_secret),
            razorpay_key_id=env.get("RAZORPAY_KEY_ID") or None,
            razorpay_key_secret=env.get("RAZORPAY_KEY_SECRET") or None,
            razorpay_base_url=env.get("RAZORPAY_BASE_URL", cls.razorpay_base_url),
            maintenance_api_token=env.get("MAINTENANCE_API_TOKEN") or None,
            local_tz=env.get("LOCAL_TZ", cls.local_tz),
            max_tickets_per_booking=int(env.get("MAX_TICKETS_PER_BOOKING", cls.max_tickets_per_booking)),
            write_batch_size=int(env.get("WRITE_BATCH_SIZE", cls.write_batch_size)),
            scan_rate_limit_per_min=int(env.get("SCAN_RATE_LIMIT_PER_MIN", cls.scan_rate_limit_per_min)),
            tickets_rate_limit_per_min=int(env.get("TICKETS_RATE_LIMIT_PER_MIN", cls.tickets_rate_limit_per_min)),
            bookings_per_user_per_hour=int(env.get("BOOKINGS_PER_USER_PER_HOUR", cls.bookings_per_user_per_hour)),
            expiry_sweep_interval_seconds=int(
                env.get("EXPIRY_SWEEP_INTERVAL_SECONDS", cls.expiry_sweep_interval_seconds)
            ),
        )


settings = Settings.from_environment()
