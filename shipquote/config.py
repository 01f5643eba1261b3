from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import Dict, Optional
from decimal import Decimal
from functools import lru_cache
import json


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./shipquote.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes

    # App Settings
    APP_NAME: str = "Shipquote Pricing Pipeline"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Redis Cache Settings
    REDIS_URL: Optional[str] = None  # e.g., "redis://localhost:6379/0"
    CACHE_ENABLED: bool = True
    ZONE_CACHE_TTL: int = 86400  # 24 hours, pincode pairs rarely move zones
    RATE_CARD_CACHE_TTL: int = 0  # 0 disables rate card selection caching

    # Pricing
    DEFAULT_GST_RATE: Decimal = Decimal("0.18")  # GST on logistics services in India
    DEFAULT_DIM_DIVISOR: int = 5000  # Volumetric divisor (cm^3 per kg)
    DEFAULT_WEIGHT_ROUNDING_UNIT: Decimal = Decimal("0.5")  # kg
    ZONE_B_TYPE: str = "state"  # "state" or "region" for zoneB classification

    # Quote Sessions
    QUOTE_SESSION_TTL_MINUTES: int = 30  # Sessions are bookable for this long
    QUOTE_WORKER_POOL_SIZE: int = 4  # Concurrent pricing computations per quote
    REVERSE_QUOTE_ENABLED: bool = False  # Allow quoting REVERSE (return) shipments
    INCLUDE_RTO_IN_FORWARD: bool = False  # Add expected RTO charge to forward quotes
    QUOTE_RANKING_STRATEGY: str = "price_margin"  # "price_margin" or "balanced"

    # Booking
    BOOKING_MAX_ATTEMPTS: int = 3  # Selected option plus fallbacks
    CARRIER_DEFAULT_TIMEOUT_SECONDS: float = 20.0
    CARRIER_TIMEOUTS: Dict[str, float] = {
        "ekart": 35.0,
        "delhivery": 20.0,
        "velocity": 35.0,
    }

    # Metrics
    METRICS_NAMESPACE: str = "shipquote"

    @field_validator('CARRIER_TIMEOUTS', mode='before')
    @classmethod
    def parse_carrier_timeouts(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pairs = [item.split('=', 1) for item in v.split(',') if '=' in item]
                return {k.strip().lower(): float(t) for k, t in pairs}
        return v

    @field_validator('ZONE_B_TYPE')
    @classmethod
    def validate_zone_b_type(cls, v):
        v = v.lower()
        if v not in ("state", "region"):
            raise ValueError("ZONE_B_TYPE must be 'state' or 'region'")
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


class PricingFeatureFlags:
    """
    Process-level pricing toggles.

    Built once at startup from Settings and passed to the services that
    need them, so tests can flip a flag without touching the environment.
    """

    def __init__(
        self,
        reverse_quote_enabled: bool = False,
        include_rto_in_forward: bool = False,
    ):
        self.reverse_quote_enabled = reverse_quote_enabled
        self.include_rto_in_forward = include_rto_in_forward

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PricingFeatureFlags":
        return cls(
            reverse_quote_enabled=settings.REVERSE_QUOTE_ENABLED,
            include_rto_in_forward=settings.INCLUDE_RTO_IN_FORWARD,
        )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
