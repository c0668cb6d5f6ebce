"""
Runtime configuration for the Plas dispatch backend.

Values come from the environment (optionally a .env file via python-dotenv).
Defaults are development-friendly: a local SQLite file and a local Redis.
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """All tunables in one place"""
    database_url: str = "sqlite:///plas.db"
    redis_url: str = "redis://localhost:6379"
    secret_key: str = "dev-secret-change-me"
    app_env: str = "development"

    firebase_project_id: Optional[str] = None
    firebase_client_email: Optional[str] = None
    firebase_private_key: Optional[str] = None

    cleanup_api_token: Optional[str] = None

    # Dispatch
    offer_duration_seconds: int = 60
    order_window_minutes: int = 29
    max_active_orders: int = 2
    average_speed_kmh: float = 20.0

    # Shopper location (Redis)
    location_ttl_seconds: int = 45
    online_freshness_seconds: int = 30

    # Guest upgrade OTP
    otp_ttl_seconds: int = 600
    otp_sweep_interval_seconds: int = 60

    # Money
    delivery_commission_percentage: float = 20.0

    log_retention_hours: int = 24
    persist_system_logs: bool = True  # WARNING+ records go to the system_logs table
    auth_token_max_age_seconds: int = 7 * 24 * 3600

    @property
    def is_development(self) -> bool:
        return self.app_env.lower() == "development"

    @property
    def has_firebase_credentials(self) -> bool:
        return bool(
            self.firebase_project_id
            and self.firebase_client_email
            and self.firebase_private_key
        )

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Loads a .env file first if one is present.
        """
        load_dotenv()
        defaults = cls()
        return cls(
            database_url=os.getenv("DATABASE_URL", defaults.database_url),
            redis_url=os.getenv("REDIS_URL", defaults.redis_url),
            secret_key=os.getenv("SECRET_KEY", defaults.secret_key),
            app_env=os.getenv("APP_ENV", defaults.app_env),
            firebase_project_id=os.getenv("FIREBASE_PROJECT_ID"),
            firebase_client_email=os.getenv("FIREBASE_CLIENT_EMAIL"),
            firebase_private_key=os.getenv("FIREBASE_PRIVATE_KEY"),
            cleanup_api_token=os.getenv("CLEANUP_API_TOKEN") or None,
            offer_duration_seconds=_int_env("OFFER_DURATION_SECONDS", defaults.offer_duration_seconds),
            order_window_minutes=_int_env("ORDER_WINDOW_MINUTES", defaults.order_window_minutes),
            max_active_orders=_int_env("MAX_ACTIVE_ORDERS", defaults.max_active_orders),
            average_speed_kmh=_float_env("AVERAGE_SPEED_KMH", defaults.average_speed_kmh),
            location_ttl_seconds=_int_env("LOCATION_TTL_SECONDS", defaults.location_ttl_seconds),
            online_freshness_seconds=_int_env("ONLINE_FRESHNESS_SECONDS", defaults.online_freshness_seconds),
            otp_ttl_seconds=_int_env("OTP_TTL_SECONDS", defaults.otp_ttl_seconds),
            otp_sweep_interval_seconds=_int_env("OTP_SWEEP_INTERVAL_SECONDS", defaults.otp_sweep_interval_seconds),
            delivery_commission_percentage=_float_env(
                "DELIVERY_COMMISSION_PERCENTAGE", defaults.delivery_commission_percentage
            ),
            log_retention_hours=_int_env("LOG_RETENTION_HOURS", defaults.log_retention_hours),
            persist_system_logs=_bool_env("PERSIST_SYSTEM_LOGS", defaults.persist_system_logs),
            auth_token_max_age_seconds=_int_env("AUTH_TOKEN_MAX_AGE_SECONDS", defaults.auth_token_max_age_seconds),
        )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get global settings instance.
    Load from the environment if not already created.
    """
    global _settings

    if _settings is None:
        _settings = Settings.from_env()

    return _settings
