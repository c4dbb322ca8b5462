from decimal import Decimal
from functools import lru_cache
from threading import Lock
from typing import Optional

import structlog
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the subscription lifecycle service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    APP_NAME: str = "Subscription Lifecycle"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False
    INTERNAL_JOB_SECRET: Optional[str] = None
    # Number of trusted reverse-proxy hops when resolving client IP from XFF.
    # 1 = trust the nearest proxy and use the right-most forwarded address.
    TRUSTED_PROXY_HOPS: int = 1

    # Database
    DATABASE_URL: Optional[str] = None
    DB_SSL_MODE: str = "require"
    DB_SSL_CA_CERT_PATH: Optional[str] = None
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 5
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600
    DB_ECHO: bool = False
    DB_SLOW_QUERY_THRESHOLD_SECONDS: float = 0.2

    # Redis (shared rate-limit counters, Celery broker)
    REDIS_URL: Optional[str] = None
    REDIS_HOST: Optional[str] = None
    REDIS_PORT: Optional[str] = None

    # Payment gateway
    GATEWAY_SECRET_KEY: Optional[str] = None
    # Test-mode escape hatch; refused in staging/production.
    WEBHOOK_ALLOW_UNSIGNED: bool = False
    BILLING_SETTLEMENT_CURRENCY: str = "MYR"
    BILLING_AMOUNT_TOLERANCE: Decimal = Decimal("0.50")
    BILLING_GRACE_PERIOD_DAYS: int = 7
    BILLING_STORE_TIMEOUT_SECONDS: float = 10.0

    # Delivery throttle
    WEBHOOK_IP_RATE_LIMIT: int = 10
    WEBHOOK_IP_RATE_WINDOW_SECONDS: int = 60
    WEBHOOK_ORDER_RATE_LIMIT: int = 5
    WEBHOOK_ORDER_RATE_WINDOW_SECONDS: int = 3600
    WEBHOOK_THROTTLE_FAIL_OPEN: bool = True
    RATE_LIMIT_STORE_TIMEOUT_SECONDS: float = 2.0

    # Operator alerts (Telegram)
    TELEGRAM_BOT_TOKEN: Optional[str] = None
    TELEGRAM_CHAT_ID: Optional[str] = None
    TELEGRAM_API_URL: str = "https://api.telegram.org"
    NOTIFICATION_TIMEOUT_SECONDS: float = 5.0

    # Transactional e-mail
    EMAIL_API_URL: str = "https://api.resend.com/emails"
    EMAIL_API_KEY: Optional[str] = None
    EMAIL_FROM: str = "billing@example.com"

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """
        Centralized validation orchestrator.
        Groups validation by concern for clarity and specificity.
        """
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )

        self._validate_database_config()
        self._validate_billing_config()
        self._validate_throttle_config()

        if self.TESTING:
            return self

        self._validate_environment_safety()
        return self

    def _validate_database_config(self) -> None:
        """Validates database and redis connectivity settings."""
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

        # Redis URL construction fallback
        if not self.REDIS_URL and self.REDIS_HOST and self.REDIS_PORT:
            self.REDIS_URL = f"redis://{self.REDIS_HOST}:{self.REDIS_PORT}"

        if self.DB_SLOW_QUERY_THRESHOLD_SECONDS <= 0:
            raise ValueError("DB_SLOW_QUERY_THRESHOLD_SECONDS must be > 0.")

    def _validate_billing_config(self) -> None:
        """Validates reconciliation and lifecycle parameters."""
        currency = self.BILLING_SETTLEMENT_CURRENCY.strip().upper()
        if len(currency) != 3 or not currency.isalpha():
            raise ValueError("BILLING_SETTLEMENT_CURRENCY must be an ISO-4217 code.")
        self.BILLING_SETTLEMENT_CURRENCY = currency

        if self.BILLING_AMOUNT_TOLERANCE < 0:
            raise ValueError("BILLING_AMOUNT_TOLERANCE must be >= 0.")
        if self.BILLING_GRACE_PERIOD_DAYS < 0:
            raise ValueError("BILLING_GRACE_PERIOD_DAYS must be >= 0.")
        if self.BILLING_STORE_TIMEOUT_SECONDS <= 0:
            raise ValueError("BILLING_STORE_TIMEOUT_SECONDS must be > 0.")

    def _validate_throttle_config(self) -> None:
        for name in (
            "WEBHOOK_IP_RATE_LIMIT",
            "WEBHOOK_IP_RATE_WINDOW_SECONDS",
            "WEBHOOK_ORDER_RATE_LIMIT",
            "WEBHOOK_ORDER_RATE_WINDOW_SECONDS",
        ):
            if int(getattr(self, name)) <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.RATE_LIMIT_STORE_TIMEOUT_SECONDS <= 0:
            raise ValueError("RATE_LIMIT_STORE_TIMEOUT_SECONDS must be > 0.")

    def _validate_environment_safety(self) -> None:
        """Refuses insecure switches outside development."""
        if self.ENVIRONMENT not in {ENV_PRODUCTION, ENV_STAGING}:
            return

        if self.WEBHOOK_ALLOW_UNSIGNED:
            raise ValueError(
                "SECURITY ERROR: WEBHOOK_ALLOW_UNSIGNED must be false in staging/production."
            )
        if not self.GATEWAY_SECRET_KEY or len(self.GATEWAY_SECRET_KEY) < 16:
            raise ValueError(
                "GATEWAY_SECRET_KEY must be set to a secure value in staging/production."
            )
        if not self.INTERNAL_JOB_SECRET or len(self.INTERNAL_JOB_SECRET) < 32:
            raise ValueError(
                "INTERNAL_JOB_SECRET must be set (>= 32 chars) in staging/production."
            )
        if not self.REDIS_URL:
            structlog.get_logger().warning(
                "redis_url_missing_in_production",
                msg="Webhook throttle has no shared store; throttle failure policy applies.",
            )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == ENV_PRODUCTION
