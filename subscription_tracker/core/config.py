"""
Configuration management using Pydantic Settings.
Supports multiple environments: development, staging, production.
"""

import json
from decimal import Decimal
from typing import Optional, List

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProductConfig(BaseModel):
    """A purchasable subscription product."""

    name: str
    account: str = Field(description="Account that receives the payment")
    amount: Decimal
    currency: str = "HBD"
    days: int = Field(default=31, ge=1)
    memo_account: Optional[str] = Field(
        default=None,
        description="When set, the memo must equal subscribe:<memo_account>"
    )

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def required_memo(self) -> Optional[str]:
        if not self.memo_account:
            return None
        return f"subscribe:{self.memo_account}".lower()


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Hive Subscription Tracker"
    app_version: str = "0.1.0"
    debug: bool = False
    environment: str = "development"

    # Database
    database_url: Optional[str] = None
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "subscriptions"
    postgres_user: str = "subscriptions"
    postgres_password: str = "password"
    database_pool_size: int = 20
    database_max_overflow: int = 10
    database_pool_timeout: int = 2  # seconds

    # Hive
    hive_api_node: str = "api.hive.blog"
    hive_request_timeout: int = 30  # seconds
    hive_poll_interval: float = 3.0  # seconds, one block
    hive_history_batch_size: int = 1000

    # Subscription product
    subscription_payment_account: str = "subscriptions"
    subscription_account: str = "myaccount"
    subscription_amount: Decimal = Decimal("5.000")
    subscription_currency: str = "HBD"
    subscription_days: int = 31
    extra_products: List[ProductConfig] = []

    # Hive connection resilience
    hive_breaker_failure_threshold: int = 3
    hive_breaker_reset_timeout: float = 60.0
    hive_retry_max_attempts: int = 5
    hive_retry_delay: float = 5.0
    hive_retry_backoff_factor: float = 1.5
    max_reconnect_attempts: int = 5
    reconnect_delay: float = 5.0

    # Database resilience
    db_breaker_failure_threshold: int = 5
    db_breaker_reset_timeout: float = 30.0
    db_retry_max_attempts: int = 3
    db_retry_delay: float = 1.0
    db_retry_backoff_factor: float = 2.0

    # Transfer processing
    processing_retry_max_attempts: int = 3
    processing_retry_delay: float = 1.0
    processing_retry_backoff_factor: float = 2.0

    # Scheduler
    sweep_interval: int = 3600  # seconds
    backfill_enabled: bool = True
    backfill_days: int = 31

    # Health check server
    health_check_enabled: bool = True
    health_check_host: str = "0.0.0.0"
    health_check_port: int = 3020
    health_stale_after: int = 7200  # seconds

    # Logging
    log_level: str = "INFO"
    log_format: str = "console"  # json or console
    log_file: Optional[str] = None

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"Log level must be one of: {allowed}")
        return v.upper()

    @field_validator("extra_products", mode="before")
    @classmethod
    def parse_extra_products(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v.strip() else []
        return v

    @property
    def is_development(self) -> bool:
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def hive_api_url(self) -> str:
        if self.hive_api_node.startswith(("http://", "https://")):
            return self.hive_api_node
        return f"https://{self.hive_api_node}"

    def get_products(self) -> List[ProductConfig]:
        """Standard product followed by any configured extra tiers."""
        standard = ProductConfig(
            name="standard",
            account=self.subscription_payment_account,
            amount=self.subscription_amount,
            currency=self.subscription_currency,
            days=self.subscription_days,
            memo_account=self.subscription_account,
        )
        return [standard, *self.extra_products]

    def get_monitored_accounts(self) -> List[str]:
        """Distinct payment-receiving accounts, in product order."""
        accounts: List[str] = []
        for product in self.get_products():
            if product.account not in accounts:
                accounts.append(product.account)
        return accounts


# Global settings instance
settings = Settings()


class DatabaseConfig:
    """Database-specific configuration."""

    @staticmethod
    def get_database_url(config: Settings = settings, async_driver: bool = True) -> str:
        """Get database URL with appropriate driver."""
        url = config.database_url or (
            f"postgresql://{config.postgres_user}:{config.postgres_password}"
            f"@{config.postgres_host}:{config.postgres_port}/{config.postgres_db}"
        )
        if async_driver and url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://")
        elif async_driver and url.startswith("sqlite://"):
            return url.replace("sqlite://", "sqlite+aiosqlite://")
        elif not async_driver and url.startswith("postgresql+asyncpg://"):
            return url.replace("postgresql+asyncpg://", "postgresql://")
        return url

    @staticmethod
    def get_engine_config(config: Settings = settings, url: Optional[str] = None) -> dict:
        """Get SQLAlchemy engine configuration."""
        if url and url.startswith("sqlite"):
            return {}
        return {
            "pool_size": config.database_pool_size,
            "max_overflow": config.database_max_overflow,
            "pool_timeout": config.database_pool_timeout,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }


class HiveConfig:
    """Hive-specific constants."""

    # Numeric asset identifiers used by the appbase API
    NAI_SYMBOLS = {
        "@@000000013": "HBD",
        "@@000000021": "HIVE",
        "@@000000037": "VESTS",
    }

    # Operations that move funds into the monitored account
    TRANSFER_OPERATIONS = ("transfer", "fill_recurrent_transfer")

    @staticmethod
    def get_rpc_config(config: Settings = settings) -> dict:
        """Get Hive RPC client configuration."""
        return {
            "endpoint": config.hive_api_url,
            "timeout": config.hive_request_timeout,
            "poll_interval": config.hive_poll_interval,
            "batch_size": config.hive_history_batch_size,
        }
