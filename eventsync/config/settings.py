"""
Event Inventory Sync Engine
Centralized Configuration Management

This module provides configuration management using Pydantic settings with
environment variable support, validation, and type safety.
"""

from functools import lru_cache
from typing import Optional, List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    """Backing Store Configuration"""

    model_config = SettingsConfigDict(env_prefix="POSTGRES_")

    host: str = Field(default="localhost", description="Database host")
    port: int = Field(default=5432, description="Database port")
    db: str = Field(default="eventsync", alias="database", description="Database name")
    user: str = Field(default="eventsync", description="Database user")
    password: SecretStr = Field(default="secure_password", description="Database password")
    echo: bool = Field(default=False, description="Echo SQL queries")
    url: Optional[str] = Field(default=None, alias="DATABASE_URL", description="Full async URL (overrides host/port)")

    @property
    def async_url(self) -> str:
        """Async database URL, DATABASE_URL wins over the discrete fields"""
        if self.url:
            return self.url
        return f"postgresql+asyncpg://{self.user}:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"


class RedisSettings(BaseSettings):
    """Redis Configuration (distributed key locks)"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=50, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")
    enabled: bool = Field(default=False, description="Use Redis locks instead of in-process locks")
    lock_timeout_seconds: float = Field(default=30.0, description="Lock auto-release timeout")
    lock_wait_seconds: float = Field(default=10.0, description="Max time to wait for a lock")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KafkaSettings(BaseSettings):
    """Kafka Streaming Configuration"""

    model_config = SettingsConfigDict(env_prefix="KAFKA_")

    bootstrap_servers: str = Field(default="localhost:9092", description="Kafka bootstrap servers")
    consumer_group: str = Field(default="eventsync", description="Consumer group ID")
    auto_offset_reset: str = Field(default="earliest", description="Auto offset reset policy")
    max_poll_records: int = Field(default=100, description="Max poll records")
    session_timeout_ms: int = Field(default=30000, description="Session timeout")
    heartbeat_interval_ms: int = Field(default=10000, description="Heartbeat interval")

    # Topic configuration
    topics_storefront: str = Field(default="storefront.orders", description="Storefront orders topic")
    topics_ticketing: str = Field(default="ticketing.orders", description="Ticketing orders topic")
    topics_pos: str = Field(default="pos.orders", description="Point-of-sale orders topic")

    @property
    def topics(self) -> List[str]:
        """List of all configured topics"""
        return [
            self.topics_storefront,
            self.topics_ticketing,
            self.topics_pos,
        ]


class MappingSettings(BaseSettings):
    """Mapping Resolution Configuration"""

    model_config = SettingsConfigDict(env_prefix="MAPPING_")

    time_buffer_minutes: int = Field(default=30, ge=0, description="Symmetric buffer for time-scoped matches")
    event_time_buffer_minutes: int = Field(default=60, ge=0, description="Buffer used when matching by event id")


class LedgerSettings(BaseSettings):
    """Dedup Ledger Configuration"""

    model_config = SettingsConfigDict(env_prefix="LEDGER_")

    max_entries: int = Field(
        default=1000,
        ge=1,
        description="Live dedup keys retained before the oldest are evicted",
    )
    order_key_prefix: str = Field(default="web_paid", description="Prefix for order-level dedup keys")


class SalesSettings(BaseSettings):
    """Sales Recording Configuration"""

    model_config = SettingsConfigDict(env_prefix="SALES_")

    timezone: str = Field(default="America/Toronto", description="Timezone used to derive the sale date")
    currency: str = Field(default="CAD", description="Default currency for audit entries")
    catalog_path: Optional[str] = Field(default=None, description="CSV or Parquet export of the storefront catalog")

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        """Reject unknown IANA zone names early"""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown timezone: {v}") from e
        return v

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class ImportSettings(BaseSettings):
    """Historical Import Configuration"""

    model_config = SettingsConfigDict(env_prefix="IMPORT_")

    batch_size: int = Field(default=25, ge=1, description="Records requested per batch")
    ticketing_max_page_size: int = Field(default=50, ge=1, description="Ticketing platform page size cap")
    sources: List[str] = Field(
        default=["web", "ticketing", "pos"],
        description="Default source order for multi-source imports",
    )


class MonitoringSettings(BaseSettings):
    """Monitoring and Observability Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    prometheus_port: int = Field(default=9090, alias="PROMETHEUS_PORT", description="Prometheus port")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="eventsync", alias="APP_NAME", description="Application name")
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")
    debug: bool = Field(default=False, alias="DEBUG", description="Debug mode")

    # Version
    version: str = Field(default="1.0.0", description="Application version")

    # Subsystem configurations
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    kafka: KafkaSettings = Field(default_factory=KafkaSettings)
    mapping: MappingSettings = Field(default_factory=MappingSettings)
    ledger: LedgerSettings = Field(default_factory=LedgerSettings)
    sales: SalesSettings = Field(default_factory=SalesSettings)
    imports: ImportSettings = Field(default_factory=ImportSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.app_env == "production"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
