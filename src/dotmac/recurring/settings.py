"""Centralized configuration using pydantic-settings.

All configuration is loaded from environment variables and .env files.
For nested settings, use double underscore: BILLING__MAX_PAYMENT_ATTEMPTS=3
"""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TEST = "test"


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class RateLimitBackendKind(str, Enum):
    """Storage used by the rate limiter."""

    MEMORY = "memory"
    REDIS = "redis"


class Settings(BaseSettings):
    """Main application settings.

    All settings can be overridden via environment variables.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ============================================================
    # Core Application Settings
    # ============================================================

    app_name: str = Field("dotmac-recurring-billing", description="Application name")
    app_version: str = Field("1.0.0", description="Application version")
    environment: Environment = Field(Environment.DEVELOPMENT, description="Deployment environment")
    debug: bool = Field(False, description="Debug mode")
    testing: bool = Field(False, description="Testing mode")

    # ============================================================
    # Database Configuration
    # ============================================================

    class DatabaseSettings(BaseModel):
        """Database configuration."""

        url: str = Field(
            "sqlite+aiosqlite:///./recurring_billing.db", description="Async SQLAlchemy URL"
        )
        pool_size: int = Field(10, description="Connection pool size")
        max_overflow: int = Field(20, description="Max overflow connections")
        pool_pre_ping: bool = Field(True, description="Test connections before use")
        echo: bool = Field(False, description="Echo SQL statements")

    database: DatabaseSettings = DatabaseSettings()  # type: ignore[call-arg]

    # ============================================================
    # Redis Configuration
    # ============================================================

    class RedisSettings(BaseModel):
        """Redis configuration."""

        url: str | None = Field(None, description="Full Redis URL")
        host: str = Field("localhost", description="Redis host")
        port: int = Field(6379, description="Redis port")
        password: str = Field("", description="Redis password")
        db: int = Field(0, description="Redis database number")
        decode_responses: bool = Field(True, description="Decode responses to strings")

        # Advisory locks for sweeps running on several workers
        locks_enabled: bool = Field(False, description="Use Redis for per-entity locks")
        lock_timeout_seconds: int = Field(300, description="Lock expiry in seconds")
        lock_prefix: str = Field("recurring:lock", description="Key prefix for locks")

        @property
        def redis_url(self) -> str:
            """Build Redis URL."""
            if self.url:
                return self.url
            if self.password:
                return f"redis://:{self.password}@{self.host}:{self.port}/{self.db}"
            return f"redis://{self.host}:{self.port}/{self.db}"

    redis: RedisSettings = RedisSettings()  # type: ignore[call-arg]

    # ============================================================
    # Celery & Task Queue
    # ============================================================

    class CelerySettings(BaseModel):
        """Celery configuration."""

        broker_url: str = Field("redis://localhost:6379/0", description="Broker URL")
        result_backend: str = Field("redis://localhost:6379/1", description="Result backend")
        task_soft_time_limit: int = Field(1500, description="Soft time limit")
        task_time_limit: int = Field(1800, description="Hard time limit")

        # Sweep schedules (seconds)
        due_billing_interval: float = Field(3600.0, description="Due billing sweep interval")
        payment_retry_interval: float = Field(3600.0, description="Payment retry sweep interval")
        lifecycle_interval: float = Field(3600.0, description="Lifecycle sweep interval")
        webhook_retry_interval: float = Field(60.0, description="Webhook retry sweep interval")
        webhook_cleanup_interval: float = Field(86400.0, description="Webhook cleanup interval")

    celery: CelerySettings = CelerySettings()  # type: ignore[call-arg]

    # ============================================================
    # Observability & Monitoring
    # ============================================================

    class ObservabilitySettings(BaseModel):
        """Observability configuration."""

        # Logging
        log_level: LogLevel = Field(LogLevel.INFO, description="Log level")
        log_format: str = Field("json", description="Log format (json or console)")
        enable_correlation_ids: bool = Field(True, description="Enable correlation IDs")
        correlation_id_header: str = Field("X-Correlation-ID", description="Correlation ID header")

        # OpenTelemetry
        otel_enabled: bool = Field(False, description="Enable OpenTelemetry")
        otel_endpoint: str | None = Field(None, description="OTLP HTTP endpoint")
        otel_service_name: str = Field("dotmac-recurring-billing", description="Service name")
        enable_tracing: bool = Field(True, description="Enable distributed tracing")
        enable_metrics: bool = Field(True, description="Enable metrics collection")

    observability: ObservabilitySettings = ObservabilitySettings()  # type: ignore[call-arg]

    # ============================================================
    # Billing Configuration
    # ============================================================

    class BillingSettings(BaseModel):
        """Recurring billing configuration."""

        default_currency: str = Field("USD", description="Default currency for plans")
        gateway_factory: str | None = Field(
            None, description="Import path (module:attr) of a callable returning the charge gateway"
        )

        # Dunning
        max_payment_attempts: int = Field(5, ge=1, description="Charge attempts per invoice")
        retry_schedule_days: list[int] = Field(
            default_factory=lambda: [1, 3, 7, 14, 30],
            description="Days to wait after the Nth failed attempt",
        )
        grace_period_days: int = Field(3, ge=0, description="Invoice due date offset")

        # Charging
        charge_timeout_seconds: float = Field(30.0, gt=0, description="Charge call timeout")
        max_concurrency: int = Field(10, ge=1, description="Concurrent charges per sweep")
        stale_processing_minutes: int = Field(
            30, ge=1, description="Age after which a PROCESSING invoice is recovered"
        )

        # Proration sanity limits
        proration_max_net_amount: Decimal = Field(
            Decimal("10000"), description="Largest net proration accepted"
        )
        proration_max_period_days: int = Field(400, description="Longest period accepted")

        @field_validator("retry_schedule_days")
        @classmethod
        def validate_retry_schedule(cls, v: list[int]) -> list[int]:
            """Retry schedule must be non-empty and positive."""
            if not v or any(day <= 0 for day in v):
                raise ValueError("retry_schedule_days must contain positive day counts")
            return v

    billing: BillingSettings = BillingSettings()  # type: ignore[call-arg]

    # ============================================================
    # Webhooks
    # ============================================================

    class WebhookSettings(BaseModel):
        """Outbound webhook delivery configuration."""

        class RetrySettings(BaseModel):
            max_attempts: int = Field(5, ge=1, description="Delivery attempts per webhook")
            initial_delay_seconds: float = Field(60.0, gt=0, description="First retry delay")
            max_delay_seconds: float = Field(86400.0, gt=0, description="Retry delay ceiling")
            backoff_multiplier: float = Field(2.0, ge=1.0, description="Exponential base")
            jitter_enabled: bool = Field(True, description="Randomize retry delays")
            jitter_ratio: float = Field(0.1, ge=0.0, le=1.0, description="Jitter as a fraction")

        class DuplicateDetectionSettings(BaseModel):
            enabled: bool = Field(True, description="Suppress duplicate events")
            window_minutes: int = Field(60, ge=1, description="Duplicate detection window")

        class CleanupSettings(BaseModel):
            enabled: bool = Field(True, description="Prune terminal deliveries")
            delivered_retention_days: int = Field(7, ge=1, description="Keep delivered records")
            failed_retention_days: int = Field(30, ge=1, description="Keep failed records")

        class CircuitBreakerSettings(BaseModel):
            failure_threshold: int = Field(5, ge=1, description="Failures before opening")
            cooldown_seconds: float = Field(300.0, gt=0, description="Open state duration")

        signing_secret: str | None = Field(None, description="HMAC secret for signatures")
        timeout_seconds: float = Field(30.0, gt=0, description="HTTP timeout per attempt")
        max_concurrency: int = Field(10, ge=1, description="Concurrent deliveries per sweep")
        user_agent: str = Field("DotMac-Recurring-Webhooks/1.0", description="User-Agent header")
        stale_processing_minutes: int = Field(
            10, ge=1, description="Age after which a PROCESSING delivery is recovered"
        )
        endpoints: list[str] = Field(
            default_factory=list, description="Endpoints that receive billing events"
        )

        retry: RetrySettings = RetrySettings()  # type: ignore[call-arg]
        duplicate_detection: DuplicateDetectionSettings = DuplicateDetectionSettings()  # type: ignore[call-arg]
        cleanup: CleanupSettings = CleanupSettings()  # type: ignore[call-arg]
        circuit_breaker: CircuitBreakerSettings = CircuitBreakerSettings()  # type: ignore[call-arg]

    webhooks: WebhookSettings = WebhookSettings()  # type: ignore[call-arg]

    # ============================================================
    # Rate Limiting
    # ============================================================

    class RateLimitSettings(BaseModel):
        """Rate limiting configuration."""

        enabled: bool = Field(True, description="Enable rate limiting")
        backend: RateLimitBackendKind = Field(
            RateLimitBackendKind.MEMORY, description="Token storage backend"
        )
        requests_per_window: int = Field(1000, ge=1, description="Default requests per window")
        window_seconds: int = Field(3600, ge=1, description="Window length in seconds")
        burst_limit: int = Field(50, ge=1, description="Requests allowed per burst window")
        burst_window_seconds: int = Field(1, ge=1, description="Burst window length")
        key_prefix: str = Field("rate_limit", description="Key prefix for storage")
        max_tracked_keys: int = Field(100_000, ge=1, description="In-memory key capacity")

    rate_limit: RateLimitSettings = RateLimitSettings()  # type: ignore[call-arg]

    # ============================================================
    # Validation & Helpers
    # ============================================================

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate environment."""
        if isinstance(v, str):
            return Environment(v.lower())
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        """Check if running in test mode."""
        return self.testing or self.environment == Environment.TEST


# Global settings instance
_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton)."""
    global _settings
    if _settings is None:
        _settings = Settings()  # type: ignore
    return _settings


def reset_settings() -> None:
    """Reset settings (mainly for testing)."""
    global _settings
    _settings = None


# Convenience export
settings = get_settings()
