#!/usr/bin/env python3
"""
Centralized Configuration Module using Pydantic Settings

This module provides type-safe, environment-based configuration for the
resilience engines. Every engine reads its *default* runtime configuration
from here; runtime updates go through the engine's own config model.

Architectural Decision: Pydantic Settings for type safety and validation
- Environment variable loading with .env support
- Type validation at startup (fail fast on misconfiguration)
- Easy testing with override mechanisms (reload_settings)

Retention caps (log sizes) are NOT settings; they live in constants.py.
"""

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CircuitBreakerSettings(BaseSettings):
    """
    Circuit breaker defaults.

    STAGE-CB: Circuit breaker thresholds
    """

    CB_FAILURE_THRESHOLD: int = Field(default=3, description="Failures inside the window to trip")
    CB_WINDOW_MS: int = Field(default=10_000, description="Sliding window for failure counting")
    CB_TIMEOUT_MS: int = Field(default=15_000, description="Time spent open before probing")
    CB_SUCCESS_THRESHOLD: int = Field(default=1, description="Trial successes needed to close")
    CB_SERVICE_LATENCY_MS: int = Field(default=300, description="Simulated downstream latency")
    CB_FALLBACK_ENABLED: bool = Field(default=True, description="Serve fallback while open")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class DeadLetterSettings(BaseSettings):
    """
    Retry / dead-letter pipeline defaults.

    STAGE-DLQ: Retry buffer configuration

    Retry buffer k holds a message for DLQ_RETRY_DELAYS_MS[k-1] before it
    returns to the main queue (x4 exponential backoff).
    """

    DLQ_FAILURE_MODE: Literal["always", "random", "first_n", "never"] = Field(
        default="always", description="Simulated processing failure mode"
    )
    DLQ_MAX_RETRIES: int = Field(default=3, description="Retries before dead-lettering (1-5)")
    DLQ_PROCESSING_DELAY_MS: int = Field(default=500, description="Simulated processing latency")
    DLQ_FAIL_COUNT: int = Field(default=2, description="Failing attempts for first_n mode")
    DLQ_FAIL_PROBABILITY: float = Field(default=0.5, description="Failure probability for random mode")
    DLQ_RETRY_DELAYS_MS: list[int] = Field(
        default=[2_000, 8_000, 32_000, 128_000, 512_000],
        description="TTL of each retry buffer",
    )
    DLQ_PUBLISH_ATTEMPTS: int = Field(default=3, description="Send attempts on transport outage")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class OutboxSettings(BaseSettings):
    """
    Transactional outbox defaults.

    STAGE-OUTBOX: Relay configuration
    """

    OUTBOX_RELAY_INTERVAL_MS: int = Field(default=1_000, description="Relay poll interval")
    OUTBOX_EXCHANGE: str = Field(default="outbox.events", description="Topic exchange for events")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class BackpressureSettings(BaseSettings):
    """
    Backpressure controller defaults.

    STAGE-BP: Producer/consumer simulation
    """

    BP_PRODUCER_RATE_PER_SEC: float = Field(default=10, description="Messages produced per second")
    BP_CONSUMER_RATE_PER_SEC: float = Field(default=3, description="Messages consumed per second")
    BP_MAX_QUEUE_DEPTH: int = Field(default=20, description="Queue size before overflow")
    BP_STRATEGY: Literal["block", "drop", "reject"] = Field(default="drop", description="Overflow strategy")
    BP_DROP_POLICY: Literal["oldest", "newest"] = Field(default="oldest", description="Drop policy")
    BP_PREFETCH_COUNT: int = Field(default=1, description="Items pulled per consumer tick")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class SagaSettings(BaseSettings):
    """
    Saga orchestrator defaults.

    STAGE-SAGA: Step timing
    """

    SAGA_STEP_DELAY_MS: int = Field(default=500, description="Simulated work per step")
    SAGA_COMPENSATION_DELAY_MS: int = Field(default=300, description="Simulated work per compensation")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class LoggingSettings(BaseSettings):
    """
    Logging configuration for structured logging.

    STAGE-L: Logging configuration
    """

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class ApplicationSettings(BaseSettings):
    """General application settings."""

    ENVIRONMENT: Literal["development", "staging", "production", "test"] = Field(
        default="development",
        description="Application environment"
    )
    APP_NAME: str = Field(default="Messaging Resilience Engines", description="Application name")
    APP_VERSION: str = Field(default="1.0.0", description="Application version")

    model_config = SettingsConfigDict(env_prefix="", case_sensitive=True)


class Settings(BaseSettings):
    """
    Main settings class that aggregates all configuration sections.

    STAGE-0: Centralized configuration initialization

    Usage:
        from messaging_resilience.core.config import get_settings

        settings = get_settings()
        threshold = settings.circuit_breaker.CB_FAILURE_THRESHOLD
    """

    # Circuit breaker
    CB_FAILURE_THRESHOLD: int = Field(default=3)
    CB_WINDOW_MS: int = Field(default=10_000)
    CB_TIMEOUT_MS: int = Field(default=15_000)
    CB_SUCCESS_THRESHOLD: int = Field(default=1)
    CB_SERVICE_LATENCY_MS: int = Field(default=300)
    CB_FALLBACK_ENABLED: bool = Field(default=True)

    # Dead-letter pipeline
    DLQ_FAILURE_MODE: Literal["always", "random", "first_n", "never"] = Field(default="always")
    DLQ_MAX_RETRIES: int = Field(default=3)
    DLQ_PROCESSING_DELAY_MS: int = Field(default=500)
    DLQ_FAIL_COUNT: int = Field(default=2)
    DLQ_FAIL_PROBABILITY: float = Field(default=0.5)
    DLQ_RETRY_DELAYS_MS: list[int] = Field(default=[2_000, 8_000, 32_000, 128_000, 512_000])
    DLQ_PUBLISH_ATTEMPTS: int = Field(default=3)

    # Outbox
    OUTBOX_RELAY_INTERVAL_MS: int = Field(default=1_000)
    OUTBOX_EXCHANGE: str = Field(default="outbox.events")

    # Backpressure
    BP_PRODUCER_RATE_PER_SEC: float = Field(default=10)
    BP_CONSUMER_RATE_PER_SEC: float = Field(default=3)
    BP_MAX_QUEUE_DEPTH: int = Field(default=20)
    BP_STRATEGY: Literal["block", "drop", "reject"] = Field(default="drop")
    BP_DROP_POLICY: Literal["oldest", "newest"] = Field(default="oldest")
    BP_PREFETCH_COUNT: int = Field(default=1)

    # Saga
    SAGA_STEP_DELAY_MS: int = Field(default=500)
    SAGA_COMPENSATION_DELAY_MS: int = Field(default=300)

    # Logging
    LOG_LEVEL: str = Field(default="INFO", description="Logging level")
    LOG_FORMAT: Literal["json", "console"] = Field(default="json", description="Log output format")

    # Application
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = Field(default="development")
    APP_NAME: str = Field(default="Messaging Resilience Engines")
    APP_VERSION: str = Field(default="1.0.0")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"LOG_LEVEL must be one of {valid_levels}")
        return v.upper()

    @property
    def circuit_breaker(self) -> CircuitBreakerSettings:
        """Get circuit breaker settings."""
        return CircuitBreakerSettings(
            CB_FAILURE_THRESHOLD=self.CB_FAILURE_THRESHOLD,
            CB_WINDOW_MS=self.CB_WINDOW_MS,
            CB_TIMEOUT_MS=self.CB_TIMEOUT_MS,
            CB_SUCCESS_THRESHOLD=self.CB_SUCCESS_THRESHOLD,
            CB_SERVICE_LATENCY_MS=self.CB_SERVICE_LATENCY_MS,
            CB_FALLBACK_ENABLED=self.CB_FALLBACK_ENABLED,
        )

    @property
    def dlq(self) -> DeadLetterSettings:
        """Get dead-letter pipeline settings."""
        return DeadLetterSettings(
            DLQ_FAILURE_MODE=self.DLQ_FAILURE_MODE,
            DLQ_MAX_RETRIES=self.DLQ_MAX_RETRIES,
            DLQ_PROCESSING_DELAY_MS=self.DLQ_PROCESSING_DELAY_MS,
            DLQ_FAIL_COUNT=self.DLQ_FAIL_COUNT,
            DLQ_FAIL_PROBABILITY=self.DLQ_FAIL_PROBABILITY,
            DLQ_RETRY_DELAYS_MS=self.DLQ_RETRY_DELAYS_MS,
            DLQ_PUBLISH_ATTEMPTS=self.DLQ_PUBLISH_ATTEMPTS,
        )

    @property
    def outbox(self) -> OutboxSettings:
        """Get outbox settings."""
        return OutboxSettings(
            OUTBOX_RELAY_INTERVAL_MS=self.OUTBOX_RELAY_INTERVAL_MS,
            OUTBOX_EXCHANGE=self.OUTBOX_EXCHANGE,
        )

    @property
    def backpressure(self) -> BackpressureSettings:
        """Get backpressure settings."""
        return BackpressureSettings(
            BP_PRODUCER_RATE_PER_SEC=self.BP_PRODUCER_RATE_PER_SEC,
            BP_CONSUMER_RATE_PER_SEC=self.BP_CONSUMER_RATE_PER_SEC,
            BP_MAX_QUEUE_DEPTH=self.BP_MAX_QUEUE_DEPTH,
            BP_STRATEGY=self.BP_STRATEGY,
            BP_DROP_POLICY=self.BP_DROP_POLICY,
            BP_PREFETCH_COUNT=self.BP_PREFETCH_COUNT,
        )

    @property
    def saga(self) -> SagaSettings:
        """Get saga settings."""
        return SagaSettings(
            SAGA_STEP_DELAY_MS=self.SAGA_STEP_DELAY_MS,
            SAGA_COMPENSATION_DELAY_MS=self.SAGA_COMPENSATION_DELAY_MS,
        )

    @property
    def logging(self) -> LoggingSettings:
        """Get logging settings."""
        return LoggingSettings(LOG_LEVEL=self.LOG_LEVEL, LOG_FORMAT=self.LOG_FORMAT)

    @property
    def app(self) -> ApplicationSettings:
        """Get application settings."""
        return ApplicationSettings(
            ENVIRONMENT=self.ENVIRONMENT,
            APP_NAME=self.APP_NAME,
            APP_VERSION=self.APP_VERSION,
        )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore"  # Ignore extra environment variables
    )


# Global settings instance (singleton pattern)
_settings: Settings | None = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton).

    Returns:
        Settings: Global settings instance
    """
    global _settings

    if _settings is None:
        _settings = Settings()

    return _settings


def reload_settings() -> Settings:
    """
    Reload settings (useful for testing).

    Returns:
        Settings: New settings instance
    """
    global _settings
    _settings = Settings()
    return _settings
