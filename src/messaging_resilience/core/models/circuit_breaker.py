"""
Circuit breaker records, status snapshot and runtime config.
"""

from typing import Any

from pydantic import Field, model_validator

from messaging_resilience.core.config.constants import CallOutcome, CircuitState
from messaging_resilience.core.config.settings import get_settings
from messaging_resilience.core.models.base import EngineConfig, RecordModel, SnapshotModel


class CircuitBreakerConfig(EngineConfig):
    """
    Runtime configuration of a circuit breaker.

    Accepts ``failureThreshold`` or ``failure_threshold`` style keys.
    """

    failure_threshold: int = Field(ge=1, description="Failures inside the window to trip")
    window_ms: int = Field(ge=1, description="Sliding window for failure counting")
    timeout_ms: int = Field(ge=0, description="Time spent open before probing")
    success_threshold: int = Field(default=1, ge=1, description="Trial successes needed to close")
    service_latency_ms: int = Field(ge=0, description="Simulated downstream latency")
    fallback_enabled: bool = True

    @classmethod
    def from_settings(cls) -> "CircuitBreakerConfig":
        s = get_settings().circuit_breaker
        return cls(
            failure_threshold=s.CB_FAILURE_THRESHOLD,
            window_ms=s.CB_WINDOW_MS,
            timeout_ms=s.CB_TIMEOUT_MS,
            success_threshold=s.CB_SUCCESS_THRESHOLD,
            service_latency_ms=s.CB_SERVICE_LATENCY_MS,
            fallback_enabled=s.CB_FALLBACK_ENABLED,
        )


class CallRecord(RecordModel):
    """One entry of the call log. Every call produces exactly one."""

    id: str
    timestamp: str
    outcome: CallOutcome
    duration_ms: float
    state_at_call_start: CircuitState
    error: str | None = None
    response: dict[str, Any] | None = None


class CircuitBreakerStatus(SnapshotModel):
    state: CircuitState
    failures: int
    config: CircuitBreakerConfig
    opened_at: str | None = None
    half_open_at: str | None = None
    last_state_change: str
    service_down: bool
    time_until_half_open_ms: float | None = None
    total_calls: int = 0
    total_success: int = 0
    total_failure: int = 0
    total_rejected: int = 0
    total_fallback: int = 0

    @model_validator(mode="after")
    def _open_has_opened_at(self) -> "CircuitBreakerStatus":
        if self.state == CircuitState.OPEN and self.opened_at is None:
            raise ValueError("open circuit must carry openedAt")
        return self
