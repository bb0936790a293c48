"""
Circuit Breaker for a simulated downstream dependency.

MECHANISM OF ACTION:
-------------------
1.  **Sliding Window**:
    Failures are counted inside a time window (``window_ms``). Timestamps older
    than the window are pruned before every count, so a slow trickle of
    failures never trips the circuit.

2.  **State Transitions**:
    - **CLOSED**: Calls execute.
      - On Failure: timestamp appended to the window.
      - Threshold Reached: pruned count >= ``failure_threshold`` -> OPEN.

    - **OPEN**: Calls never reach the downstream (Fail Fast).
      - Behavior: a fallback response is served when enabled, otherwise the
        call is recorded as rejected.
      - Recovery: the first call (or status read) after ``timeout_ms`` moves
        the circuit to HALF-OPEN before the call is evaluated.

    - **HALF-OPEN**: Probing mode.
      - Behavior: ONE trial call at a time executes for real. Calls arriving
        while a trial is in flight are handled as if the circuit were open.
      - On Success: after ``success_threshold`` trial successes -> CLOSED and
        all failure bookkeeping is cleared.
      - On Failure: back to OPEN, the timeout restarts.

3.  **Call Log**:
    Every call, whatever the state, produces exactly one CallRecord in a
    newest-first log capped at 100 entries.

The downstream is simulated: a call sleeps ``service_latency_ms`` on the
engine's Clock and fails when the service has been toggled down.
"""

from typing import Any

from messaging_resilience.core.config.constants import (
    BATCH_CALL_SPACING_MS,
    CALL_LOG_LIMIT,
    CallOutcome,
    CircuitState,
)
from messaging_resilience.core.exceptions import SimulatedFailureError
from messaging_resilience.core.identifiers import generate_id, generate_transaction_id
from messaging_resilience.core.interfaces.scheduling import Clock, to_iso
from messaging_resilience.core.interfaces.store import BoundedLog
from messaging_resilience.core.logging.logger import get_logger
from messaging_resilience.core.models.circuit_breaker import (
    CallRecord,
    CircuitBreakerConfig,
    CircuitBreakerStatus,
)
from messaging_resilience.infrastructure.monitoring.metrics_collector import get_metrics_collector
from messaging_resilience.infrastructure.scheduling.asyncio_scheduler import SystemClock

logger = get_logger(__name__)

DEFAULT_LABEL = "payment"
FALLBACK_MESSAGE = "Circuit OPEN — serving fallback response"
REJECTED_ERROR = "Circuit breaker OPEN — request rejected"
DOWNSTREAM_ERROR = "Downstream service unavailable (simulated)"


class CircuitBreaker:
    """
    In-memory circuit breaker guarding one protected operation.

    Usage:
        breaker = CircuitBreaker("payments", clock=clock)
        record = await breaker.call("checkout-42")
        if record.outcome == CallOutcome.FALLBACK:
            ...
    """

    def __init__(
        self,
        name: str = "default",
        clock: Clock | None = None,
        config: CircuitBreakerConfig | dict[str, Any] | None = None,
    ):
        self.name = name
        self._clock = clock or SystemClock()
        self._config = CircuitBreakerConfig.resolve(config)
        self._metrics = get_metrics_collector()

        self._state = CircuitState.CLOSED
        self._failure_timestamps: list[float] = []
        self._opened_at: float | None = None
        self._half_open_at: float | None = None
        self._last_state_change = self._clock.now_iso()
        self._trial_in_flight = False
        self._trial_successes = 0
        self._service_down = False

        self._call_log: BoundedLog[CallRecord] = BoundedLog(CALL_LOG_LIMIT)
        self._reset_stats()
        self._metrics.set_circuit_state(self.name, self._state.value)

    # =========================================================================
    # Calls
    # =========================================================================

    async def call(self, label: str | None = None) -> CallRecord:
        """
        Run one call through the breaker.

        Never raises for simulated failures: the outcome is in the record.
        """
        call_id = generate_id("CALL", self._clock, suffix_length=3)
        start = self._clock.now_ms()
        label = label or DEFAULT_LABEL

        self._total_calls += 1
        self._check_state_transition()
        state_at_start = self._state

        if self._state == CircuitState.OPEN or (
            self._state == CircuitState.HALF_OPEN and self._trial_in_flight
        ):
            return self._short_circuit(call_id, start, label)

        is_trial = self._state == CircuitState.HALF_OPEN
        if is_trial:
            self._trial_in_flight = True
            logger.info(f"[CB] HALF-OPEN — trial call {call_id}", stage="CB.3", breaker=self.name)

        try:
            response = await self._invoke_downstream(label)
        except SimulatedFailureError as e:
            self._on_failure(is_trial)
            self._total_failure += 1
            record = self._record_call(
                call_id, CallOutcome.FAILURE, start, state_at_start, error=e.message
            )
            logger.warning(f"[CB] FAILURE — {call_id}: {e.message}", stage="CB.2", breaker=self.name)
            return record
        finally:
            if is_trial:
                self._trial_in_flight = False

        self._on_success(is_trial)
        self._total_success += 1
        record = self._record_call(
            call_id, CallOutcome.SUCCESS, start, state_at_start, response=response
        )
        logger.info(
            f"[CB] SUCCESS — {call_id} ({record.duration_ms:.0f}ms)", stage="CB.1", breaker=self.name
        )
        return record

    async def call_batch(self, count: int) -> list[CallRecord]:
        """Run ``count`` calls labelled ``request-1``..``request-N``, spaced by 80ms."""
        results = []
        for i in range(count):
            results.append(await self.call(f"request-{i + 1}"))
            await self._clock.sleep(BATCH_CALL_SPACING_MS)
        return results

    async def _invoke_downstream(self, label: str) -> dict[str, Any]:
        await self._clock.sleep(self._config.service_latency_ms)
        if self._service_down:
            raise SimulatedFailureError(DOWNSTREAM_ERROR, details={"breaker": self.name})
        return {
            "message": "Payment processed successfully",
            "transactionId": generate_transaction_id(),
            "label": label,
        }

    def _short_circuit(self, call_id: str, start: float, label: str) -> CallRecord:
        self._total_rejected += 1

        if self._config.fallback_enabled:
            self._total_fallback += 1
            record = self._record_call(
                call_id,
                CallOutcome.FALLBACK,
                start,
                self._state,
                response={"message": FALLBACK_MESSAGE, "data": {"cached": True, "label": label}},
            )
            logger.warning(f"[CB] OPEN — fallback served for {call_id}", stage="CB.4", breaker=self.name)
            return record

        record = self._record_call(call_id, CallOutcome.REJECTED, start, self._state, error=REJECTED_ERROR)
        logger.warning(f"[CB] OPEN — rejected {call_id}", stage="CB.4", breaker=self.name)
        return record

    # =========================================================================
    # State Machine
    # =========================================================================

    def _check_state_transition(self) -> None:
        if self._state != CircuitState.OPEN or self._opened_at is None:
            return
        now = self._clock.now_ms()
        if now - self._opened_at >= self._config.timeout_ms:
            self._transition_to(CircuitState.HALF_OPEN)
            self._half_open_at = now

    def _on_success(self, is_trial: bool) -> None:
        if not is_trial or self._state != CircuitState.HALF_OPEN:
            return
        self._trial_successes += 1
        if self._trial_successes >= self._config.success_threshold:
            self._transition_to(CircuitState.CLOSED)

    def _on_failure(self, is_trial: bool) -> None:
        now = self._clock.now_ms()

        if is_trial and self._state == CircuitState.HALF_OPEN:
            self._transition_to(CircuitState.OPEN)
            self._opened_at = now
            return

        if self._state != CircuitState.CLOSED:
            # The circuit changed under this call (manual trip); window is not touched
            return

        self._prune_window(now)
        self._failure_timestamps.append(now)
        if len(self._failure_timestamps) >= self._config.failure_threshold:
            self._transition_to(CircuitState.OPEN)
            self._opened_at = now

    def _prune_window(self, now: float) -> None:
        window = self._config.window_ms
        self._failure_timestamps = [t for t in self._failure_timestamps if now - t < window]

    def _transition_to(self, new_state: CircuitState) -> None:
        if self._state == new_state:
            return
        logger.info(
            f"[CB] State: {self._state.value.upper()} → {new_state.value.upper()}",
            stage="CB.0",
            breaker=self.name,
        )
        self._state = new_state
        self._last_state_change = self._clock.now_iso()
        self._trial_successes = 0

        if new_state == CircuitState.CLOSED:
            self._opened_at = None
            self._half_open_at = None
            self._failure_timestamps = []
        elif new_state == CircuitState.OPEN:
            self._half_open_at = None

        self._metrics.set_circuit_state(self.name, new_state.value)

    # =========================================================================
    # Service Simulation and Manual Overrides
    # =========================================================================

    def set_service_down(self, down: bool) -> None:
        self._service_down = down
        logger.info(f"[CB] Downstream service: {'DOWN' if down else 'UP'}", stage="CB.5", breaker=self.name)

    def is_service_down(self) -> bool:
        return self._service_down

    def reset_circuit(self) -> None:
        """Force CLOSED with an empty failure window."""
        self._transition_to(CircuitState.CLOSED)
        self._failure_timestamps = []
        self._opened_at = None
        self._half_open_at = None
        logger.info("[CB] Circuit manually reset to CLOSED", stage="CB.5", breaker=self.name)

    def trip_circuit(self) -> None:
        """Force OPEN with a full failure window and opened_at = now."""
        now = self._clock.now_ms()
        self._transition_to(CircuitState.OPEN)
        self._opened_at = now
        self._half_open_at = None
        self._failure_timestamps = [now] * self._config.failure_threshold
        logger.info("[CB] Circuit manually tripped to OPEN", stage="CB.5", breaker=self.name)

    def update_config(self, partial: dict[str, Any] | None = None, **overrides: Any) -> CircuitBreakerConfig:
        """
        Merge a partial config.

        Raises:
            ConfigurationError: If the result is invalid (config unchanged)
        """
        self._config = self._config.merged(partial, **overrides)
        logger.info(f"[CB] Config updated: {self._config.to_dict()}", stage="CB.6", breaker=self.name)
        return self._config

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        return self._state

    # =========================================================================
    # Status and Queries
    # =========================================================================

    def get_status(self) -> CircuitBreakerStatus:
        self._check_state_transition()
        now = self._clock.now_ms()

        time_until_half_open = None
        if self._state == CircuitState.OPEN and self._opened_at is not None:
            time_until_half_open = max(0.0, self._config.timeout_ms - (now - self._opened_at))

        window = self._config.window_ms
        return CircuitBreakerStatus(
            state=self._state,
            failures=sum(1 for t in self._failure_timestamps if now - t < window),
            config=self._config,
            opened_at=to_iso(self._opened_at) if self._opened_at is not None else None,
            half_open_at=to_iso(self._half_open_at) if self._half_open_at is not None else None,
            last_state_change=self._last_state_change,
            service_down=self._service_down,
            time_until_half_open_ms=time_until_half_open,
            total_calls=self._total_calls,
            total_success=self._total_success,
            total_failure=self._total_failure,
            total_rejected=self._total_rejected,
            total_fallback=self._total_fallback,
        )

    def get_call_log(self) -> list[CallRecord]:
        """Newest first. Returned records are copies."""
        return [record.model_copy(deep=True) for record in self._call_log]

    def clear_log(self) -> None:
        """Clear the log and counters and reset the circuit."""
        self._call_log.clear()
        self._reset_stats()
        self.reset_circuit()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _reset_stats(self) -> None:
        self._total_calls = 0
        self._total_success = 0
        self._total_failure = 0
        self._total_rejected = 0
        self._total_fallback = 0

    def _record_call(
        self,
        call_id: str,
        outcome: CallOutcome,
        start: float,
        state: CircuitState,
        response: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> CallRecord:
        record = CallRecord(
            id=call_id,
            timestamp=self._clock.now_iso(),
            outcome=outcome,
            duration_ms=self._clock.now_ms() - start,
            state_at_call_start=state,
            error=error,
            response=response,
        )
        self._call_log.append(record)
        self._metrics.record_circuit_call(self.name, outcome.value)
        return record.model_copy(deep=True)


# ============================================================================
# Manager & Factory
# ============================================================================


class CircuitBreakerManager:
    """Keeps one breaker per protected operation."""

    def __init__(self, clock: Clock | None = None):
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_breaker(self, name: str, config: CircuitBreakerConfig | dict[str, Any] | None = None) -> CircuitBreaker:
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(name, clock=self._clock, config=config)
        return self._breakers[name]

    def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: breaker.get_status().to_dict() for name, breaker in self._breakers.items()}

    def reset_all(self) -> None:
        """Helper for tests."""
        for breaker in self._breakers.values():
            breaker.reset_circuit()

    def __contains__(self, name: str) -> bool:
        return name in self._breakers


# Global Instance
_cb_manager: CircuitBreakerManager | None = None


def get_circuit_breaker_manager() -> CircuitBreakerManager:
    global _cb_manager
    if _cb_manager is None:
        _cb_manager = CircuitBreakerManager()
    return _cb_manager
