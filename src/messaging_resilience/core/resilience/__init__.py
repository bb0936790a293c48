"""
Resilience Module - Messaging Resilience Engines

COMPONENTS:
===========
- CircuitBreaker: Downstream failure protection (sliding window, half-open probe)
- RetryDeadLetterPipeline: TTL retry buffers with x4 backoff, dead-letter store
- TransactionalOutbox: Atomic record + outbox writes, periodic relay
- BackpressureController: Bounded queue with drop / reject / block overflow
- SagaOrchestrator: Forward steps with reverse-order compensation

Each engine owns its state and timers; engines never call each other.
"""

from .backpressure_controller import BackpressureController
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerManager,
    get_circuit_breaker_manager,
)
from .dead_letter_pipeline import RetryDeadLetterPipeline
from .saga_orchestrator import ORDER_SAGA, SagaOrchestrator
from .transactional_outbox import TransactionalOutbox

__all__ = [
    "BackpressureController",
    "CircuitBreaker",
    "CircuitBreakerManager",
    "get_circuit_breaker_manager",
    "RetryDeadLetterPipeline",
    "ORDER_SAGA",
    "SagaOrchestrator",
    "TransactionalOutbox",
]
