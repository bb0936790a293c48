"""
Messaging Resilience Engines

Five independent, asyncio-native engines that model how a messaging system
survives partial failure:

- CircuitBreaker: fail fast on a failure burst, probe recovery, serve fallbacks
- RetryDeadLetterPipeline: timed retry buffers and a dead-letter store
- TransactionalOutbox: atomic record + intent writes and a polling relay
- BackpressureController: bounded producer/consumer queue with overflow policies
- SagaOrchestrator: ordered steps with reverse-order compensation
"""

from messaging_resilience.core.resilience import (
    BackpressureController,
    CircuitBreaker,
    CircuitBreakerManager,
    RetryDeadLetterPipeline,
    SagaOrchestrator,
    TransactionalOutbox,
    get_circuit_breaker_manager,
)

__version__ = "1.0.0"

__all__ = [
    "BackpressureController",
    "CircuitBreaker",
    "CircuitBreakerManager",
    "RetryDeadLetterPipeline",
    "SagaOrchestrator",
    "TransactionalOutbox",
    "get_circuit_breaker_manager",
]
