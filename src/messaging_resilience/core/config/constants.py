"""
System Constants and Enumerations

This module defines the state enums and hard-coded caps shared by the
resilience engines.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums instead of free-form strings for every state and policy
- Retention caps are fixed here on purpose; they are not user-configurable
"""

from enum import Enum

# ============================================================================
# Circuit Breaker
# ============================================================================


class CircuitState(str, Enum):
    """
    Circuit breaker states.

    CLOSED: Normal operation, calls execute
    OPEN: Failing fast, calls rejected (or served a fallback)
    HALF_OPEN: One trial call at a time probes recovery
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CallOutcome(str, Enum):
    """Outcome of a single circuit breaker call."""

    SUCCESS = "success"
    FAILURE = "failure"
    REJECTED = "rejected"
    FALLBACK = "fallback"


# ============================================================================
# Dead Letter Pipeline
# ============================================================================


class FailureMode(str, Enum):
    """Simulated processing failure modes for the DLQ consumer."""

    ALWAYS = "always"
    RANDOM = "random"
    FIRST_N = "first_n"
    NEVER = "never"


class DlqStatus(str, Enum):
    """Lifecycle status of a tracked DLQ work item."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    RETRY_1 = "retry_1"
    RETRY_2 = "retry_2"
    RETRY_3 = "retry_3"
    RETRY_4 = "retry_4"
    RETRY_5 = "retry_5"
    DEAD = "dead"

    @classmethod
    def for_retry_level(cls, level: int) -> "DlqStatus":
        """Status for a message parked in retry buffer ``level``."""
        return cls(f"retry_{level}")


# ============================================================================
# Transactional Outbox
# ============================================================================


class OutboxStatus(str, Enum):
    """
    Outbox entry status.

    FAILED is part of the record shape for stores that give up on an entry;
    the relay itself never abandons an entry.
    """

    PENDING = "pending"
    PUBLISHED = "published"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# ============================================================================
# Backpressure
# ============================================================================


class BackpressureStrategy(str, Enum):
    """Overflow strategy applied when the buffer is full."""

    BLOCK = "block"
    DROP = "drop"
    REJECT = "reject"


class DropPolicy(str, Enum):
    """Which message to drop under the DROP strategy."""

    OLDEST = "oldest"
    NEWEST = "newest"


class BackpressureMessageStatus(str, Enum):
    QUEUED = "queued"
    DONE = "done"
    DROPPED = "dropped"
    REJECTED = "rejected"


# ============================================================================
# Saga
# ============================================================================


class SagaStepStatus(str, Enum):
    """Status of a single saga step."""

    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"
    COMPENSATED = "compensated"


class CompensationStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class SagaOutcome(str, Enum):
    """Final outcome of a saga run."""

    SUCCEEDED = "succeeded"
    COMPENSATED = "compensated"
    FAILED = "failed"


# ============================================================================
# Retention Caps (drop-oldest)
# ============================================================================

CALL_LOG_LIMIT = 100
DLQ_MESSAGE_LIMIT = 50
OUTBOX_RECORD_LIMIT = 50
PUBLISHED_LOG_LIMIT = 50
BACKPRESSURE_LOG_LIMIT = 200
WAIT_SAMPLE_LIMIT = 200
SAGA_LOG_LIMIT = 20

# ============================================================================
# Timing
# ============================================================================

BATCH_CALL_SPACING_MS = 80
BLOCK_RETRY_DELAY_MS = 500
THROUGHPUT_WINDOW_MS = 3_000
THROUGHPUT_RETENTION_MS = 5_000

# ============================================================================
# Topology (queue / exchange names)
# ============================================================================

DLQ_MAIN_QUEUE = "dlq-demo.main"
DLQ_DLX_EXCHANGE = "dlq-demo.dlx"
DLQ_DEAD_LETTER_QUEUE = "dlq-demo.dead-letter"
DLQ_RETRY_EXCHANGE = "dlq-demo.retry"
DLQ_DEAD_ROUTING_KEY = "dead"
DLQ_RETRY_QUEUE_PREFIX = "dlq-demo.retry."
MAX_RETRY_LEVELS = 5

OUTBOX_QUEUE = "outbox.orders"
OUTBOX_BINDING_KEY = "order.*"
OUTBOX_ORDER_TOPIC = "order.created"

# ============================================================================
# Message Headers
# ============================================================================

HEADER_RETRY_COUNT = "x-retry-count"
HEADER_LAST_ERROR = "x-last-error"
HEADER_OUTBOX_ID = "x-outbox-id"
HEADER_RECORD_ID = "x-record-id"
HEADER_DEATH_REASON = "x-death-reason"
