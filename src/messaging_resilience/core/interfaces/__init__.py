"""
Interfaces Module

Collaborator contracts the engines depend on. Concrete implementations live in
``messaging_resilience.infrastructure``.
"""

from messaging_resilience.core.interfaces.scheduling import (
    Clock,
    ScheduledTask,
    Scheduler,
    TaskRegistry,
    TimerCallback,
    to_iso,
)
from messaging_resilience.core.interfaces.store import (
    BoundedLog,
    InMemoryRecordStore,
    OutboxRepository,
    RecordStore,
)
from messaging_resilience.core.interfaces.transport import (
    DEFAULT_EXCHANGE,
    Delivery,
    MessageHandler,
    PublishOptions,
    QueueStats,
    Transport,
)

__all__ = [
    # Scheduling
    "Clock",
    "ScheduledTask",
    "Scheduler",
    "TaskRegistry",
    "TimerCallback",
    "to_iso",
    # Stores
    "BoundedLog",
    "InMemoryRecordStore",
    "OutboxRepository",
    "RecordStore",
    # Transport
    "DEFAULT_EXCHANGE",
    "Delivery",
    "MessageHandler",
    "PublishOptions",
    "QueueStats",
    "Transport",
]
