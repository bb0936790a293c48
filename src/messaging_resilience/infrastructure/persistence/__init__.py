from .memory_outbox import InMemoryOutboxRepository

__all__ = ["InMemoryOutboxRepository"]
