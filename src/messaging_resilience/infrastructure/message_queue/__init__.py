"""
Message Queue Module

Provides the in-memory AMQP-style transport.
"""

from .memory_transport import InMemoryTransport

__all__ = [
    "InMemoryTransport",
]
