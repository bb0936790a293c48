"""
Transport Exceptions

All exceptions related to the message transport collaborator.
"""

from messaging_resilience.core.exceptions.base import ResilienceError


class TransportError(ResilienceError):
    """Base exception for transport errors."""
    pass


class TransportUnavailableError(TransportError):
    """
    Raised when the transport cannot accept a publish (broker outage).

    Engines treat this as a reason to accumulate and back off, never as a
    reason to drop data. It surfaces through stats, not through callers.
    """
    pass


class MessageEncodingError(TransportError):
    """Raised when a payload cannot be encoded for the wire."""
    pass
