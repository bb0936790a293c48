"""
Validation Exceptions
"""

from messaging_resilience.core.exceptions.base import ResilienceError


class InvalidRecordError(ResilienceError):
    """
    Raised when a business record or payload handed to an engine is invalid.

    Nothing is written or published: on the outbox write path neither the
    record nor its outbox entry exists afterwards.
    """
    pass
