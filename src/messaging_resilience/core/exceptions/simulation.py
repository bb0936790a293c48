"""
Simulation Exceptions

Expected, policy-driven failures produced by the simulated downstreams.
They are caught inside the engines and converted into records.
"""

from messaging_resilience.core.exceptions.base import ResilienceError


class SimulatedFailureError(ResilienceError):
    """
    Raised by a simulated downstream call, processing attempt or saga step.

    Common causes:
    - CircuitBreaker service toggled down
    - DLQ failure mode decided the attempt fails
    - Saga step selected by fail_at_step
    """
    pass


class SchedulerError(ResilienceError):
    """Raised when a timer cannot be registered (e.g. non-positive interval)."""
    pass
