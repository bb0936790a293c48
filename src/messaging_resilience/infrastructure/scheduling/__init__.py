"""
Scheduling Module

Clock and Scheduler implementations: asyncio-backed for production,
virtual time for tests and offline simulations.
"""

from .asyncio_scheduler import AsyncioScheduler, SystemClock
from .virtual_clock import VirtualClock

__all__ = [
    "AsyncioScheduler",
    "SystemClock",
    "VirtualClock",
]
