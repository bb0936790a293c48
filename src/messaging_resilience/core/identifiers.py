"""
Identifier helpers shared by the engines.

Ids look like ``CALL-1700000000000-A1B`` / ``MSG-1700000000000-9F2C``: a type
prefix, the creation instant in epoch ms and a short random suffix.

Suffixes are short, so ids issued within the same millisecond are checked
against each other and re-drawn on collision.
"""

import uuid

from messaging_resilience.core.interfaces.scheduling import Clock

# prefix -> (millisecond, suffixes issued in that millisecond)
_issued: dict[str, tuple[int, set[str]]] = {}


def generate_id(prefix: str, clock: Clock, suffix_length: int = 4) -> str:
    ms = int(clock.now_ms())
    last_ms, seen = _issued.get(prefix, (None, set()))
    if last_ms != ms:
        seen = set()
        _issued[prefix] = (ms, seen)

    length = suffix_length
    while len(seen) >= 16 ** length:
        length += 1

    suffix = uuid.uuid4().hex.upper()[:length]
    while suffix in seen:
        suffix = uuid.uuid4().hex.upper()[:length]
    seen.add(suffix)
    return f"{prefix}-{ms}-{suffix}"


def generate_transaction_id() -> str:
    """Synthetic downstream transaction id, e.g. ``TXN-3FA9C1``."""
    return f"TXN-{uuid.uuid4().hex.upper()[:6]}"
