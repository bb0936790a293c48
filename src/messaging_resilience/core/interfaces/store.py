"""
Record Store Interfaces

Repository abstractions for the state the engines keep about their work
items, so a real deployment can back them with a database without touching
engine logic. Bounded retention is an explicit eviction policy of the store.

Components:
-----------
- RecordStore: async repository keyed by record id
- InMemoryRecordStore: newest-first store with drop-oldest eviction
- BoundedLog: synchronous newest-first log with a hard cap
- OutboxRepository: atomic business-record + outbox-entry persistence
"""

from abc import ABC, abstractmethod
from collections import deque
from collections.abc import Callable, Iterable, Iterator
from typing import Any, Generic, TypeVar

T = TypeVar("T")


class RecordStore(ABC, Generic[T]):
    """Abstract repository of records identified by ``id``."""

    @abstractmethod
    async def add(self, record: T) -> None:
        """Insert a new record (it becomes the newest)."""

    @abstractmethod
    async def get(self, record_id: str) -> T | None:
        ...

    @abstractmethod
    async def save(self, record: T) -> None:
        """Persist changes made to a record obtained from this store. Evicted records stay evicted."""

    @abstractmethod
    async def remove(self, record_id: str) -> bool:
        ...

    @abstractmethod
    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        """Records newest first, optionally filtered."""

    @abstractmethod
    async def clear(self) -> None:
        ...


class InMemoryRecordStore(RecordStore[T]):
    """
    In-memory RecordStore with drop-oldest eviction.

    Records are kept newest first. When ``max_items`` is exceeded the oldest
    record is evicted. Records are stored by reference; save() replaces a
    stored record in place and ignores records that were evicted already.
    """

    def __init__(self, max_items: int, id_of: Callable[[T], str] = lambda r: r.id):
        self._max_items = max_items
        self._id_of = id_of
        self._records: list[T] = []

    async def add(self, record: T) -> None:
        self._records.insert(0, record)
        self._evict()

    async def get(self, record_id: str) -> T | None:
        for record in self._records:
            if self._id_of(record) == record_id:
                return record
        return None

    async def save(self, record: T) -> None:
        record_id = self._id_of(record)
        for index, existing in enumerate(self._records):
            if self._id_of(existing) == record_id:
                self._records[index] = record
                return

    async def remove(self, record_id: str) -> bool:
        for index, record in enumerate(self._records):
            if self._id_of(record) == record_id:
                del self._records[index]
                return True
        return False

    async def list(self, predicate: Callable[[T], bool] | None = None) -> list[T]:
        if predicate is None:
            return list(self._records)
        return [r for r in self._records if predicate(r)]

    async def clear(self) -> None:
        self._records = []

    def _evict(self) -> None:
        while len(self._records) > self._max_items:
            self._records.pop()

    def __len__(self) -> int:
        return len(self._records)


class BoundedLog(Generic[T]):
    """Newest-first log that keeps at most ``max_items`` entries."""

    def __init__(self, max_items: int, items: Iterable[T] = ()):
        self._items: deque[T] = deque(items, maxlen=max_items)

    def append(self, item: T) -> None:
        # appendleft on a full deque discards from the right, i.e. the oldest entry
        self._items.appendleft(item)

    def snapshot(self) -> list[T]:
        return list(self._items)

    def find(self, predicate: Callable[[T], bool]) -> T | None:
        return next((item for item in self._items if predicate(item)), None)

    def clear(self) -> None:
        self._items.clear()

    @property
    def max_items(self) -> int:
        return self._items.maxlen or 0

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[T]:
        return iter(self._items)


class OutboxRepository(ABC):
    """
    Persistence port for the transactional outbox.

    save_atomically() is the only write path for new data: a business record
    and its outbox entry are committed together or not at all.
    """

    @abstractmethod
    async def save_atomically(self, record: Any, entry: Any) -> None:
        """Commit a business record and its outbox entry as one unit."""

    @abstractmethod
    async def pending_entries(self) -> list[Any]:
        """Pending entries ordered by creation (oldest first)."""

    @abstractmethod
    async def mark_published(self, entry_id: str, published_at: str) -> None:
        ...

    @abstractmethod
    async def record_failed_attempt(self, entry_id: str, error: str) -> None:
        """Count a failed publish attempt; the entry stays pending."""

    @abstractmethod
    async def list_records(self) -> list[Any]:
        """Business records, newest first."""

    @abstractmethod
    async def list_entries(self) -> list[Any]:
        """Outbox entries, newest first."""

    @abstractmethod
    async def clear(self) -> None:
        ...
