"""
Unit Tests for Models, Stores and Identifiers

Tests wire shapes of engine records, snapshot immutability, the bounded
stores and id generation.
"""

import pytest
from pydantic import ValidationError

from messaging_resilience.core.config.constants import CircuitState, DlqStatus
from messaging_resilience.core.identifiers import generate_id, generate_transaction_id
from messaging_resilience.core.interfaces.scheduling import TaskRegistry, to_iso
from messaging_resilience.core.interfaces.store import BoundedLog, InMemoryRecordStore
from messaging_resilience.core.models.circuit_breaker import CircuitBreakerConfig, CircuitBreakerStatus
from messaging_resilience.core.models.dead_letter import BatchResult, DlqMessage, RetryHistoryEntry


def make_status(**overrides):
    fields = {
        "state": CircuitState.CLOSED,
        "failures": 0,
        "config": CircuitBreakerConfig.from_settings(),
        "last_state_change": "2024-01-01T00:00:00.000Z",
        "service_down": False,
    }
    fields.update(overrides)
    return CircuitBreakerStatus(**fields)


@pytest.mark.unit
class TestRecordModels:
    def test_unset_optionals_omitted_from_wire(self):
        message = DlqMessage(
            id="MSG-1",
            payload={"orderId": 1},
            status=DlqStatus.PROCESSING,
            queue="dlq-demo.main",
            max_retries=3,
            created_at="2024-01-01T00:00:00.000Z",
        )

        data = message.to_dict()
        assert "deadAt" not in data
        assert data["maxRetries"] == 3
        assert data["retryHistory"] == []

    def test_nested_records_are_camel_case(self):
        message = DlqMessage(
            id="MSG-1",
            payload={},
            status="dead",
            queue="dlq-demo.dead-letter",
            max_retries=1,
            created_at="2024-01-01T00:00:00.000Z",
            retry_history=[RetryHistoryEntry(attempt=1, timestamp="t", delay_ms=2_000, error="boom")],
        )

        assert message.is_dead is True
        assert message.to_dict()["retryHistory"][0]["delayMs"] == 2_000

    def test_records_accept_camel_case_input(self):
        entry = RetryHistoryEntry.model_validate({"attempt": 2, "timestamp": "t", "delayMs": 8_000, "error": "x"})
        assert entry.delay_ms == 8_000


@pytest.mark.unit
class TestSnapshots:
    def test_snapshots_are_frozen(self):
        status = make_status()
        with pytest.raises(ValidationError):
            status.failures = 5

    def test_open_status_requires_opened_at(self):
        with pytest.raises(ValidationError):
            make_status(state=CircuitState.OPEN)

        assert make_status(state=CircuitState.OPEN, opened_at="2024-01-01T00:00:00.000Z").state == CircuitState.OPEN

    def test_batch_result_ids_match_sent(self):
        with pytest.raises(ValidationError):
            BatchResult(sent=2, ids=["MSG-1"])


@pytest.mark.unit
class TestBoundedLog:
    def test_newest_first_and_capped(self):
        log = BoundedLog(3)
        for i in range(5):
            log.append(i)

        assert log.snapshot() == [4, 3, 2]
        assert len(log) == 3
        assert log.max_items == 3

    def test_find(self):
        log = BoundedLog(10)
        log.append({"id": "a"})
        log.append({"id": "b"})

        assert log.find(lambda item: item["id"] == "a") == {"id": "a"}
        assert log.find(lambda item: item["id"] == "z") is None


@pytest.mark.unit
class TestInMemoryRecordStore:
    @pytest.mark.asyncio
    async def test_drop_oldest_eviction(self):
        store = InMemoryRecordStore(max_items=2, id_of=lambda r: r["id"])
        for record_id in ("a", "b", "c"):
            await store.add({"id": record_id})

        assert [r["id"] for r in await store.list()] == ["c", "b"]
        assert await store.get("a") is None

    @pytest.mark.asyncio
    async def test_remove_and_filter(self):
        store = InMemoryRecordStore(max_items=5, id_of=lambda r: r["id"])
        await store.add({"id": "a", "dead": True})
        await store.add({"id": "b", "dead": False})

        assert [r["id"] for r in await store.list(lambda r: r["dead"])] == ["a"]
        assert await store.remove("a") is True
        assert await store.remove("a") is False

    @pytest.mark.asyncio
    async def test_save_ignores_evicted_record(self):
        store = InMemoryRecordStore(max_items=1, id_of=lambda r: r["id"])
        await store.add({"id": "a"})
        await store.add({"id": "b"})

        await store.save({"id": "a", "status": "late update"})

        assert [r["id"] for r in await store.list()] == ["b"]


@pytest.mark.unit
class TestIdentifiers:
    def test_id_format(self, clock):
        new_id = generate_id("CALL", clock, suffix_length=3)

        prefix, ms, suffix = new_id.split("-")
        assert prefix == "CALL"
        assert int(ms) == int(clock.now_ms())
        assert len(suffix) == 3

    def test_ids_unique_within_one_millisecond(self, clock):
        ids = {generate_id("ORD", clock, suffix_length=3) for _ in range(500)}
        assert len(ids) == 500

    def test_suffix_grows_when_space_exhausted(self, clock):
        ids = [generate_id("X", clock, suffix_length=1) for _ in range(17)]

        assert len(set(ids)) == 17
        assert len(ids[-1].split("-")[-1]) == 2

    def test_transaction_id(self):
        assert generate_transaction_id().startswith("TXN-")

    def test_to_iso(self):
        assert to_iso(1_704_067_200_000) == "2024-01-01T00:00:00.000Z"


@pytest.mark.unit
class TestTaskRegistry:
    def test_cancel_all_cancels_live_tasks(self, clock):
        registry = TaskRegistry("test")
        registry.register(clock.every(100, lambda: None, name="tick"))
        registry.register(clock.after(100, lambda: None, name="once"))

        assert registry.active == 2
        assert registry.cancel_all() == 2
        assert clock.pending_timers == 0
