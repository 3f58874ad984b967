import asyncio
import json
import threading

import pytest
import redis

from app import schemas
from app.config import Settings
from app.coordinator import DualWriteCoordinator
from app.crud import RelationalOrderStore
from app.database import ConnectionManager
from app.errors import ConflictWarning, LedgerWriteError, ValidationError
from app.ledger import LedgerWriter
from app.reconcile import reconcile


class RecordingStore:
    """Relational store stand-in that only records what it was asked to write."""

    def __init__(self):
        self.upserts = []

    async def upsert_order(self, order):
        self.upserts.append(order)


class MemoryRedis:
    """Redis stand-in that records which thread issued each call."""

    def __init__(self):
        self.data = {}
        self.calls = []

    def ping(self):
        return True

    def get(self, key):
        self.calls.append(("get", threading.get_ident()))
        return self.data.get(key)

    def setex(self, key, ttl, value):
        self.calls.append(("setex", threading.get_ident()))
        self.data[key] = value

    def close(self):
        pass


def statuses(order: schemas.Order):
    return [entry.status for entry in order.timeline]


def naive(value):
    return value.replace(tzinfo=None)


def test_persist_writes_both_stores(coordinator, ledger, store, order_payload):
    result = asyncio.run(coordinator.persist_order(order_payload))

    assert result.ledger_ok is True
    assert result.relational_ok is True
    assert result.conflict is False
    assert statuses(result.order) == ["ledger_stored", "database_stored"]
    assert result.order.email == "jane@example.com"

    recorded = ledger.get(result.order.id)
    assert statuses(recorded) == ["ledger_stored", "database_stored"]
    row = asyncio.run(store.get_order(result.order.id))
    assert row.email == "jane@example.com"


def test_monetary_integrity(coordinator, store, order_payload):
    result = asyncio.run(coordinator.persist_order(order_payload))

    assert result.order.items[0].subtotal == 3750
    assert result.order.totals.total == 3750
    row = asyncio.run(store.get_order(result.order.id))
    assert row.total_amount == 3750
    assert row.subtotal == 3750


def test_repeated_order_id_is_an_update(coordinator, ledger, store, order_payload):
    order_payload["orderId"] = "order_fixed"
    first = asyncio.run(coordinator.persist_order(order_payload))
    first_row = asyncio.run(store.get_order("order_fixed"))

    with pytest.warns(ConflictWarning):
        second = asyncio.run(coordinator.persist_order(order_payload))

    assert second.conflict is True
    assert second.order.id == first.order.id == "order_fixed"
    assert second.order.created_at == first.order.created_at
    assert second.order.display_id == first.order.display_id
    assert ledger.list_ids() == {"order_fixed"}
    assert asyncio.run(store.list_ids()) == {"order_fixed"}

    second_row = asyncio.run(store.get_order("order_fixed"))
    assert naive(second_row.created_at) == naive(first_row.created_at)
    assert naive(second_row.updated_at) > naive(first_row.updated_at)


def test_repeated_write_keeps_stores_consistent(coordinator, ledger, store, order_payload):
    order_payload["orderId"] = "order_fixed"
    asyncio.run(coordinator.persist_order(order_payload))

    with pytest.warns(ConflictWarning):
        second = asyncio.run(coordinator.persist_order({**order_payload, "email": "other@example.com"}))

    assert second.order.email == "jane@example.com"
    assert asyncio.run(reconcile(ledger, store)).is_consistent is True


def test_idempotency_key_resolves_to_same_order(coordinator, ledger, order_payload):
    order_payload["idempotencyKey"] = "checkout_123"
    first = asyncio.run(coordinator.persist_order(order_payload))

    with pytest.warns(ConflictWarning):
        second = asyncio.run(coordinator.persist_order(order_payload))

    assert second.order.id == first.order.id
    assert len(ledger.list_orders()) == 1


def test_relational_outage_keeps_ledger_record(unreachable_settings, sleep, order_payload):
    manager = ConnectionManager(unreachable_settings, sleep=sleep)
    ledger = LedgerWriter(unreachable_settings.ledger_path)
    coordinator = DualWriteCoordinator(ledger, RelationalOrderStore(manager), manager)

    result = asyncio.run(coordinator.persist_order(order_payload))

    assert result.ledger_ok is True
    assert result.relational_ok is False
    assert statuses(result.order) == ["ledger_stored", "database_error"]
    assert "3 attempts" in result.order.timeline[-1].detail
    assert sleep.delays == [0.1, 0.2]

    recorded = ledger.get(result.order.id)
    assert recorded.has_timeline_status("database_error")


def test_ledger_failure_propagates(tmp_path, manager, order_payload):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    store = RecordingStore()
    coordinator = DualWriteCoordinator(LedgerWriter(str(blocker / "orders.json")), store, manager)

    with pytest.raises(LedgerWriteError):
        asyncio.run(coordinator.persist_order(order_payload))

    assert store.upserts == []


def test_invalid_payload_is_rejected(coordinator, ledger, order_payload):
    order_payload["email"] = "not-an-email"

    with pytest.raises(ValidationError):
        asyncio.run(coordinator.persist_order(order_payload))

    assert ledger.list_orders() == []


def test_total_mismatch_is_rejected(coordinator, ledger, order_payload):
    order_payload["totals"]["total"] = "99.00"

    with pytest.raises(ValidationError):
        asyncio.run(coordinator.persist_order(order_payload))

    assert ledger.list_orders() == []


def test_normalized_order_is_persisted_as_is(manager, ledger, make_order):
    store = RecordingStore()
    coordinator = DualWriteCoordinator(ledger, store, manager)
    order = make_order("order_engine_1", created_via=schemas.CreatedVia.WORKFLOW)

    result = asyncio.run(coordinator.persist_order(order))

    assert result.order.id == "order_engine_1"
    assert result.order.metadata.created_via == schemas.CreatedVia.WORKFLOW
    assert [o.id for o in store.upserts] == ["order_engine_1"]


@pytest.fixture
def cached_coordinator(settings, sleep, ledger, monkeypatch):
    client = MemoryRedis()
    monkeypatch.setattr(redis, "from_url", lambda *args, **kwargs: client)
    manager = ConnectionManager(
        Settings(database_url=settings.database_url, redis_url="redis://cache:6379/0"), sleep=sleep
    )
    manager.get_connection()
    yield DualWriteCoordinator(ledger, RelationalOrderStore(manager), manager), client
    manager.close()


def test_idempotency_key_resolves_through_cache(cached_coordinator, ledger, make_order, order_payload):
    coordinator, client = cached_coordinator
    # Recorded without the key, so only the cache can map it to this order
    ledger.upsert(make_order("order_cached"))
    client.data["checkout:checkout_123"] = json.dumps("order_cached")

    with pytest.warns(ConflictWarning):
        result = asyncio.run(coordinator.persist_order({**order_payload, "idempotencyKey": "checkout_123"}))

    assert result.order.id == "order_cached"
    assert ledger.list_ids() == {"order_cached"}


def test_cache_calls_run_off_the_event_loop(cached_coordinator, order_payload):
    coordinator, client = cached_coordinator

    result = asyncio.run(coordinator.persist_order({**order_payload, "idempotencyKey": "checkout_456"}))

    assert json.loads(client.data["checkout:checkout_456"]) == result.order.id
    assert [name for name, _ in client.calls] == ["get", "setex"]
    assert all(thread != threading.get_ident() for _, thread in client.calls)


def test_update_status_writes_both_stores(coordinator, ledger, store, order_payload):
    created = asyncio.run(coordinator.persist_order(order_payload))

    result = asyncio.run(coordinator.update_status(created.order.id, schemas.OrderStatus.FULFILLED))

    assert result.relational_ok is True
    assert result.order.status == schemas.OrderStatus.FULFILLED
    assert statuses(result.order)[-2:] == ["fulfilled", "database_stored"]
    assert ledger.get(created.order.id).status == schemas.OrderStatus.FULFILLED
    assert asyncio.run(store.get_order(created.order.id)).status == "fulfilled"


def test_update_status_unknown_order(coordinator):
    assert asyncio.run(coordinator.update_status("order_nope", schemas.OrderStatus.PAID)) is None


def test_update_status_during_relational_outage(unreachable_settings, sleep, make_order):
    manager = ConnectionManager(unreachable_settings, sleep=sleep)
    ledger = LedgerWriter(unreachable_settings.ledger_path)
    ledger.upsert(make_order("order_1"))
    coordinator = DualWriteCoordinator(ledger, RelationalOrderStore(manager), manager)

    result = asyncio.run(coordinator.update_status("order_1", schemas.OrderStatus.PAID, "captured by PSP"))

    assert result.relational_ok is False
    assert ledger.get("order_1").status == schemas.OrderStatus.PAID
    assert statuses(ledger.get("order_1")) == ["paid", "database_error"]
    assert ledger.get("order_1").timeline[0].detail == "captured by PSP"
