from datetime import datetime, timezone
from typing import List

import pytest

from app import schemas
from app.config import RetryPolicy, Settings
from app.coordinator import DualWriteCoordinator
from app.crud import RelationalOrderStore
from app.database import ConnectionManager
from app.ledger import LedgerWriter


class RecordingSleep:
    """Stand-in for asyncio.sleep that records the requested delays."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path}/orders.db",
        ledger_path=str(tmp_path / "orders.json"),
        retry=RetryPolicy(max_attempts=3, initial_delay_ms=100, max_delay_ms=1000, backoff_factor=2.0),
    )


@pytest.fixture
def unreachable_settings(tmp_path):
    # SQLite cannot create a database file in a directory that does not exist
    return Settings(
        database_url=f"sqlite:///{tmp_path}/missing/orders.db",
        ledger_path=str(tmp_path / "orders.json"),
        retry=RetryPolicy(max_attempts=3, initial_delay_ms=100, max_delay_ms=1000, backoff_factor=2.0),
    )


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def manager(settings, sleep):
    manager = ConnectionManager(settings, sleep=sleep)
    yield manager
    manager.close()


@pytest.fixture
def ledger(settings):
    return LedgerWriter(settings.ledger_path)


@pytest.fixture
def store(manager):
    return RelationalOrderStore(manager)


@pytest.fixture
def coordinator(ledger, store, manager):
    return DualWriteCoordinator(ledger, store, manager)


@pytest.fixture
def order_payload():
    """Ingestion payload as the checkout collaborator sends it."""
    return {
        "email": "Jane@Example.com",
        "items": [
            {"id": "item_linen", "title": "Linen swatch", "quantity": 3, "unitPrice": "12.50"},
        ],
        "shippingAddress": {
            "firstName": "Jane",
            "lastName": "Doe",
            "address": "1 Main St",
            "city": "Springfield",
            "state": "IL",
            "zipCode": "62701",
            "country": "US",
        },
        "totals": {"subtotal": "37.50", "shipping": "0", "tax": "0", "total": "37.50"},
    }


@pytest.fixture
def make_order():
    """Factory for normalized orders."""

    def _make(
        order_id: str,
        email: str = "jane@example.com",
        total: int = 3750,
        created_via: schemas.CreatedVia = schemas.CreatedVia.CHECKOUT,
        created_at: datetime = None,
        idempotency_key: str = None,
        timeline: List[schemas.TimelineEntry] = None,
    ) -> schemas.Order:
        created_at = created_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
        return schemas.Order(
            id=order_id,
            display_id=123456,
            email=email,
            items=[schemas.LineItem(
                id="item_linen", title="Linen swatch", quantity=1, unit_price=total, subtotal=total,
            )],
            shipping_address=schemas.Address(first_name="Jane", last_name="Doe", city="Springfield"),
            totals=schemas.Totals(subtotal=total, total=total),
            metadata=schemas.OrderMetadata(created_via=created_via, idempotency_key=idempotency_key),
            created_at=created_at,
            updated_at=created_at,
            timeline=timeline or [],
        )

    return _make
