"""
Dual-write coordination for the Order Capture service.

Every captured order is written to the ledger first (load-bearing: a failure
fails the whole operation) and then to the relational store (best-effort:
a failure is recorded on the order's timeline and left for reconciliation).
There is no distributed transaction between the two.
"""
import logging
import warnings
from typing import Any, Dict, Optional, Tuple, Union

import pydantic
from fastapi.concurrency import run_in_threadpool

from . import cache, schemas, validators
from .crud import RelationalOrderStore
from .database import ConnectionManager
from .errors import ConflictWarning, OrderCaptureError, ValidationError
from .ids import generate_display_id, generate_order_id
from .ledger import LedgerWriter
from .schemas import utcnow

logger = logging.getLogger(__name__)

LEDGER_STORED = "ledger_stored"
DATABASE_STORED = "database_stored"
DATABASE_ERROR = "database_error"

OrderLike = Union[schemas.OrderInput, schemas.Order, Dict[str, Any]]


class DualWriteCoordinator:
    """
    Persists orders to the ledger and the relational store.

    Idempotency: a write whose id is already recorded updates the existing
    ledger entry and relational row instead of creating new ones. Concurrent
    writes of the same id are resolved by the relational upsert clause and
    the ledger lock; the coordinator does not serialize them itself.
    """

    def __init__(
        self,
        ledger: LedgerWriter,
        store: RelationalOrderStore,
        manager: ConnectionManager,
        idempotency_ttl: int = 86400,
    ):
        self.ledger = ledger
        self.store = store
        self.manager = manager
        self.idempotency_ttl = idempotency_ttl

    async def find_by_idempotency_key(self, key: str) -> Optional[schemas.Order]:
        """
        Look up the order a checkout idempotency key already resolved to.

        The cache is consulted first; the ledger scan is authoritative.
        """
        order_id = await run_in_threadpool(cache.lookup_checkout, self.manager.cache, key)
        if order_id:
            order = await run_in_threadpool(self.ledger.get, order_id)
            if order is not None:
                return order
        return await run_in_threadpool(self.ledger.find_by_idempotency_key, key)

    async def _resolve_order_id(self, order_input: schemas.OrderInput) -> str:
        if order_input.order_id:
            return order_input.order_id
        if order_input.idempotency_key:
            existing = await self.find_by_idempotency_key(order_input.idempotency_key)
            if existing is not None:
                logger.info(
                    f"Idempotency key {order_input.idempotency_key} resolved to order {existing.id}"
                )
                return existing.id
        return generate_order_id()

    async def normalize(self, order_input: OrderLike) -> schemas.Order:
        """
        Turn ingestion input into the Order shape.

        Args:
            order_input: OrderInput, a raw dict in the ingestion format, or an
                already normalized Order (workflow or fallback orders)

        Returns:
            Normalized Order with an id assigned

        Raises:
            ValidationError: If the payload is malformed
        """
        if isinstance(order_input, schemas.Order):
            return order_input

        if isinstance(order_input, dict):
            try:
                order_input = schemas.OrderInput.model_validate(order_input)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid order payload: {e}") from e

        is_valid, error_message = validators.validate_order_items(order_input.items)
        if not is_valid:
            raise ValidationError(error_message)

        items = validators.build_line_items(order_input.items)
        totals, error_message = validators.build_totals(items, order_input.totals)
        if error_message:
            raise ValidationError(error_message)

        now = utcnow()
        return schemas.Order(
            id=await self._resolve_order_id(order_input),
            display_id=generate_display_id(),
            email=order_input.email,
            items=items,
            shipping_address=order_input.shipping_address,
            billing_address=order_input.billing_address or order_input.shipping_address,
            totals=totals,
            payment_reference=order_input.payment_reference,
            status=order_input.status,
            metadata=schemas.OrderMetadata(idempotency_key=order_input.idempotency_key),
            created_at=now,
            updated_at=now,
        )

    async def persist_order(self, order_input: OrderLike) -> schemas.PersistResult:
        """
        Persist an order to both stores.

        Steps:
        1. Normalize the input and assign an id.
        2. Write the ledger. Failure propagates (LedgerWriteError).
        3. Upsert the relational row through the retry executor. Failure is
           recorded as a database_error timeline entry.
        4. Finalize the ledger timeline with the relational outcome.

        Args:
            order_input: Ingestion payload or normalized Order

        Returns:
            PersistResult with the order as recorded and both outcome flags

        Raises:
            ValidationError: If the payload is malformed
            LedgerWriteError: If the ledger write failed
        """
        order = await self.normalize(order_input)
        now = utcnow()
        order = order.model_copy(update={
            "updated_at": now,
            "timeline": order.timeline + [schemas.TimelineEntry(status=LEDGER_STORED, timestamp=now)],
        })

        order, created = await run_in_threadpool(self.ledger.upsert, order)
        if not created:
            warnings.warn(
                ConflictWarning(f"Order {order.id} already recorded, applied as update"),
                stacklevel=2,
            )

        if order.metadata.idempotency_key:
            await run_in_threadpool(
                cache.remember_checkout,
                self.manager.cache, order.metadata.idempotency_key, order.id, self.idempotency_ttl,
            )

        order, relational_ok = await self._write_relational(order)
        return schemas.PersistResult(
            order=order,
            ledger_ok=True,
            relational_ok=relational_ok,
            conflict=not created,
        )

    async def _write_relational(self, order: schemas.Order) -> Tuple[schemas.Order, bool]:
        """Upsert the relational row and record the outcome on the ledger timeline."""
        try:
            await self.store.upsert_order(order)
            relational_ok = True
            entry = schemas.TimelineEntry(status=DATABASE_STORED, timestamp=utcnow())
            logger.info(f"Order {order.id} stored in relational store")
        except OrderCaptureError as e:
            relational_ok = False
            entry = schemas.TimelineEntry(status=DATABASE_ERROR, timestamp=utcnow(), detail=str(e))
            logger.warning(f"Order {order.id} recorded in ledger only: {e}")

        try:
            order = await run_in_threadpool(self.ledger.append_timeline, order.id, entry)
        except OrderCaptureError as e:
            # The ledger entry stands; only the outcome entry is lost.
            logger.error(f"Could not record {entry.status} for order {order.id} in ledger: {e}")
            order = order.model_copy(update={"timeline": order.timeline + [entry]})
        return order, relational_ok

    async def update_status(
        self, order_id: str, status: schemas.OrderStatus, detail: Optional[str] = None
    ) -> Optional[schemas.PersistResult]:
        """
        Change the status of a captured order in both stores.

        The ledger is updated first and is load-bearing; the relational row is
        then refreshed through the retry executor on a best-effort basis,
        exactly as in persist_order().

        Args:
            order_id: Order identifier
            status: New status
            detail: Free-text note for the timeline entry (optional)

        Returns:
            PersistResult, or None if the order is not in the ledger

        Raises:
            LedgerWriteError: If the ledger write failed
        """
        entry = schemas.TimelineEntry(
            status=status.value,
            timestamp=utcnow(),
            detail=detail or f"Status updated to {status.value}",
        )
        order = await run_in_threadpool(self.ledger.update_status, order_id, status, entry)
        if order is None:
            return None

        order, relational_ok = await self._write_relational(order)
        return schemas.PersistResult(order=order, ledger_ok=True, relational_ok=relational_ok)
