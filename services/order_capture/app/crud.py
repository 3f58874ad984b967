"""
Relational store operations for the Order Capture service.

The module-level functions work on a plain SQLAlchemy Session.
RelationalOrderStore wraps them so every call goes through the connection
manager's retry executor and the schema is provisioned on first use.
"""
import logging
import threading
from typing import List, Optional, Set

from sqlalchemy import inspect as sqla_inspect
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, ProgrammingError
from sqlalchemy.orm import Session
from sqlalchemy.schema import CreateIndex, CreateTable

from . import models, schemas
from .database import ConnectionHandle, ConnectionManager
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Columns refreshed when an upsert hits an existing id
UPSERT_UPDATE_COLUMNS = ("updated_at", "status", "total_amount")

_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def ensure_schema(engine: Engine) -> None:
    """
    Create the orders table and its index if they do not exist.

    Safe to run concurrently from several processes: a creation race that
    leaves the table in place is not an error.

    Args:
        engine: SQLAlchemy engine
    """
    table = models.OrderRecord.__table__
    try:
        with engine.begin() as conn:
            conn.execute(CreateTable(table, if_not_exists=True))
            for index in table.indexes:
                conn.execute(CreateIndex(index, if_not_exists=True))
    except (IntegrityError, ProgrammingError, OperationalError) as e:
        if not sqla_inspect(engine).has_table(table.name):
            raise
        logger.info(f"Schema created concurrently by another process: {e.orig}")


def order_to_row(order: schemas.Order) -> dict:
    """
    Flatten an Order into column values.

    The JSON blobs are serialized here and nowhere else.
    """
    customer = {
        "email": order.email,
        "first_name": order.shipping_address.first_name,
        "last_name": order.shipping_address.last_name,
    }
    return {
        "id": order.id,
        "email": order.email,
        "status": order.status.value,
        "items_count": len(order.items),
        "total_amount": order.totals.total,
        "subtotal": order.totals.subtotal,
        "shipping_cost": order.totals.shipping,
        "tax_amount": order.totals.tax,
        "payment_reference": order.payment_reference,
        "customer_data": customer,
        "shipping_data": order.shipping_address.model_dump(mode="json"),
        "items_data": [item.model_dump(mode="json") for item in order.items],
        "order_metadata": order.metadata.model_dump(mode="json"),
        "created_at": order.created_at,
        "updated_at": order.updated_at,
    }


def get_order(db: Session, order_id: str) -> Optional[models.OrderRecord]:
    """
    Retrieve a single order by ID.

    Args:
        db: Database session
        order_id: ID of the order to retrieve

    Returns:
        OrderRecord or None if not found
    """
    return db.get(models.OrderRecord, order_id)


def get_orders(db: Session, limit: Optional[int] = 100) -> List[models.OrderRecord]:
    """
    Retrieve orders, newest first.

    Args:
        db: Database session
        limit: Maximum number of records to return (None for all)

    Returns:
        List of OrderRecord objects ordered by created_at descending
    """
    stmt = select(models.OrderRecord).order_by(models.OrderRecord.created_at.desc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt))


def get_order_ids(db: Session) -> Set[str]:
    return set(db.scalars(select(models.OrderRecord.id)))


def upsert_order(db: Session, order: schemas.Order) -> models.OrderRecord:
    """
    Insert an order, or refresh it if the id already exists.

    On conflict only updated_at, status and total_amount change; created_at
    and the JSON blobs keep their first-written values.

    Args:
        db: Database session
        order: Normalized order

    Returns:
        The stored OrderRecord

    Raises:
        ConfigurationError: If the database dialect has no upsert support here
    """
    dialect = db.get_bind().dialect.name
    insert = _INSERTS.get(dialect)
    if insert is None:
        raise ConfigurationError(f"Upsert is not supported for dialect '{dialect}'")

    table = models.OrderRecord.__table__
    values = order_to_row(order)
    values["metadata"] = values.pop("order_metadata")

    stmt = insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[table.c.id],
        set_={name: stmt.excluded[name] for name in UPSERT_UPDATE_COLUMNS},
    )
    db.execute(stmt)
    db.commit()
    return get_order(db, order.id)


class RelationalOrderStore:
    """
    Secondary, queryable copy of captured orders.

    Every operation is routed through ConnectionManager.execute_with_retry,
    which also re-initializes a connection that previously failed.
    """

    def __init__(self, manager: ConnectionManager):
        self.manager = manager
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    def _ensure_schema(self, handle: ConnectionHandle) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if not self._schema_ready:
                ensure_schema(handle.engine)
                self._schema_ready = True
                logger.info("Relational order schema is ready")

    async def upsert_order(self, order: schemas.Order) -> schemas.StoredOrder:
        def operation(handle: ConnectionHandle) -> schemas.StoredOrder:
            self._ensure_schema(handle)
            with handle.session_factory() as db:
                return schemas.StoredOrder.model_validate(upsert_order(db, order))

        return await self.manager.execute_with_retry(operation, f"upsert order {order.id}")

    async def get_order(self, order_id: str) -> Optional[schemas.StoredOrder]:
        def operation(handle: ConnectionHandle) -> Optional[schemas.StoredOrder]:
            self._ensure_schema(handle)
            with handle.session_factory() as db:
                row = get_order(db, order_id)
                return schemas.StoredOrder.model_validate(row) if row else None

        return await self.manager.execute_with_retry(operation, f"get order {order_id}")

    async def list_orders(self, limit: Optional[int] = 100) -> List[schemas.StoredOrder]:
        def operation(handle: ConnectionHandle) -> List[schemas.StoredOrder]:
            self._ensure_schema(handle)
            with handle.session_factory() as db:
                return [schemas.StoredOrder.model_validate(row) for row in get_orders(db, limit)]

        return await self.manager.execute_with_retry(operation, "list orders")

    async def list_ids(self) -> Set[str]:
        def operation(handle: ConnectionHandle) -> Set[str]:
            self._ensure_schema(handle)
            with handle.session_factory() as db:
                return get_order_ids(db)

        return await self.manager.execute_with_retry(operation, "list order ids")