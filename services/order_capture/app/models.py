"""
SQLAlchemy ORM models for the Order Capture service.

Defines the relational copy of captured orders. The table is provisioned
at runtime by crud.ensure_schema() rather than at import time.
"""
from sqlalchemy import JSON, Column, DateTime, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB

from .database import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class OrderRecord(Base):
    """
    Relational copy of a captured order, one row per order id.

    Attributes:
        id (str): Primary key, the order identifier shared with the ledger
        email (str): Customer email
        status (str): Order status (pending, paid, failed, fulfilled)
        items_count (int): Number of line items
        total_amount (int): Grand total in minor currency units
        subtotal (int): Sum of line items in minor currency units
        shipping_cost (int): Shipping in minor currency units
        tax_amount (int): Tax in minor currency units
        payment_reference (str): Opaque payment provider reference (optional)
        customer_data (dict): Customer name and email
        shipping_data (dict): Shipping address
        items_data (list): Line items
        order_metadata (dict): Provenance metadata, stored in the "metadata" column
        created_at (datetime): When the order was first captured
        updated_at (datetime): When the order was last written
    """
    __tablename__ = "captured_orders"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), nullable=False)
    status = Column(String(50), nullable=False, default="pending")
    items_count = Column(Integer, nullable=False, default=0)
    total_amount = Column(Integer, nullable=False, default=0)
    subtotal = Column(Integer, nullable=False, default=0)
    shipping_cost = Column(Integer, nullable=False, default=0)
    tax_amount = Column(Integer, nullable=False, default=0)
    payment_reference = Column(String(255), nullable=True)
    customer_data = Column(JSONType, nullable=True)
    shipping_data = Column(JSONType, nullable=True)
    items_data = Column(JSONType, nullable=True)
    order_metadata = Column("metadata", JSONType, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_captured_orders_created_at", "created_at"),
    )
