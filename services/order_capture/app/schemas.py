"""
Pydantic schemas for the Order Capture service.

Inbound schemas (OrderInput, CheckoutPayload) accept the camelCase keys sent
by the checkout collaborator as well as snake_case. Amounts on the way in are
decimal major-currency amounts; everything after normalization (Order and
below) carries integer minor-currency units.
"""
import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator

EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _either(name: str, camel: str) -> AliasChoices:
    return AliasChoices(name, camel)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    FULFILLED = "fulfilled"


class CreatedVia(str, Enum):
    CHECKOUT = "checkout"
    WORKFLOW = "workflow"
    FALLBACK = "fallback"


class Address(BaseModel):
    """Postal address used for shipping and billing."""
    first_name: str = Field("", validation_alias=_either("first_name", "firstName"))
    last_name: str = Field("", validation_alias=_either("last_name", "lastName"))
    address_1: str = Field("", validation_alias=AliasChoices("address_1", "address"))
    address_2: str = Field("", validation_alias=_either("address_2", "address2"))
    city: str = ""
    province: str = Field("", validation_alias=AliasChoices("province", "state"))
    postal_code: str = Field("", validation_alias=_either("postal_code", "zipCode"))
    country_code: str = Field("us", validation_alias=AliasChoices("country_code", "country"))
    phone: str = ""

    @field_validator("country_code")
    @classmethod
    def lower_country(cls, v: str) -> str:
        return (v or "us").lower()


class LineItemInput(BaseModel):
    """Schema for a line item as sent by the checkout collaborator."""
    id: str
    title: str
    quantity: int = Field(..., gt=0, description="Quantity ordered")
    unit_price: Decimal = Field(
        ..., ge=0, validation_alias=_either("unit_price", "unitPrice"),
        description="Price per unit in major currency units",
    )
    variant_id: Optional[str] = Field(None, validation_alias=_either("variant_id", "variantId"))


class TotalsInput(BaseModel):
    """Totals as sent by the checkout collaborator (major currency units)."""
    subtotal: Optional[Decimal] = None
    shipping: Decimal = Decimal("0")
    tax: Decimal = Decimal("0")
    total: Optional[Decimal] = None


class LineItem(BaseModel):
    """Normalized line item. Amounts are integer minor units."""
    id: str
    title: str
    quantity: int
    unit_price: int
    subtotal: int
    variant_id: Optional[str] = None


class Totals(BaseModel):
    """Order totals in integer minor units."""
    subtotal: int = 0
    shipping: int = 0
    tax: int = 0
    total: int = 0


class TimelineEntry(BaseModel):
    """
    One entry of an order's audit trail.

    Attributes:
        status (str): What happened (ledger_stored, database_stored, database_error, ...)
        timestamp (datetime): When it happened
        detail (str): Free-text detail, e.g. the error message (optional)
    """
    status: str
    timestamp: datetime
    detail: Optional[str] = None


class OrderMetadata(BaseModel):
    """Provenance of an order."""
    source: str = "checkout"
    created_via: CreatedVia = CreatedVia.CHECKOUT
    idempotency_key: Optional[str] = None
    cart_id: Optional[str] = None
    external_order_id: Optional[str] = None


class OrderInput(BaseModel):
    """
    Ingestion input from the checkout collaborator.

    orderId is optional; when absent the coordinator resolves an id from
    idempotencyKey or generates a new one.
    """
    order_id: Optional[str] = Field(None, validation_alias=_either("order_id", "orderId"))
    idempotency_key: Optional[str] = Field(
        None, validation_alias=_either("idempotency_key", "idempotencyKey")
    )
    email: str
    items: List[LineItemInput] = Field(default_factory=list)
    shipping_address: Address = Field(
        ..., validation_alias=_either("shipping_address", "shippingAddress")
    )
    billing_address: Optional[Address] = Field(
        None, validation_alias=_either("billing_address", "billingAddress")
    )
    totals: TotalsInput = Field(default_factory=TotalsInput)
    payment_reference: Optional[str] = Field(
        None, validation_alias=_either("payment_reference", "paymentReference")
    )
    status: OrderStatus = OrderStatus.PENDING

    @field_validator("email")
    @classmethod
    def check_email(cls, v: str) -> str:
        v = v.strip().lower()
        if not EMAIL_REGEX.match(v):
            raise ValueError("invalid email address")
        return v


class CheckoutPayload(OrderInput):
    """Checkout completion request: the order input plus the engine's cart id."""
    cart_id: Optional[str] = Field(None, validation_alias=_either("cart_id", "cartId"))

    @property
    def checkout_key(self) -> Optional[str]:
        return self.idempotency_key or self.cart_id


class StatusUpdate(BaseModel):
    """Request body for an order status change."""
    status: OrderStatus
    detail: Optional[str] = None


class Order(BaseModel):
    """The normalized order record, as stored in the ledger."""
    id: str
    display_id: Optional[int] = None
    email: str
    items: List[LineItem] = Field(default_factory=list)
    shipping_address: Address
    billing_address: Optional[Address] = None
    totals: Totals
    payment_reference: Optional[str] = None
    status: OrderStatus = OrderStatus.PENDING
    metadata: OrderMetadata = Field(default_factory=OrderMetadata)
    created_at: datetime
    updated_at: datetime
    timeline: List[TimelineEntry] = Field(default_factory=list)

    def has_timeline_status(self, status: str) -> bool:
        return any(entry.status == status for entry in self.timeline)


class StoredOrder(BaseModel):
    """
    Schema for rows of the relational store.

    Attributes mirror models.OrderRecord; order_metadata is exposed as
    "metadata" in responses.
    """
    id: str
    email: str
    status: str
    items_count: int
    total_amount: int
    subtotal: int
    shipping_cost: int
    tax_amount: int
    payment_reference: Optional[str] = None
    customer_data: Optional[Dict[str, Any]] = None
    shipping_data: Optional[Dict[str, Any]] = None
    items_data: Optional[List[Dict[str, Any]]] = None
    order_metadata: Optional[Dict[str, Any]] = Field(None, serialization_alias="metadata")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class PersistResult(BaseModel):
    """Outcome of DualWriteCoordinator.persist_order()."""
    order: Order
    ledger_ok: bool
    relational_ok: bool
    conflict: bool = False


class CheckoutResult(PersistResult):
    """Outcome of a checkout completion; source tells where the order came from."""
    source: Literal["existing", "workflow", "fallback"]


class Discrepancy(BaseModel):
    order_id: str
    kind: Literal["missing_in_relational", "missing_in_ledger", "field_mismatch"]
    detail: Optional[str] = None


class ReconciliationReport(BaseModel):
    """
    Point-in-time comparison of the ledger and the relational store.

    Attributes:
        in_ledger_only (List[str]): Ids recorded only in the ledger
        in_relational_only (List[str]): Ids recorded only in the relational store
        in_both (List[str]): Ids recorded in both stores
        discrepancies (List[Discrepancy]): Classified findings
        generated_at (datetime): When the comparison ran
    """
    in_ledger_only: List[str] = Field(default_factory=list)
    in_relational_only: List[str] = Field(default_factory=list)
    in_both: List[str] = Field(default_factory=list)
    discrepancies: List[Discrepancy] = Field(default_factory=list)
    generated_at: datetime

    @property
    def is_consistent(self) -> bool:
        return not self.discrepancies

    def summary(self) -> str:
        mismatched = sum(1 for d in self.discrepancies if d.kind == "field_mismatch")
        line = (
            f"{len(self.in_both)} orders synced, "
            f"{len(self.in_ledger_only)} missing in relational store, "
            f"{len(self.in_relational_only)} relational-only"
        )
        if mismatched:
            line += f", {mismatched} with mismatched fields"
        return line
