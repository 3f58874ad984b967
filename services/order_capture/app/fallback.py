"""
Fallback order synthesis.

When the workflow engine cannot mint the authoritative order, a locally
valid one is built from the checkout payload so a paid checkout is never
lost. Fallback orders are marked metadata.created_via = "fallback".
"""
import logging

from . import schemas, validators
from .errors import ValidationError
from .ids import generate_display_id, generate_order_id
from .schemas import utcnow

logger = logging.getLogger(__name__)

FALLBACK_SYNTHESIZED = "fallback_synthesized"


def synthesize_order(payload: schemas.CheckoutPayload, reason: str = "") -> schemas.Order:
    """
    Build an order locally from a checkout payload.

    Args:
        payload: Checkout payload
        reason: Why the workflow engine path was abandoned (recorded on the timeline)

    Returns:
        Order with freshly generated id and display_id

    Raises:
        ValidationError: If the payload items or totals are invalid
    """
    is_valid, error_message = validators.validate_order_items(payload.items)
    if not is_valid:
        raise ValidationError(error_message)

    items = validators.build_line_items(payload.items)
    totals, error_message = validators.build_totals(items, payload.totals)
    if error_message:
        raise ValidationError(error_message)

    now = utcnow()
    order = schemas.Order(
        id=generate_order_id(),
        display_id=generate_display_id(),
        email=payload.email,
        items=items,
        shipping_address=payload.shipping_address,
        billing_address=payload.billing_address or payload.shipping_address,
        totals=totals,
        payment_reference=payload.payment_reference,
        status=schemas.OrderStatus.PAID if payload.payment_reference else payload.status,
        metadata=schemas.OrderMetadata(
            created_via=schemas.CreatedVia.FALLBACK,
            idempotency_key=payload.checkout_key,
            cart_id=payload.cart_id,
        ),
        created_at=now,
        updated_at=now,
        timeline=[schemas.TimelineEntry(status=FALLBACK_SYNTHESIZED, timestamp=now, detail=reason or None)],
    )
    logger.warning(f"Synthesized fallback order {order.id} for {payload.email}")
    return order
