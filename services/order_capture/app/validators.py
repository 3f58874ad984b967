"""
Validation and monetary normalization for the Order Capture service.

All arithmetic is done on Decimal and converted to integer minor currency
units once per value, so a stored total never drifts from the sum of its
parts (12.50 x 3 is 3750, never 3749 or 3751).
"""
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union

from . import schemas

MAX_ITEMS = 100
MAX_QUANTITY = 10000
MAX_UNIT_PRICE = Decimal("1000000")

# Allowed difference between a claimed total and the computed one, in minor units
TOTAL_TOLERANCE = 1

Amount = Union[Decimal, int, float, str]


def to_minor_units(amount: Amount) -> int:
    """
    Convert a major-unit amount to integer minor units.

    Floats are converted through their string form so binary representation
    error never reaches the result.

    Args:
        amount: Amount in major currency units (e.g. 12.5 for $12.50)

    Returns:
        Amount in minor units, rounded half-up (e.g. 1250)

    Raises:
        ValueError: If the amount is not a finite number
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        cents = (value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    except InvalidOperation as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    return int(cents)


def validate_order_items(items: List[schemas.LineItemInput]) -> Tuple[bool, str]:
    """
    Validate order items for business rules.

    Args:
        items: List of order items

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not items:
        return False, "Order must contain at least one item"

    if len(items) > MAX_ITEMS:
        return False, f"Order cannot contain more than {MAX_ITEMS} items"

    for item in items:
        if item.quantity <= 0:
            return False, f"Item {item.id}: quantity must be positive"

        if item.quantity > MAX_QUANTITY:
            return False, f"Item {item.id}: quantity exceeds maximum ({MAX_QUANTITY})"

        if item.unit_price < 0:
            return False, f"Item {item.id}: price cannot be negative"

        if item.unit_price > MAX_UNIT_PRICE:
            return False, f"Item {item.id}: price exceeds maximum (1,000,000)"

    return True, ""


def build_line_items(items: List[schemas.LineItemInput]) -> List[schemas.LineItem]:
    """Normalize input items; subtotal is quantity x unit price in minor units."""
    line_items = []
    for item in items:
        unit_price = to_minor_units(item.unit_price)
        line_items.append(schemas.LineItem(
            id=item.id,
            title=item.title,
            quantity=item.quantity,
            unit_price=unit_price,
            subtotal=unit_price * item.quantity,
            variant_id=item.variant_id,
        ))
    return line_items


def build_totals(
    line_items: List[schemas.LineItem], totals: schemas.TotalsInput
) -> Tuple[schemas.Totals, Optional[str]]:
    """
    Compute order totals from normalized line items.

    The subtotal is always recomputed from the items; shipping and tax come
    from the input. A claimed subtotal or total that disagrees by more than
    TOTAL_TOLERANCE minor units is reported.

    Args:
        line_items: Normalized line items
        totals: Totals claimed by the checkout collaborator

    Returns:
        Tuple of (computed totals, error_message or None)
    """
    subtotal = sum(item.subtotal for item in line_items)
    shipping = to_minor_units(totals.shipping)
    tax = to_minor_units(totals.tax)
    computed = schemas.Totals(
        subtotal=subtotal,
        shipping=shipping,
        tax=tax,
        total=subtotal + shipping + tax,
    )

    if totals.subtotal is not None:
        claimed = to_minor_units(totals.subtotal)
        if abs(claimed - computed.subtotal) > TOTAL_TOLERANCE:
            return computed, f"Order subtotal mismatch: calculated {computed.subtotal}, claimed {claimed}"

    if totals.total is not None:
        claimed = to_minor_units(totals.total)
        if abs(claimed - computed.total) > TOTAL_TOLERANCE:
            return computed, f"Order total mismatch: calculated {computed.total}, claimed {claimed}"

    return computed, None
