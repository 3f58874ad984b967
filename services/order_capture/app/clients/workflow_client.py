"""
HTTP client for the external workflow engine.

The workflow engine authorizes payment and mints the authoritative order by
completing the checkout cart. Any failure here is reported as a
WorkflowEngineError so the checkout flow can fall back to a locally
synthesized order.
"""
import logging
from typing import Any, Dict, List, Optional

import httpx
import pydantic

from .. import schemas
from ..errors import WorkflowEngineError
from ..schemas import utcnow

logger = logging.getLogger(__name__)

TIMEOUT = 5.0  # seconds


def _order_from_engine(data: Dict[str, Any], cart_id: str) -> schemas.Order:
    """
    Map an order returned by the engine into the Order shape.

    The engine already reports amounts in minor units.
    """
    items: List[schemas.LineItem] = []
    for item in data.get("items") or []:
        quantity = int(item.get("quantity") or 1)
        unit_price = int(item.get("unit_price") or 0)
        items.append(schemas.LineItem(
            id=item["id"],
            title=item.get("title") or "",
            quantity=quantity,
            unit_price=unit_price,
            subtotal=int(item.get("subtotal") or unit_price * quantity),
            variant_id=item.get("variant_id"),
        ))

    now = utcnow()
    return schemas.Order(
        id=data["id"],
        display_id=data.get("display_id"),
        email=data["email"],
        items=items,
        shipping_address=schemas.Address.model_validate(data.get("shipping_address") or {}),
        billing_address=schemas.Address.model_validate(data["billing_address"])
        if data.get("billing_address") else None,
        totals=schemas.Totals(
            subtotal=int(data.get("subtotal") or 0),
            shipping=int(data.get("shipping_total") or 0),
            tax=int(data.get("tax_total") or 0),
            total=int(data.get("total") or 0),
        ),
        payment_reference=(data.get("metadata") or {}).get("payment_intent_id"),
        status=schemas.OrderStatus.PAID
        if data.get("payment_status") in ("captured", "authorized") else schemas.OrderStatus.PENDING,
        metadata=schemas.OrderMetadata(
            created_via=schemas.CreatedVia.WORKFLOW,
            cart_id=cart_id,
            external_order_id=data["id"],
        ),
        created_at=data.get("created_at") or now,
        updated_at=now,
    )


class WorkflowClient:
    """
    Client for the workflow engine's store API.

    Attributes:
        base_url (str): Engine base URL, or None when no engine is configured
        publishable_key (str): Sent as x-publishable-api-key when set
        timeout (float): Request timeout in seconds
    """

    def __init__(
        self,
        base_url: Optional[str],
        publishable_key: str = "",
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.publishable_key = publishable_key
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.publishable_key:
            headers["x-publishable-api-key"] = self.publishable_key
        return headers

    async def complete_cart(
        self, cart_id: Optional[str], payment_reference: Optional[str] = None
    ) -> schemas.Order:
        """
        Complete a checkout cart and return the order the engine created.

        Args:
            cart_id: Engine cart identifier
            payment_reference: Payment intent to attach before completing (optional)

        Returns:
            The authoritative order, normalized

        Raises:
            WorkflowEngineError: If no engine is configured, the cart id is
                missing, or the engine fails or returns an unusable order
        """
        if not self.base_url:
            raise WorkflowEngineError("No workflow engine configured")
        if not cart_id:
            raise WorkflowEngineError("Checkout has no cart id")

        try:
            async with httpx.AsyncClient(
                base_url=self.base_url, timeout=self.timeout, transport=self._transport
            ) as client:
                if payment_reference:
                    response = await client.post(
                        f"/store/carts/{cart_id}/payment-session/update",
                        json={"data": {"payment_intent_id": payment_reference}},
                        headers=self._headers(),
                    )
                    if response.status_code >= 400:
                        logger.warning(f"Payment update for cart {cart_id} failed: HTTP {response.status_code}")

                response = await client.post(
                    f"/store/carts/{cart_id}/complete", headers=self._headers()
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPError as e:
            raise WorkflowEngineError(f"Workflow engine error for cart {cart_id}: {e}") from e
        except ValueError as e:
            raise WorkflowEngineError(f"Workflow engine returned invalid JSON for cart {cart_id}") from e

        if not isinstance(data, dict):
            raise WorkflowEngineError(f"Workflow engine returned a non-object body for cart {cart_id}")
        order_data = data.get("order") or data
        try:
            order = _order_from_engine(order_data, cart_id)
        except (AttributeError, KeyError, TypeError, ValueError, pydantic.ValidationError) as e:
            raise WorkflowEngineError(f"Workflow engine returned an unusable order for cart {cart_id}: {e}") from e

        logger.info(f"Workflow engine created order {order.id} for cart {cart_id}")
        return order
