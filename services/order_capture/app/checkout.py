"""
Checkout completion flow.

Resolves the order for a completed checkout (existing, authoritative from
the workflow engine, or synthesized locally) and hands it to the dual-write
coordinator.
"""
import logging

from . import schemas
from .clients.workflow_client import WorkflowClient
from .coordinator import DualWriteCoordinator
from .errors import WorkflowEngineError
from .fallback import synthesize_order

logger = logging.getLogger(__name__)


async def complete_checkout(
    payload: schemas.CheckoutPayload,
    workflow: WorkflowClient,
    coordinator: DualWriteCoordinator,
) -> schemas.CheckoutResult:
    """
    Record the order for a completed checkout.

    A checkout whose idempotency key (or cart id) already resolved to an
    order returns that order untouched, so a client retry can neither
    duplicate it nor replace an authoritative order with a fallback one.

    Args:
        payload: Checkout payload from the checkout collaborator
        workflow: Workflow engine client
        coordinator: Dual-write coordinator

    Returns:
        CheckoutResult with the order and where it came from

    Raises:
        ValidationError: If the payload is malformed
        LedgerWriteError: If the order could not be recorded in the ledger
    """
    key = payload.checkout_key
    if key:
        existing = await coordinator.find_by_idempotency_key(key)
        if existing is not None:
            logger.info(f"Checkout {key} already recorded as order {existing.id}")
            return schemas.CheckoutResult(
                order=existing,
                ledger_ok=True,
                relational_ok=(
                    existing.has_timeline_status("database_stored")
                    or existing.has_timeline_status("database_repaired")
                ),
                conflict=True,
                source="existing",
            )

    try:
        order = await workflow.complete_cart(payload.cart_id, payload.payment_reference)
        order = order.model_copy(update={
            "metadata": order.metadata.model_copy(update={"idempotency_key": key}),
        })
        source = "workflow"
    except WorkflowEngineError as e:
        logger.warning(f"Workflow engine unavailable, using fallback order: {e}")
        order = synthesize_order(payload, reason=str(e))
        source = "fallback"

    result = await coordinator.persist_order(order)
    return schemas.CheckoutResult(**result.model_dump(), source=source)
