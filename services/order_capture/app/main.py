"""
Order Capture Service API

This module is the composition root of the order capture service: it reads
the settings once, builds the connection manager, the ledger, the relational
store, the workflow engine client and the dual-write coordinator, and wires
them into a FastAPI application.

Endpoints:
    GET /healthz: Health check with the relational connection status
    POST /orders: Capture an order into the ledger and the relational store
    POST /checkout/complete: Complete a checkout (workflow engine or fallback)
    GET /orders: List orders from the relational store, newest first
    GET /orders/{order_id}: Get an order record from the ledger
    PATCH /orders/{order_id}/status: Change an order's status in both stores
    GET /reconciliation: Compare the ledger with the relational store

Attributes:
    app (FastAPI): The application built from environment settings
"""
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import pydantic
from fastapi import Body, FastAPI, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from . import schemas
from .checkout import complete_checkout
from .clients.workflow_client import WorkflowClient
from .config import Settings
from .coordinator import DualWriteCoordinator
from .crud import RelationalOrderStore
from .database import ConnectionManager
from .errors import (
    ConfigurationError,
    LedgerWriteError,
    TransientInfrastructureError,
    ValidationError,
)
from .ledger import LedgerWriter
from .reconcile import reconcile

logger = logging.getLogger(__name__)


def create_app(settings: Optional[Settings] = None, workflow: Optional[WorkflowClient] = None) -> FastAPI:
    """
    Build the application and its components.

    Args:
        settings: Service settings (read from the environment when omitted)
        workflow: Workflow engine client (built from settings when omitted)

    Returns:
        Configured FastAPI application
    """
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    manager = ConnectionManager(settings)
    ledger = LedgerWriter(settings.ledger_path)
    store = RelationalOrderStore(manager)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        manager.close()

    app = FastAPI(title="order-capture-service", lifespan=lifespan)
    app.state.settings = settings
    app.state.manager = manager
    app.state.ledger = ledger
    app.state.store = store
    app.state.coordinator = DualWriteCoordinator(
        ledger, store, manager, idempotency_ttl=settings.idempotency_ttl
    )
    app.state.workflow = workflow or WorkflowClient(
        settings.workflow_engine_url,
        publishable_key=settings.workflow_publishable_key,
        timeout=settings.workflow_timeout,
    )
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    @app.get("/healthz", response_model=dict)
    def health(request: Request):
        """
        Health check endpoint for the order capture service.

        The service stays healthy while the relational store is down, since
        orders are still captured in the ledger.

        Returns:
            dict: status plus the relational connection status
        """
        manager: ConnectionManager = request.app.state.manager
        body = {"status": "healthy", "database": manager.status.value}
        if manager.last_error is not None:
            body["database_error"] = str(manager.last_error)
        return body

    @app.post("/orders", response_model=schemas.PersistResult, status_code=status.HTTP_201_CREATED)
    async def create_order(request: Request, payload: Dict[str, Any] = Body(...)):
        """
        Capture an order.

        The ledger write is required; a relational failure is reported in
        relational_ok and on the order timeline, not as an HTTP error.

        Raises:
            HTTPException: 400 if the payload is invalid, 500 if the ledger write failed
        """
        coordinator: DualWriteCoordinator = request.app.state.coordinator
        try:
            return await coordinator.persist_order(payload)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LedgerWriteError as e:
            logger.error(f"Order capture failed: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to record order: {e}")

    @app.post("/checkout/complete", response_model=schemas.CheckoutResult)
    async def checkout_complete(request: Request, payload: Dict[str, Any] = Body(...)):
        """
        Complete a checkout and record the resulting order.

        Raises:
            HTTPException: 400 if the payload is invalid, 500 if the ledger write failed
        """
        try:
            checkout = schemas.CheckoutPayload.model_validate(payload)
        except pydantic.ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid checkout payload: {e}")

        try:
            return await complete_checkout(
                checkout, request.app.state.workflow, request.app.state.coordinator
            )
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except LedgerWriteError as e:
            logger.error(f"Checkout completion failed: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to record order: {e}")

    @app.get("/orders", response_model=List[schemas.StoredOrder])
    async def list_orders(request: Request, limit: int = 100):
        """
        List orders from the relational store, newest first.

        Args:
            limit: Maximum number of records to return (default: 100)

        Raises:
            HTTPException: 503 if the relational store is unavailable
        """
        store: RelationalOrderStore = request.app.state.store
        try:
            return await store.list_orders(limit=limit)
        except (ConfigurationError, TransientInfrastructureError) as e:
            raise HTTPException(status_code=503, detail=f"Relational store unavailable: {e}")

    @app.get("/orders/{order_id}", response_model=schemas.Order)
    async def get_order(request: Request, order_id: str):
        """
        Get an order record from the ledger.

        Raises:
            HTTPException: 404 if the order is not in the ledger, 500 if the ledger is unreadable
        """
        ledger: LedgerWriter = request.app.state.ledger
        try:
            order = await run_in_threadpool(ledger.get, order_id)
        except LedgerWriteError as e:
            raise HTTPException(status_code=500, detail=str(e))
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return order

    @app.patch("/orders/{order_id}/status", response_model=schemas.PersistResult)
    async def update_order_status(request: Request, order_id: str, payload: Dict[str, Any] = Body(...)):
        """
        Change an order's status.

        Raises:
            HTTPException: 400 if the status is invalid, 404 if the order is not
                in the ledger, 500 if the ledger write failed
        """
        try:
            update = schemas.StatusUpdate.model_validate(payload)
        except pydantic.ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid status update: {e}")

        coordinator: DualWriteCoordinator = request.app.state.coordinator
        try:
            result = await coordinator.update_status(order_id, update.status, update.detail)
        except LedgerWriteError as e:
            logger.error(f"Status update for order {order_id} failed: {e}")
            raise HTTPException(status_code=500, detail=f"Failed to update order: {e}")
        if result is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return result

    @app.get("/reconciliation")
    async def get_reconciliation(request: Request):
        """
        Compare the ledger with the relational store. Read-only.

        Returns:
            dict: The reconciliation report plus its summary line

        Raises:
            HTTPException: 503 if the relational store is unavailable, 500 if the ledger is unreadable
        """
        try:
            report = await reconcile(request.app.state.ledger, request.app.state.store)
        except (ConfigurationError, TransientInfrastructureError) as e:
            raise HTTPException(status_code=503, detail=f"Relational store unavailable: {e}")
        except LedgerWriteError as e:
            raise HTTPException(status_code=500, detail=str(e))
        return {**report.model_dump(mode="json"), "summary": report.summary()}


app = create_app()
