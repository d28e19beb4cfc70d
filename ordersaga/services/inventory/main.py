"""Inventory service API built with FastAPI.

This module exposes endpoints to list the catalog, validate availability,
reserve stock for an order and release it again. Validation is performed
with Pydantic models, while the reservation state machine lives in
``repo.InventoryStore``.
"""

from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, constr

from ...config import Settings
from ...errors import ReservationConflictError
from ...gateway.logging_filters import get_logger
from ...gateway.middleware import install_request_context
from ...monitoring.api import build_monitoring_router
from ...observability import PrometheusMetrics, TelemetrySink
from ...store import open_store
from .repo import InventoryStore
from .seeder import seed_inventory

ProductId = constr(pattern=r"^[A-Za-z0-9_-]{1,64}$")


class Item(BaseModel):
    """An item to validate or reserve.

    Attributes:
        product_id: Product identifier (wire name ``productId``).
        quantity: Positive integer quantity.
    """

    model_config = ConfigDict(populate_by_name=True)

    product_id: ProductId = Field(alias="productId")
    quantity: int = Field(gt=0)


class ValidateRequest(BaseModel):
    items: List[Item]


class ReserveRequest(BaseModel):
    """Request body for the reserve endpoint.

    Attributes:
        order_id: Order the reservation belongs to; also the idempotency key.
        items: Items (product and quantity) to reserve.
    """

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1, max_length=128)
    items: List[Item] = Field(min_length=1)


class ReleaseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1, max_length=128)


def _pairs(items: List[Item]) -> list[tuple[str, int]]:
    return [(it.product_id, it.quantity) for it in items]


router = APIRouter()


@router.get("/inventory")
async def list_inventory(request: Request):
    """Catalog listing with live availability."""
    products = [rec.to_public() for rec in await request.app.state.inventory.list_products()]
    request.app.state.logger.info("Inventory retrieved", extra={"product_count": len(products)})
    return {"products": products, "total": len(products)}


@router.post("/inventory/validate")
async def validate(req: ValidateRequest, request: Request):
    """Read-only availability check for a batch of items."""
    result = await request.app.state.inventory.validate(_pairs(req.items))
    return {"valid": result.valid, "results": [r.to_public() for r in result.results]}


@router.post("/inventory/reserve")
async def reserve(req: ReserveRequest, request: Request):
    """Reserve stock for a batch of items, all or nothing.

    Returns:
        dict: ``{orderId, reservations, status}`` on success.

    A conflict (any item short of stock, or a reservation already released
    for this order) answers 409 and leaves every counter untouched.
    """
    try:
        result = await request.app.state.inventory.reserve(req.order_id, _pairs(req.items))
    except ReservationConflictError as e:
        return JSONResponse(e.to_dict(), status_code=e.status_code)
    return {
        "orderId": result.order_id,
        "reservations": [{"productId": pid, "quantity": qty, "reserved": True} for pid, qty in result.lines],
        "status": "reserved",
    }


@router.post("/inventory/release")
async def release(req: ReleaseRequest, request: Request):
    """Release whatever ``orderId`` holds. Always succeeds; repeated calls are no-ops."""
    await request.app.state.inventory.release(req.order_id)
    return {"orderId": req.order_id, "released": True}


def create_app(settings: Optional[Settings] = None, inventory: Optional[InventoryStore] = None) -> FastAPI:
    """Build the inventory app.

    Args:
        settings: Settings to use; read from the environment when omitted.
        inventory: Pre-built store. When omitted the app opens its own store
            from ``settings.store_url`` and seeds the default catalog on
            start-up.
    """
    settings = settings or Settings.from_env(service_name="inventory-service")
    logger = get_logger("ordersaga.inventory", settings.service_name, settings.log_level)
    metrics = PrometheusMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.inventory is None
        if owned:
            store = await open_store(settings.store_url)
            app.state.store = store
            app.state.inventory = InventoryStore(store, TelemetrySink(logger, metrics))
            created = await seed_inventory(app.state.inventory)
            logger.info("Inventory seeded", extra={"created": created})
        logger.info("Inventory service started", extra={"service": settings.service_name})
        try:
            yield
        finally:
            if owned:
                await app.state.store.close()

    app = FastAPI(title="Inventory Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.logger = logger
    app.state.metrics = metrics
    app.state.inventory = inventory
    app.state.store = inventory.store if inventory else None
    install_request_context(app, logger, settings.api_max_bytes)
    app.include_router(build_monitoring_router(settings.service_name))
    app.include_router(router)
    return app
