"""Single-process deployment: orders, inventory and payments in one app.

All three routers share one store, one metrics registry and one logger.
The orchestrator always uses the in-process adapters here, whatever
``USE_HTTP_ADAPTERS`` says.
"""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Optional

from fastapi import FastAPI

from .config import Settings
from .gateway.logging_filters import get_logger
from .gateway.middleware import install_request_context
from .monitoring.api import build_monitoring_router
from .observability import PrometheusMetrics, TelemetrySink
from .orders.idempotency import IdempotencyStore
from .orders.providers import build_order_service
from .orders.views import router as orders_router
from .services.inventory.main import router as inventory_router
from .services.inventory.repo import InventoryStore
from .services.inventory.seeder import seed_inventory
from .services.payments.main import router as payments_router
from .services.payments.repo import PaymentAuthorizer, RandomFaults
from .store import open_store


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = replace(settings or Settings.from_env(service_name="order-saga"), use_http_adapters=False)
    logger = get_logger("ordersaga", settings.service_name, settings.log_level)
    metrics = PrometheusMetrics()
    sink = TelemetrySink(logger, metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        store = await open_store(settings.store_url)
        inventory = InventoryStore(store, sink)
        created = await seed_inventory(inventory)
        authorizer = PaymentAuthorizer(
            store,
            RandomFaults(
                settings.payment_failure_rate,
                settings.payment_min_latency,
                settings.payment_max_latency,
                settings.payment_fault_seed,
            ),
            sink,
        )
        components = await build_order_service(settings, store, sink, inventory=inventory, authorizer=authorizer)
        app.state.store = store
        app.state.inventory = inventory
        app.state.payments = authorizer
        app.state.order_service = components.service
        app.state.ledger = components.ledger
        app.state.idempotency = IdempotencyStore(store)
        logger.info("Order saga started", extra={"service": settings.service_name, "seeded": created})
        try:
            yield
        finally:
            if app.state.sagas:
                await asyncio.gather(*app.state.sagas, return_exceptions=True)
            await store.close()

    app = FastAPI(title="Order Saga", lifespan=lifespan)
    app.state.settings = settings
    app.state.logger = logger
    app.state.metrics = metrics
    app.state.sagas = set()
    install_request_context(app, logger, settings.api_max_bytes)
    app.include_router(build_monitoring_router(settings.service_name))
    app.include_router(orders_router)
    app.include_router(inventory_router)
    app.include_router(payments_router)
    return app
