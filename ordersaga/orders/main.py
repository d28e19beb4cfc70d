"""Orders API built with FastAPI.

The orders app is the saga orchestrator's HTTP surface: it places orders
and serves the order ledger. Inventory and payments are reached either
in-process or over HTTP depending on ``USE_HTTP_ADAPTERS``.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import Mapping, Optional

import httpx
from fastapi import FastAPI

from ..config import Settings
from ..gateway.logging_filters import get_logger
from ..gateway.middleware import install_request_context
from ..monitoring.api import build_monitoring_router
from ..observability import PrometheusMetrics, TelemetrySink
from ..store import KeyValueStore, open_store
from .domain import OrderService
from .idempotency import IdempotencyStore
from .providers import build_order_service
from .repository import OrderLedger
from .views import router


def create_app(
    settings: Optional[Settings] = None,
    order_service: Optional[OrderService] = None,
    store: Optional[KeyValueStore] = None,
    transports: Optional[Mapping[str, httpx.AsyncBaseTransport]] = None,
) -> FastAPI:
    """Build the orders app.

    Args:
        settings: Settings to use; read from the environment when omitted.
        order_service: Pre-built service. Its ledger is used for reads, so it
            must be an ``OrderLedger``.
        store: Store for the ledger and idempotency records. When omitted
            the app opens one from ``settings.store_url`` on start-up.
        transports: Transports handed to the HTTP adapters (tests).
    """
    settings = settings or Settings.from_env(service_name="order-service")
    logger = get_logger("ordersaga.orders", settings.service_name, settings.log_level)
    metrics = PrometheusMetrics()
    sink = TelemetrySink(logger, metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.store is None
        components = None
        if owned:
            app.state.store = await open_store(settings.store_url)
            app.state.idempotency = IdempotencyStore(app.state.store)
        if app.state.order_service is None:
            components = await build_order_service(settings, app.state.store, sink, transports=transports)
            app.state.order_service = components.service
            app.state.ledger = components.ledger
        logger.info(
            "Order service started",
            extra={"service": settings.service_name, "http_adapters": settings.use_http_adapters},
        )
        try:
            yield
        finally:
            # let running sagas reach a terminal status before resources go away
            if app.state.sagas:
                await asyncio.gather(*app.state.sagas, return_exceptions=True)
            if components is not None:
                await components.aclose()
            if owned:
                await app.state.store.close()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.logger = logger
    app.state.metrics = metrics
    app.state.sink = sink
    app.state.sagas = set()
    app.state.order_service = order_service
    app.state.ledger = order_service.ledger if order_service else None
    if store is None and order_service is not None and isinstance(order_service.ledger, OrderLedger):
        store = order_service.ledger.store
    app.state.store = store
    app.state.idempotency = IdempotencyStore(store) if store is not None else None
    install_request_context(app, logger, settings.api_max_bytes)
    app.include_router(build_monitoring_router(settings.service_name))
    app.include_router(router)
    return app
