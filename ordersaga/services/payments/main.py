"""Payments service API built with FastAPI.

This module exposes endpoints to authorize a payment for an order, look a
payment up and refund it. Requests are validated with Pydantic models;
idempotency and the ledger live in ``repo.PaymentAuthorizer``.

The order id in the request body is the idempotency key: retrying
``/payments/process`` for the same order returns the stored outcome with
the same ``paymentId`` and never charges twice.
"""

import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from ...config import Settings
from ...errors import IdempotencyConflictError, PaymentServiceUnavailableError
from ...gateway.logging_filters import get_logger
from ...gateway.middleware import install_request_context
from ...monitoring.api import build_monitoring_router
from ...observability import PrometheusMetrics, TelemetrySink
from ...store import open_store
from .repo import PaymentAuthorizer, PaymentStatus, RandomFaults


class ProcessRequest(BaseModel):
    """Request body for the process endpoint.

    Attributes:
        order_id: Order to pay for; idempotency key.
        amount: Positive amount to authorize.
        payment_method: Payment method label.
        user_id: Paying user.
    """

    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1, max_length=128)
    amount: float = Field(gt=0)
    payment_method: str = Field(alias="paymentMethod", min_length=1, max_length=64)
    user_id: str = Field(default="anonymous", alias="userId", max_length=128)


class RefundRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    order_id: str = Field(alias="orderId", min_length=1, max_length=128)


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


router = APIRouter()


@router.post("/payments/process")
async def process(req: ProcessRequest, request: Request):
    """Authorize a payment.

    Returns:
        - 200 with ``{paymentId, status: "authorized", processingTime}``.
        - 402 with ``{paymentId, status: "declined", error, processingTime}``.
        - 409 when the order already has a payment with different terms or
          was voided by a refund.
        - 503 when the simulated gateway is unavailable.
    """
    started = time.perf_counter()
    try:
        payment = await request.app.state.payments.authorize(
            req.order_id, req.amount, req.payment_method, req.user_id
        )
    except (IdempotencyConflictError, PaymentServiceUnavailableError) as e:
        body = e.to_dict()
        body["processingTime"] = _elapsed_ms(started)
        return JSONResponse(body, status_code=e.status_code)

    body = {"paymentId": payment.payment_id, "status": payment.status.value, "processingTime": _elapsed_ms(started)}
    if payment.status is PaymentStatus.DECLINED:
        body["error"] = "Payment declined"
        body["details"] = payment.reason
        return JSONResponse(body, status_code=402)
    return body


@router.get("/payments/{payment_id}")
async def get_payment(payment_id: str, request: Request):
    payment = await request.app.state.payments.get(payment_id)
    if payment is None:
        request.app.state.logger.warning("Payment not found", extra={"payment_id": payment_id})
        return JSONResponse({"error": "Payment not found"}, status_code=404)
    return payment.to_public()


@router.post("/payments/{payment_id}/refund")
async def refund(payment_id: str, req: RefundRequest, request: Request):
    """Refund the order's payment. Idempotent; declined payments stay declined."""
    authorizer = request.app.state.payments
    payment = await authorizer.for_order(req.order_id)
    if payment is None or payment.payment_id != payment_id:
        return JSONResponse({"error": "Payment not found"}, status_code=404)
    payment = await authorizer.refund(req.order_id)
    return {"paymentId": payment.payment_id, "orderId": payment.order_id, "status": payment.status.value}


@router.post("/payments/orders/{order_id}/refund")
async def refund_order(order_id: str, request: Request):
    """Refund whatever ``order_id`` holds, waiting for an authorization in flight.

    When the order has no payment the order is voided instead, so a late
    authorization for it is refused. Idempotent.
    """
    payment = await request.app.state.payments.refund(order_id)
    if payment is None:
        return {"paymentId": None, "orderId": order_id, "status": "voided"}
    return {"paymentId": payment.payment_id, "orderId": order_id, "status": payment.status.value}


def create_app(settings: Optional[Settings] = None, payments: Optional[PaymentAuthorizer] = None) -> FastAPI:
    """Build the payments app.

    Args:
        settings: Settings to use; read from the environment when omitted.
        payments: Pre-built authorizer. When omitted the app opens its own
            store and uses ``RandomFaults`` configured from settings.
    """
    settings = settings or Settings.from_env(service_name="payment-service")
    logger = get_logger("ordersaga.payments", settings.service_name, settings.log_level)
    metrics = PrometheusMetrics()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = app.state.payments is None
        if owned:
            store = await open_store(settings.store_url)
            app.state.store = store
            app.state.payments = PaymentAuthorizer(
                store,
                RandomFaults(
                    settings.payment_failure_rate,
                    settings.payment_min_latency,
                    settings.payment_max_latency,
                    settings.payment_fault_seed,
                ),
                TelemetrySink(logger, metrics),
            )
        logger.info("Payment service started", extra={"service": settings.service_name})
        try:
            yield
        finally:
            if owned:
                await app.state.store.close()

    app = FastAPI(title="Payments Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.logger = logger
    app.state.metrics = metrics
    app.state.payments = payments
    app.state.store = payments.store if payments else None
    install_request_context(app, logger, settings.api_max_bytes)
    app.include_router(build_monitoring_router(settings.service_name))
    app.include_router(router)
    return app
