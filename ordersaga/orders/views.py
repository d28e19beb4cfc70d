"""HTTP views for the orders app.

Views are kept intentionally small: they validate requests (via Pydantic),
map them to domain DTOs, delegate to the domain service and render the
outcome. Every response, success or failure, carries ``processingTime`` in
milliseconds.

Each saga runs in its own task, tracked on ``app.state.sagas``. The view
awaits it through ``asyncio.shield``: if the client disconnects, the saga
still reaches a terminal status, that status is recorded in the ledger and
the response is stored under the request's ``Idempotency-Key``.

Idempotency: when an ``Idempotency-Key`` header is provided, the first
request runs the saga and stores its response. Retries with the same
payload replay the stored response with ``Idempotent-Replay: true``; the
same key with a different payload, or while the first request is still
running, answers 409.
"""

import asyncio
import time

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError as SchemaError

from ..errors import IdempotencyConflictError, InternalError, OrderError, ValidationError
from .domain import OrderItem
from .schemas import CreateOrderDTO

IDEMPOTENCY_HEADER = "Idempotency-Key"

router = APIRouter()


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


def _error_body(error: OrderError, started: float) -> dict:
    body = error.to_dict()
    body["processingTime"] = _elapsed_ms(started)
    return body


def _schema_problems(e: SchemaError) -> list[dict]:
    return [{"field": ".".join(str(p) for p in err["loc"]), "problem": err["msg"]} for err in e.errors()]


async def _place(state, user_id: str, dto: CreateOrderDTO, rec, started: float) -> tuple[int, dict]:
    """Run the saga, render its outcome and store it under the idempotency key."""
    items = [OrderItem(i.product_id, i.quantity, i.unit_price) for i in dto.items]
    order_id = None
    try:
        result = await state.order_service.place_order(user_id, items, dto.shipping_address, dto.payment_method)
    except OrderError as e:
        status_code, body, order_id = e.status_code, _error_body(e, started), e.order_id
    except Exception:
        state.logger.exception("Unhandled error while placing order")
        error = InternalError()
        status_code, body = error.status_code, _error_body(error, started)
    else:
        order_id = result.order.order_id
        status_code = 201
        body = {
            "orderId": order_id,
            "status": result.order.status.value,
            "message": "Order placed successfully",
            "processingTime": _elapsed_ms(started),
        }

    if rec is not None:
        await state.idempotency.finalize(rec, status_code, body, order_id=order_id)
    return status_code, body


def _track(state, coro) -> asyncio.Task:
    task = asyncio.get_running_loop().create_task(coro)
    state.sagas.add(task)

    def _done(t: asyncio.Task) -> None:
        state.sagas.discard(t)
        # outcome is in the ledger even when nobody awaits the task anymore
        if not t.cancelled():
            t.exception()

    task.add_done_callback(_done)
    return task


@router.post("/orders")
async def create_order(request: Request):
    """Create a new order.

    Returns:
        - 201 with ``{orderId, status, message, processingTime}``.
        - 200/4xx/5xx replayed from the stored response for a repeated
          ``Idempotency-Key``.
        - 400 for malformed requests and insufficient inventory.
        - 402 when the payment is declined.
        - 409 on a reservation conflict or an idempotency key conflict.
        - 503 when inventory or payments are unavailable.
        - 500 when compensation failed or the order could not be recorded.
    """
    started = time.perf_counter()
    state = request.app.state
    logger = state.logger

    # 1) Pydantic validation
    try:
        raw = await request.json()
    except ValueError:
        return JSONResponse(_error_body(ValidationError("Request body must be valid JSON"), started), status_code=400)
    try:
        dto = CreateOrderDTO.model_validate(raw)
    except SchemaError as e:
        error = ValidationError("Invalid order items", details=_schema_problems(e))
        logger.warning("Order request rejected", extra={"error_code": error.code})
        return JSONResponse(_error_body(error, started), status_code=error.status_code)

    # 2) Idempotency get-or-create
    idem_key = request.headers.get(IDEMPOTENCY_HEADER)
    rec = None
    if idem_key:
        try:
            existing, rec = await state.idempotency.get_or_create(idem_key, raw)
        except IdempotencyConflictError as e:
            return JSONResponse(_error_body(e, started), status_code=e.status_code)
        if existing:
            resp = JSONResponse(rec.body, status_code=rec.status)
            resp.headers["Idempotent-Replay"] = "true"
            return resp

    # 3) Domain; the saga and the idempotent response outlive a dropped client
    task = _track(state, _place(state, request.state.user_id, dto, rec, started))
    status_code, body = await asyncio.shield(task)
    return JSONResponse(body, status_code=status_code)


@router.get("/orders/{order_id}")
async def retrieve_order(order_id: str, request: Request):
    order = await request.app.state.ledger.get(order_id)
    if order is None:
        request.app.state.logger.warning("Order not found", extra={"order_id": order_id})
        return JSONResponse({"error": "Order not found"}, status_code=404)
    request.app.state.logger.info("Order details retrieved", extra={"order_id": order_id, "status": order.status.value})
    return order.to_public()


@router.get("/users/{user_id}/orders")
async def user_orders(user_id: str, request: Request):
    orders = await request.app.state.ledger.for_user(user_id)
    request.app.state.logger.info("User orders retrieved", extra={"owner": user_id, "order_count": len(orders)})
    return {"orders": [o.to_public() for o in orders], "total": len(orders)}
