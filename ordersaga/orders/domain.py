"""Domain models, ports and the order-placement saga.

This module contains the order entity and its status machine, protocol
definitions (ports) for inventory, payments and the order ledger, and the
domain service that orchestrates placing an order:

    validate -> reserve -> authorize payment -> finalize

with compensation (refund, release) when a step fails after an earlier one
took effect. The service does not know whether its ports are in-process or
remote; both adapters speak the same error taxonomy.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Collection, List, Optional, Protocol, Sequence, TypeVar

from ..errors import (
    CompensationFailedError,
    InsufficientInventoryError,
    InternalError,
    InventoryServiceUnavailableError,
    OrderError,
    PaymentDeclinedError,
    PaymentServiceUnavailableError,
    ServiceUnavailableError,
    ValidationError,
)
from ..observability import NullSink, ObservabilitySink

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle of an order.

    The saga moves an order forward along
    pending -> reserving -> paying -> confirmed; failures end in ``failed``
    directly or through ``compensating``. ``compensating-failed`` means a
    compensating action failed and the order needs manual reconciliation.
    """

    PENDING = "pending"
    RESERVING = "reserving"
    PAYING = "paying"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    COMPENSATING = "compensating"
    COMPENSATING_FAILED = "compensating-failed"


TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.RESERVING, OrderStatus.FAILED},
    OrderStatus.RESERVING: {OrderStatus.PAYING, OrderStatus.FAILED, OrderStatus.COMPENSATING},
    OrderStatus.PAYING: {OrderStatus.CONFIRMED, OrderStatus.COMPENSATING},
    OrderStatus.COMPENSATING: {OrderStatus.FAILED, OrderStatus.COMPENSATING_FAILED},
}

TERMINAL = frozenset({OrderStatus.CONFIRMED, OrderStatus.FAILED, OrderStatus.COMPENSATING_FAILED})


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class OrderItem:
    """A single line item in an order.

    Attributes:
        product_id: Product identifier.
        quantity: Number of units requested.
        unit_price: Price of one unit.
    """

    product_id: str
    quantity: int
    unit_price: float = 0.0

    def to_public(self) -> dict:
        return {"productId": self.product_id, "quantity": self.quantity, "unitPrice": self.unit_price}


@dataclass
class Order:
    """Container for order data.

    Attributes:
        order_id: Unique id generated at creation; the saga's idempotency key.
        user_id: Ordering user.
        items: Immutable line items.
        shipping_address: Free-form address as sent by the client.
        payment_method: Payment method label.
        status: Current ``OrderStatus``.
        payment_id: Payment attached on confirmation.
        created_at: ISO timestamp.
        updated_at: ISO timestamp of the last transition.
        failure: ``{error, code, details}`` for failed orders.
        total_amount: Sum of quantity x unit price, computed once.
    """

    order_id: str
    user_id: str
    items: Sequence[OrderItem]
    shipping_address: Any = None
    payment_method: str = ""
    status: OrderStatus = OrderStatus.PENDING
    payment_id: Optional[str] = None
    created_at: str = field(default_factory=_now)
    updated_at: Optional[str] = None
    failure: Optional[dict] = None
    total_amount: float = field(init=False)

    def __post_init__(self):
        self.items = tuple(self.items)
        object.__setattr__(self, "total_amount", round(sum(i.quantity * i.unit_price for i in self.items), 2))

    def __setattr__(self, name, value):
        if name == "total_amount" and "total_amount" in self.__dict__:
            raise AttributeError("total_amount is immutable once computed")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def transition(self, status: OrderStatus) -> None:
        """Move to ``status`` if the saga's path allows it.

        Raises:
            InternalError: On a backward or otherwise illegal transition,
                including any change to a terminal order.
        """
        if status not in TRANSITIONS.get(self.status, ()):
            raise InternalError(f"illegal transition {self.status.value} -> {status.value}", order_id=self.order_id)
        self.status = status
        self.updated_at = _now()

    def lines(self) -> List[tuple[str, int]]:
        return [(i.product_id, i.quantity) for i in self.items]

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "user_id": self.user_id,
            "items": [[i.product_id, i.quantity, i.unit_price] for i in self.items],
            "shipping_address": self.shipping_address,
            "payment_method": self.payment_method,
            "status": self.status.value,
            "payment_id": self.payment_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "failure": self.failure,
            "total_amount": self.total_amount,
        }

    @classmethod
    def from_dict(cls, raw: dict) -> "Order":
        return cls(
            order_id=raw["order_id"],
            user_id=raw["user_id"],
            items=[OrderItem(pid, qty, price) for pid, qty, price in raw["items"]],
            shipping_address=raw.get("shipping_address"),
            payment_method=raw.get("payment_method", ""),
            status=OrderStatus(raw["status"]),
            payment_id=raw.get("payment_id"),
            created_at=raw["created_at"],
            updated_at=raw.get("updated_at"),
            failure=raw.get("failure"),
        )

    def to_public(self) -> dict:
        return {
            "orderId": self.order_id,
            "userId": self.user_id,
            "items": [i.to_public() for i in self.items],
            "shippingAddress": self.shipping_address,
            "paymentMethod": self.payment_method,
            "totalAmount": self.total_amount,
            "status": self.status.value,
            "paymentId": self.payment_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "failure": self.failure,
        }


@dataclass(frozen=True)
class StockCheck:
    """Inventory's advisory answer: overall verdict plus per-product rows."""

    valid: bool
    results: List[dict] = field(default_factory=list)


@dataclass(frozen=True)
class Reservation:
    order_id: str
    lines: List[tuple[str, int]]


@dataclass(frozen=True)
class PaymentReceipt:
    payment_id: Optional[str]
    status: str

    @property
    def authorized(self) -> bool:
        return self.status == "authorized"


@dataclass(frozen=True)
class OrderResult:
    order: Order
    processing_time_ms: float


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing inventory operations used by the saga.

    Unavailability must surface as ``InventoryServiceUnavailableError`` and
    a lost reservation race as ``ReservationConflictError``.
    """

    async def validate(self, items: List[tuple[str, int]]) -> StockCheck: ...

    async def reserve(self, order_id: str, items: List[tuple[str, int]]) -> Reservation: ...

    async def release(self, order_id: str) -> None: ...


class PaymentsPort(Protocol):
    """Port describing payment operations used by the saga.

    ``authorize`` must be idempotent per order id. A decline is a receipt
    with status ``declined``, not an exception; unavailability surfaces as
    ``PaymentServiceUnavailableError``.
    ``refund`` without a payment id refunds whatever the order holds, waiting
    for an authorization still in flight, and voids the order when nothing
    was authorized.
    """

    async def authorize(self, order_id: str, amount: float, method: str, user_id: str) -> PaymentReceipt: ...

    async def refund(self, order_id: str, payment_id: Optional[str] = None) -> None: ...


class OrderLedgerPort(Protocol):
    async def save(self, order: Order) -> None: ...

    async def get(self, order_id: str) -> Optional[Order]: ...


# ---- Retry budgets ----
@dataclass(frozen=True)
class StepBudget:
    """Time and retry budget for one saga step.

    Attributes:
        timeout: Wall-clock budget for the step, retries included.
        retries: Retries after the first attempt.
        backoff_base: First backoff sleep, doubled per retry.
        backoff_cap: Upper bound for a single sleep.
    """

    timeout: float
    retries: int = 3
    backoff_base: float = 0.15
    backoff_cap: float = 0.5

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2 ** (attempt - 1)), self.backoff_cap)


@dataclass(frozen=True)
class SagaPolicy:
    inventory: StepBudget = StepBudget(timeout=3.0)
    payments: StepBudget = StepBudget(timeout=10.0)

    @classmethod
    def from_settings(cls, settings) -> "SagaPolicy":
        def budget(timeout: float) -> StepBudget:
            return StepBudget(timeout, settings.retry_max, settings.retry_backoff_base, settings.retry_max_sleep)

        return cls(inventory=budget(settings.inventory_timeout_secs), payments=budget(settings.payments_timeout_secs))


# ---- Domain service ----
class OrderService:
    """Domain service responsible for placing orders.

    Each ``place_order`` call is an independent saga instance keyed by a
    freshly generated order id, so distinct orders never contend on state
    owned here; all contention lives behind the ports.
    """

    def __init__(
        self,
        inventory: InventoryPort,
        payments: PaymentsPort,
        ledger: OrderLedgerPort,
        sink: Optional[ObservabilitySink] = None,
        policy: Optional[SagaPolicy] = None,
        catalog: Optional[Collection[str]] = None,
    ):
        """Initialize the service with required dependencies.

        Args:
            inventory: InventoryPort used to validate, reserve and release stock.
            payments: PaymentsPort used to authorize and refund payments.
            ledger: Where order records are written.
            sink: Telemetry sink.
            policy: Per-step timeout and retry budgets.
            catalog: Known product ids; when given, unknown products are
                rejected before any collaborator is called.
        """
        self.inventory = inventory
        self.payments = payments
        self.ledger = ledger
        self.sink = sink or NullSink()
        self.policy = policy or SagaPolicy()
        self.catalog = frozenset(catalog) if catalog is not None else None

    async def place_order(
        self, user_id: str, items: Sequence[OrderItem], shipping_address: Any, payment_method: str
    ) -> OrderResult:
        """Place an order: validate, reserve stock, authorize payment, confirm.

        The order is written to the ledger at creation and on every status
        transition, so callers can observe in-flight sagas. On failure,
        steps that already took effect are compensated before the error is
        raised and the order ends in ``failed`` or, if compensation itself
        failed, ``compensating-failed``.

        Args:
            user_id: Ordering user.
            items: Non-empty line items with positive quantities.
            shipping_address: Address as sent by the client.
            payment_method: Payment method label.

        Returns:
            OrderResult: The confirmed order and the saga's duration.

        Raises:
            ValidationError: Malformed request; nothing was called or stored.
            InsufficientInventoryError: Validation found a shortfall.
            ReservationConflictError: Lost a race between validate and reserve.
            PaymentDeclinedError: Payment declined; reservation released.
            InventoryServiceUnavailableError: Inventory did not answer in budget.
            PaymentServiceUnavailableError: Payments did not answer in budget;
                any late authorization refunded and the reservation released.
            CompensationFailedError: A compensating action failed.
            InternalError: The order could not be recorded.
        """
        try:
            self._check_request(items, payment_method)
        except ValidationError as e:
            self.sink.metric("errors_total", type=e.code.lower(), service="orders")
            self.sink.event("Order request rejected", logging.WARNING, error_code=e.code, details=e.details)
            raise
        started = time.perf_counter()
        order = Order(
            order_id=str(uuid.uuid4()),
            user_id=user_id,
            items=items,
            shipping_address=shipping_address,
            payment_method=payment_method,
        )
        self.sink.event(
            "Order creation started",
            order_id=order.order_id,
            item_count=len(order.items),
            total_amount=order.total_amount,
            payment_method=payment_method,
        )
        try:
            await self.ledger.save(order)
        except Exception as e:
            self.sink.event("Order could not be recorded", logging.ERROR, order_id=order.order_id, error=repr(e))
            error = InternalError("Order could not be recorded", order_id=order.order_id)
            self._finish(order, started, error)
            raise error from e

        held = False
        charged = False
        payment_id = None
        try:
            # 1) Validate (advisory, read-only)
            check = await self._inventory_step("validate", order, lambda: self.inventory.validate(order.lines()))
            if not check.valid:
                raise InsufficientInventoryError(
                    "Insufficient inventory", details=[r for r in check.results if not r.get("valid")],
                    order_id=order.order_id,
                )

            # 2) Reserve (authoritative, all or nothing)
            await self._advance(order, OrderStatus.RESERVING)
            try:
                await self._inventory_step("reserve", order, lambda: self.inventory.reserve(order.order_id, order.lines()))
            except ServiceUnavailableError:
                # the reservation may have committed before the failure surfaced
                held = True
                raise
            held = True

            # 3) Authorize payment
            await self._advance(order, OrderStatus.PAYING)
            try:
                receipt = await self._payments_step(
                    "authorize",
                    order,
                    lambda: self.payments.authorize(order.order_id, order.total_amount, order.payment_method, user_id),
                )
            except ServiceUnavailableError:
                # an authorization sent before the failure may still land
                charged = True
                raise
            if not receipt.authorized:
                raise PaymentDeclinedError("Payment declined", order_id=order.order_id)
            charged = True
            payment_id = receipt.payment_id

            # 4) Finalize
            order.payment_id = payment_id
            await self._advance(order, OrderStatus.CONFIRMED)
        except OrderError as e:
            error = await self._abort(order, e, held, charged, payment_id)
            self._finish(order, started, error)
            if error is e:
                raise
            raise error from e
        except Exception as e:
            cause = InternalError("Unexpected failure while placing order", order_id=order.order_id)
            self.sink.event("Saga crashed", logging.ERROR, order_id=order.order_id, error=repr(e))
            error = await self._abort(order, cause, held, charged, payment_id)
            self._finish(order, started, error)
            raise error from e

        result = OrderResult(order, self._elapsed_ms(started))
        self._finish(order, started, None)
        return result

    # ---- steps ----

    async def _inventory_step(self, name: str, order: Order, call: Callable[[], Awaitable[T]]) -> T:
        return await self._step(name, order, self.policy.inventory, InventoryServiceUnavailableError, call)

    async def _payments_step(self, name: str, order: Order, call: Callable[[], Awaitable[T]]) -> T:
        return await self._step(name, order, self.policy.payments, PaymentServiceUnavailableError, call)

    async def _step(self, name, order, budget: StepBudget, unavailable, call):
        """Run ``call`` with retries on unavailability, bounded by ``budget``.

        Only ``ServiceUnavailableError`` is retried; business outcomes
        (conflicts, declines) end the step at once. Exceeding the budget is
        reported as ``unavailable``, the same as an explicit failure.
        """
        attempts = 0

        async def attempt_loop():
            nonlocal attempts
            while True:
                attempts += 1
                try:
                    return await call()
                except ServiceUnavailableError as e:
                    if attempts > budget.retries:
                        raise
                    self.sink.event(
                        "Retrying saga step", logging.WARNING,
                        order_id=order.order_id, step=name, attempt=attempts, error_code=e.code,
                    )
                    await asyncio.sleep(budget.backoff(attempts))

        started = time.perf_counter()
        try:
            return await asyncio.wait_for(attempt_loop(), timeout=budget.timeout)
        except asyncio.TimeoutError as e:
            raise unavailable(f"{name} exceeded its {budget.timeout}s budget", order_id=order.order_id) from e
        except OrderError as e:
            if e.order_id is None:
                e.order_id = order.order_id
            raise
        except Exception as e:
            self.sink.event("Saga step crashed", logging.ERROR, order_id=order.order_id, step=name, error=repr(e))
            raise unavailable(f"{name} failed", order_id=order.order_id) from e
        finally:
            self.sink.event(
                "Saga step finished", logging.DEBUG,
                order_id=order.order_id, step=name, attempts=attempts, duration_ms=self._elapsed_ms(started),
            )

    async def _advance(self, order: Order, status: OrderStatus) -> None:
        """Transition and record; on a ledger failure the in-memory status is restored."""
        previous, previous_at = order.status, order.updated_at
        order.transition(status)
        try:
            await self.ledger.save(order)
        except Exception as e:
            order.status, order.updated_at = previous, previous_at
            raise InternalError("Order could not be recorded", order_id=order.order_id) from e

    async def _record_quietly(self, order: Order) -> None:
        try:
            await self.ledger.save(order)
        except Exception as e:
            self.sink.event(
                "Order status could not be recorded", logging.CRITICAL,
                order_id=order.order_id, status=order.status.value, error=repr(e),
            )

    # ---- failure handling ----

    async def _abort(
        self, order: Order, cause: OrderError, held: bool, charged: bool, payment_id: Optional[str]
    ) -> OrderError:
        """Compensate what took effect and move the order to a terminal status.

        ``charged`` means an authorization may exist; the refund then keys on
        the order id when no payment id came back.

        Returns:
            OrderError: ``cause`` when compensation succeeded (or was not
            needed), otherwise a ``CompensationFailedError``.
        """
        if cause.order_id is None:
            cause.order_id = order.order_id
        if not held and not charged:
            self._settle(order, OrderStatus.FAILED, cause)
            await self._record_quietly(order)
            return cause

        order.transition(OrderStatus.COMPENSATING)
        await self._record_quietly(order)
        self.sink.event("Compensating order", logging.WARNING, order_id=order.order_id, cause=cause.code)

        step = "refund"
        try:
            if charged:
                await self._payments_step("refund", order, lambda: self.payments.refund(order.order_id, payment_id))
                self.sink.metric("compensations_total", step="refund", outcome="ok")
            if held:
                step = "release"
                await self._inventory_step("release", order, lambda: self.inventory.release(order.order_id))
                self.sink.metric("compensations_total", step="release", outcome="ok")
        except OrderError as e:
            self.sink.metric("compensations_total", step=step, outcome="failed")
            error = CompensationFailedError(
                f"{step} failed while compensating {cause.code}",
                details={"cause": cause.code, "failedStep": step},
                order_id=order.order_id,
            )
            self._settle(order, OrderStatus.COMPENSATING_FAILED, error)
            await self._record_quietly(order)
            self.sink.event(
                "Compensation failed; manual reconciliation required", logging.CRITICAL,
                order_id=order.order_id, cause=cause.code, failed_step=step, error_code=e.code,
            )
            return error

        self._settle(order, OrderStatus.FAILED, cause)
        await self._record_quietly(order)
        return cause

    @staticmethod
    def _settle(order: Order, status: OrderStatus, error: OrderError) -> None:
        order.failure = {"error": error.summary, "code": error.code, "details": error.details or error.message}
        order.transition(status)

    def _finish(self, order: Order, started: float, error: Optional[OrderError]) -> None:
        duration_ms = self._elapsed_ms(started)
        outcome = "success" if error is None else "failed"
        self.sink.metric("orders_total", status=outcome, payment_method=order.payment_method or "unknown")
        self.sink.metric("checkout_duration_seconds", duration_ms / 1000.0, status=outcome)
        if error is None:
            self.sink.event(
                "Order placed successfully",
                order_id=order.order_id, payment_id=order.payment_id,
                status=order.status.value, processing_time_ms=duration_ms,
            )
            return
        level = logging.WARNING if error.status_code < 500 else logging.ERROR
        if isinstance(error, CompensationFailedError):
            level = logging.CRITICAL
        self.sink.metric("errors_total", type=error.code.lower(), service="orders")
        self.sink.event(
            "Order creation failed", level,
            order_id=order.order_id, status=order.status.value, error_code=error.code,
            details=error.message, processing_time_ms=duration_ms,
        )

    def _check_request(self, items: Sequence[OrderItem], payment_method: str) -> None:
        if not items:
            raise ValidationError("Order must contain at least one item")
        problems = []
        for idx, it in enumerate(items):
            if not isinstance(it.quantity, int) or isinstance(it.quantity, bool) or it.quantity <= 0:
                problems.append({"item": idx, "problem": "quantity must be a positive integer"})
            if it.unit_price < 0:
                problems.append({"item": idx, "problem": "unitPrice must not be negative"})
            if not it.product_id:
                problems.append({"item": idx, "problem": "productId is required"})
            elif self.catalog is not None and it.product_id not in self.catalog:
                problems.append({"item": idx, "problem": f"unknown product {it.product_id}"})
        if not payment_method:
            problems.append({"field": "paymentMethod", "problem": "paymentMethod is required"})
        if problems:
            raise ValidationError("Invalid order items", details=problems)

    @staticmethod
    def _elapsed_ms(started: float) -> float:
        return round((time.perf_counter() - started) * 1000, 2)
