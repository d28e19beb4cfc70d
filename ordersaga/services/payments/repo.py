"""Payment ledger and idempotent authorization.

The ledger is keyed by order id: an order has at most one payment, and the
first authorization attempt decides it. Later attempts for the same order,
whether retries or duplicates, get the stored payment back without any side
effect being repeated.

The first attempt runs in a task owned by the authorizer. A caller that
times out or is cancelled does not abort it, and a retry arriving while it
is still running joins it instead of starting a second authorization.

Simulated gateway behavior (latency, declines, outages) comes from a
``FaultInjector``. ``RandomFaults`` is used by demo deployments;
``ScriptedFaults`` makes test outcomes deterministic.

Refunding an order that holds no payment voids it: the marker makes any
later authorization for that order fail with a conflict instead of charging
for an order that was already rolled back.

Store layout:
    ``payment:<orderId>``        -> Payment
    ``payment-id:<paymentId>``   -> {"orderId": ...}
    ``payment-void:<orderId>``   -> {"orderId", "voidedAt"}
"""

import asyncio
import logging
import random
import time
import uuid
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional, Protocol

from ...errors import IdempotencyConflictError, PaymentServiceUnavailableError
from ...observability import NullSink, ObservabilitySink, amount_range
from ...store import KeyValueStore

PAYMENT_PREFIX = "payment:"
PAYMENT_ID_PREFIX = "payment-id:"
VOID_PREFIX = "payment-void:"


def _payment_key(order_id: str) -> str:
    return f"{PAYMENT_PREFIX}{order_id}"


def _void_key(order_id: str) -> str:
    return f"{VOID_PREFIX}{order_id}"


def _payment_id_key(payment_id: str) -> str:
    return f"{PAYMENT_ID_PREFIX}{payment_id}"


class PaymentStatus(str, Enum):
    AUTHORIZED = "authorized"
    DECLINED = "declined"
    REFUNDED = "refunded"


@dataclass
class Payment:
    """One payment outcome per order.

    Attributes:
        payment_id: Public identifier.
        order_id: Order the payment belongs to (unique).
        amount: Amount authorized or declined.
        method: Payment method label (e.g. ``credit_card``).
        user_id: Paying user.
        status: ``authorized``, ``declined`` or ``refunded``.
        created_at: ISO timestamp of the authorization.
        processing_time_ms: Simulated gateway latency.
        reason: Decline reason, if any.
        refunded_at: ISO timestamp of the refund marker.
    """

    payment_id: str
    order_id: str
    amount: float
    method: str
    user_id: str
    status: PaymentStatus
    created_at: str
    processing_time_ms: float = 0.0
    reason: Optional[str] = None
    refunded_at: Optional[str] = None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["status"] = self.status.value
        return d

    @classmethod
    def from_dict(cls, raw: dict) -> "Payment":
        data = dict(raw)
        data["status"] = PaymentStatus(data["status"])
        return cls(**data)

    def to_public(self) -> dict:
        return {
            "paymentId": self.payment_id,
            "orderId": self.order_id,
            "amount": self.amount,
            "paymentMethod": self.method,
            "userId": self.user_id,
            "status": self.status.value,
            "createdAt": self.created_at,
            "processingTime": self.processing_time_ms,
            "reason": self.reason,
            "refundedAt": self.refunded_at,
        }


# ---- Fault injection ----

@dataclass(frozen=True)
class FaultDecision:
    """What the simulated gateway does for one authorization.

    Attributes:
        latency: Seconds to wait before answering.
        decline: Answer with a decline (recorded, idempotent).
        unavailable: Fail as an outage; nothing is recorded, so a retry
            performs a fresh attempt.
        reason: Decline reason.
    """

    latency: float = 0.0
    decline: bool = False
    unavailable: bool = False
    reason: str = "Insufficient funds or card declined"


class FaultInjector(Protocol):
    def decide(self, order_id: str, amount: float, method: str) -> FaultDecision: ...


class NoFaults:
    """Approve everything immediately."""

    def decide(self, order_id: str, amount: float, method: str) -> FaultDecision:
        return FaultDecision()


class RandomFaults:
    """Random latency within bounds and a fixed decline probability."""

    def __init__(self, failure_rate: float = 0.1, min_latency: float = 0.5, max_latency: float = 2.5,
                 seed: Optional[int] = None):
        if not 0.0 <= failure_rate <= 1.0:
            raise ValueError("failure_rate must be between 0 and 1")
        if min_latency < 0 or min_latency > max_latency:
            raise ValueError("latency bounds must satisfy 0 <= min <= max")
        self.failure_rate = failure_rate
        self.min_latency = min_latency
        self.max_latency = max_latency
        self._rng = random.Random(seed)

    def decide(self, order_id: str, amount: float, method: str) -> FaultDecision:
        latency = self._rng.uniform(self.min_latency, self.max_latency)
        return FaultDecision(latency=latency, decline=self._rng.random() < self.failure_rate)


class ScriptedFaults:
    """Replay a fixed sequence of decisions, then fall back to ``default``.

    Decisions can also be pinned per order id with ``per_order``.
    """

    def __init__(self, decisions: Iterable[FaultDecision] = (), default: Optional[FaultDecision] = None,
                 per_order: Optional[dict[str, FaultDecision]] = None):
        self._queue = deque(decisions)
        self.default = default or FaultDecision()
        self.per_order = dict(per_order or {})
        self.calls: list[str] = []

    def decide(self, order_id: str, amount: float, method: str) -> FaultDecision:
        self.calls.append(order_id)
        if order_id in self.per_order:
            return self.per_order[order_id]
        if self._queue:
            return self._queue.popleft()
        return self.default


# ---- Authorizer ----

class PaymentAuthorizer:
    """Owner of the payment ledger."""

    def __init__(self, store: KeyValueStore, faults: Optional[FaultInjector] = None,
                 sink: Optional[ObservabilitySink] = None):
        self.store = store
        self.faults = faults or NoFaults()
        self.sink = sink or NullSink()
        self._inflight: dict[str, asyncio.Task] = {}

    async def authorize(self, order_id: str, amount: float, method: str, user_id: str) -> Payment:
        """Authorize ``amount`` for ``order_id`` at most once.

        Args:
            order_id: Idempotency key; one payment per order.
            amount: Amount to authorize.
            method: Payment method label.
            user_id: Paying user.

        Returns:
            Payment: The stored outcome, ``authorized`` or ``declined``.

        Raises:
            IdempotencyConflictError: When a payment for the order exists
                with a different amount or method, or the order was voided.
            PaymentServiceUnavailableError: When the simulated gateway is
                down; nothing is recorded.
        """
        async with self.store.lock(_payment_key(order_id)):
            stored = await self.store.get(_payment_key(order_id))
            if stored is not None:
                return self._replay(Payment.from_dict(stored), amount, method)
            await self._refuse_if_voided(order_id)
            task = self._inflight.get(order_id)
            if task is None:
                task = asyncio.get_running_loop().create_task(self._perform(order_id, amount, method, user_id))
                self._inflight[order_id] = task
                task.add_done_callback(lambda t, oid=order_id: self._finished(oid, t))
        payment = await asyncio.shield(task)
        return self._replay(payment, amount, method)

    async def refund(self, order_id: str) -> Optional[Payment]:
        """Mark the order's authorized payment as refunded.

        Waits for an in-flight authorization first. Refunding a declined or
        already refunded payment is a no-op. An order without payment is
        voided, so an authorization arriving later is refused.

        Returns:
            Payment | None: The payment after the call, if one exists.
        """
        task = self._inflight.get(order_id)
        if task is not None:
            try:
                await asyncio.shield(task)
            except (PaymentServiceUnavailableError, IdempotencyConflictError):
                pass
        async with self.store.lock(_payment_key(order_id)):
            stored = await self.store.get(_payment_key(order_id))
            if stored is None:
                if await self.store.get(_void_key(order_id)) is None:
                    await self.store.put(
                        _void_key(order_id),
                        {"orderId": order_id, "voidedAt": datetime.now(timezone.utc).isoformat()},
                    )
                    self.sink.event("Payment voided before authorization", order_id=order_id)
                return None
            payment = Payment.from_dict(stored)
            if payment.status is not PaymentStatus.AUTHORIZED:
                return payment
            payment.status = PaymentStatus.REFUNDED
            payment.refunded_at = datetime.now(timezone.utc).isoformat()
            await self.store.put(_payment_key(order_id), payment.to_dict())

        self.sink.metric("payments_total", status="refunded", method=payment.method,
                         amount_range=amount_range(payment.amount))
        self.sink.event("Payment refunded", order_id=order_id, payment_id=payment.payment_id)
        return payment

    async def get(self, payment_id: str) -> Optional[Payment]:
        ref = await self.store.get(_payment_id_key(payment_id))
        if ref is None:
            return None
        return await self.for_order(ref["orderId"])

    async def for_order(self, order_id: str) -> Optional[Payment]:
        stored = await self.store.get(_payment_key(order_id))
        return Payment.from_dict(stored) if stored else None

    async def _perform(self, order_id: str, amount: float, method: str, user_id: str) -> Payment:
        decision = self.faults.decide(order_id, amount, method)
        started = time.perf_counter()
        if decision.latency:
            await asyncio.sleep(decision.latency)
        processing_ms = round((time.perf_counter() - started) * 1000, 2)

        if decision.unavailable:
            self.sink.metric("errors_total", type="payment_unavailable", service="payments")
            self.sink.event("Payment gateway unavailable", logging.ERROR, order_id=order_id)
            raise PaymentServiceUnavailableError("Payment gateway unavailable", order_id=order_id)

        payment = Payment(
            payment_id=str(uuid.uuid4()),
            order_id=order_id,
            amount=amount,
            method=method,
            user_id=user_id,
            status=PaymentStatus.DECLINED if decision.decline else PaymentStatus.AUTHORIZED,
            created_at=datetime.now(timezone.utc).isoformat(),
            processing_time_ms=processing_ms,
            reason=decision.reason if decision.decline else None,
        )
        async with self.store.lock(_payment_key(order_id)):
            # the order may have been voided while the gateway was answering
            await self._refuse_if_voided(order_id)
            await self.store.put(_payment_key(order_id), payment.to_dict())
            await self.store.put(_payment_id_key(payment.payment_id), {"orderId": order_id})

        self.sink.metric("payments_total", status=payment.status.value, method=method,
                         amount_range=amount_range(amount))
        if payment.status is PaymentStatus.DECLINED:
            self.sink.metric("errors_total", type="payment_failure", service="payments")
            self.sink.event("Payment processing failed", logging.WARNING, order_id=order_id,
                            payment_id=payment.payment_id, amount=amount, payment_method=method,
                            reason=payment.reason)
        else:
            self.sink.event("Payment processed successfully", order_id=order_id, payment_id=payment.payment_id,
                            amount=amount, payment_method=method, processing_time_ms=processing_ms)
        return payment

    async def _refuse_if_voided(self, order_id: str) -> None:
        if await self.store.get(_void_key(order_id)) is not None:
            self.sink.event("Authorization refused for voided order", logging.WARNING, order_id=order_id)
            raise IdempotencyConflictError("Payment for this order was voided", order_id=order_id)

    def _finished(self, order_id: str, task: asyncio.Task) -> None:
        self._inflight.pop(order_id, None)
        # retrieve the exception so an abandoned attempt is not reported as unhandled
        if not task.cancelled():
            task.exception()

    @staticmethod
    def _replay(payment: Payment, amount: float, method: str) -> Payment:
        if payment.amount != amount or payment.method != method:
            raise IdempotencyConflictError(
                "A payment with different terms already exists for this order", order_id=payment.order_id
            )
        return payment
