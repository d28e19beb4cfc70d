"""HTTP adapter clients with circuit breakers and correlation headers.

This module implements concrete HTTP clients for the domain ports using
``httpx.AsyncClient``. It adds:

- Request correlation: forwards ``X-Request-ID``, ``X-User-ID`` and
  ``X-Order-ID`` from the context variables set by the gateway middleware.
- Circuit breaker per downstream service (inventory, payments) to avoid
  hammering unhealthy dependencies, with HALF_OPEN probing after a timeout.
- Status mapping into the saga's error taxonomy. Transport errors and 5xx
  become the service's unavailable error, which the orchestrator retries
  within the step budget; business answers (409 conflict, 402 decline)
  are returned or raised as such and do not count against the breaker.

Each adapter performs a single attempt per call. Retries and the overall
timeout belong to the orchestrator.
"""

import threading
import time
from typing import List, Optional

import httpx

from ..errors import (
    IdempotencyConflictError,
    InternalError,
    InventoryServiceUnavailableError,
    PaymentServiceUnavailableError,
    ReservationConflictError,
)
from ..gateway.middleware import correlation_headers
from .domain import InventoryPort, PaymentReceipt, PaymentsPort, Reservation, StockCheck

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitOpenError(RuntimeError):
    """Raised by ``CircuitBreaker.before_call`` when a call must fail fast."""


# ---------------- Circuit Breaker ---------------- #

class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED -> OPEN when consecutive failures reach ``fail_threshold``.
    - OPEN -> HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN -> CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the breaker again.
    """

    def __init__(self, name: str, fail_threshold: int = 5, reset_timeout: float = 30.0, clock=time.monotonic):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.RLock()
        self._failures = 0
        self._state = CLOSED
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._state == OPEN and (self._clock() - self._opened_at) >= self.reset_timeout:
                self._state = HALF_OPEN
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> str:
        """Admit a call or fail fast.

        Returns:
            str: The state at call time.

        Raises:
            CircuitOpenError: ``CIRCUIT_OPEN`` while open, or
                ``CIRCUIT_HALF_OPEN_BUSY`` when a probe is already running.
        """
        with self._lock:
            st = self.state
            if st == OPEN:
                raise CircuitOpenError("CIRCUIT_OPEN")
            if st == HALF_OPEN:
                if self._probe_in_flight:
                    raise CircuitOpenError("CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._state = CLOSED
            self._probe_in_flight = False

    def on_failure(self) -> None:
        with self._lock:
            self._failures += 1
            if self._state == HALF_OPEN or (self._failures >= self.fail_threshold and self._state != OPEN):
                self._state = OPEN
                self._opened_at = self._clock()
                self._probe_in_flight = False

    def on_finish(self) -> None:
        """Release the HALF_OPEN probe slot, whatever the outcome."""
        with self._lock:
            if self._state == HALF_OPEN:
                self._probe_in_flight = False


# ---------------- Helpers ---------------- #

def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Transport errors and 5xx answers are failures worth another attempt."""
    if exc is not None:
        return True
    return resp is not None and 500 <= resp.status_code < 600


def _json(resp: httpx.Response) -> dict:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class _HttpPort:
    """Shared plumbing: breaker check, headers, transport error mapping."""

    service = "downstream"
    unavailable = InternalError

    def __init__(self, client: httpx.AsyncClient, base_url: str, breaker: Optional[CircuitBreaker] = None):
        self.client = client
        self.base_url = base_url.rstrip("/")
        self.breaker = breaker or CircuitBreaker(self.service)

    async def _post(self, path: str, payload: dict, order_id: Optional[str] = None) -> httpx.Response:
        try:
            state = self.breaker.before_call()
        except CircuitOpenError as e:
            raise self.unavailable(f"{self.service} circuit is {e}", order_id=order_id) from e

        headers = correlation_headers(order_id)
        headers["X-Circuit-State"] = state
        try:
            resp = None
            try:
                resp = await self.client.post(f"{self.base_url}{path}", json=payload, headers=headers)
            except httpx.HTTPError as e:
                self.breaker.on_failure()
                raise self.unavailable(f"{self.service} request failed: {e.__class__.__name__}", order_id=order_id) from e
            if _should_retry(resp, None):
                self.breaker.on_failure()
                raise self.unavailable(f"{self.service} answered {resp.status_code}", order_id=order_id)
            self.breaker.on_success()
            return resp
        finally:
            self.breaker.on_finish()

    def _unexpected(self, resp: httpx.Response, order_id: Optional[str]) -> InternalError:
        return InternalError(f"{self.service} answered {resp.status_code}", order_id=order_id)


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(_HttpPort, InventoryPort):
    """HTTP client for the inventory service."""

    service = "inventory"
    unavailable = InventoryServiceUnavailableError

    async def validate(self, items: List[tuple[str, int]]) -> StockCheck:
        payload = {"items": [{"productId": pid, "quantity": qty} for pid, qty in items]}
        resp = await self._post("/inventory/validate", payload)
        if resp.status_code != 200:
            raise self._unexpected(resp, None)
        body = _json(resp)
        return StockCheck(bool(body.get("valid")), list(body.get("results", [])))

    async def reserve(self, order_id: str, items: List[tuple[str, int]]) -> Reservation:
        """Reserve stock for ``order_id``.

        Maps 200 to a ``Reservation`` and 409 to ``ReservationConflictError``
        carrying the service's shortfall details.
        """
        payload = {"orderId": order_id, "items": [{"productId": pid, "quantity": qty} for pid, qty in items]}
        resp = await self._post("/inventory/reserve", payload, order_id)
        if resp.status_code == 409:
            body = _json(resp)
            raise ReservationConflictError(
                "Cannot reserve requested quantities", details=body.get("details"), order_id=order_id
            )
        if resp.status_code != 200:
            raise self._unexpected(resp, order_id)
        lines = [(r["productId"], int(r["quantity"])) for r in _json(resp).get("reservations", [])]
        return Reservation(order_id, lines)

    async def release(self, order_id: str) -> None:
        resp = await self._post("/inventory/release", {"orderId": order_id}, order_id)
        if resp.status_code != 200:
            raise self._unexpected(resp, order_id)


# ---------------- Payments Adapter ---------------- #

class HttpPaymentsClient(_HttpPort, PaymentsPort):
    """HTTP client for the payments service.

    The order id is the payments service's idempotency key, so repeating
    ``authorize`` after a lost response returns the original outcome.
    """

    service = "payments"
    unavailable = PaymentServiceUnavailableError

    async def authorize(self, order_id: str, amount: float, method: str, user_id: str) -> PaymentReceipt:
        """Authorize a payment.

        Business mappings:
        - 200 -> authorized receipt
        - 402 -> declined receipt (not a breaker failure)
        - 409 -> ``IdempotencyConflictError``
        """
        payload = {"orderId": order_id, "amount": amount, "paymentMethod": method, "userId": user_id}
        resp = await self._post("/payments/process", payload, order_id)
        body = _json(resp)
        if resp.status_code == 200:
            return PaymentReceipt(body.get("paymentId"), body.get("status", "authorized"))
        if resp.status_code == 402:
            return PaymentReceipt(body.get("paymentId"), "declined")
        if resp.status_code == 409:
            raise IdempotencyConflictError(body.get("details") or "payment terms differ", order_id=order_id)
        raise self._unexpected(resp, order_id)

    async def refund(self, order_id: str, payment_id: Optional[str] = None) -> None:
        """Refund by payment id, or by order id when the authorization never answered."""
        if payment_id is None:
            resp = await self._post(f"/payments/orders/{order_id}/refund", {}, order_id)
        else:
            resp = await self._post(f"/payments/{payment_id}/refund", {"orderId": order_id}, order_id)
        if resp.status_code != 200:
            raise self._unexpected(resp, order_id)
