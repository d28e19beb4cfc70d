"""Error taxonomy shared by the orchestrator and the downstream services.

Every failure that can end a saga is an ``OrderError`` subclass. Each class
carries a short machine-readable ``code`` and the HTTP status it maps to, so
views can render any of them without a lookup table of their own.
"""

from typing import Any, Optional


class OrderError(Exception):
    """Base class for saga failures.

    Attributes:
        code: Stable error code returned to clients (e.g. ``PAYMENT_DECLINED``).
        status_code: HTTP status the error maps to.
        summary: Human readable one-line summary.
        details: Optional structured details safe to expose to clients.
        order_id: Order the failure belongs to, when one exists.
    """

    code = "ORDER_ERROR"
    status_code = 500
    summary = "Failed to place order"

    def __init__(self, message: str = "", details: Any = None, order_id: Optional[str] = None):
        super().__init__(message or self.summary)
        self.message = message or self.summary
        self.details = details
        self.order_id = order_id

    def to_dict(self) -> dict:
        """Client-facing representation (no stack traces, no internal ids)."""
        body = {"error": self.summary, "code": self.code, "details": self.details or self.message}
        if self.order_id:
            body["orderId"] = self.order_id
        return body


class ValidationError(OrderError):
    code = "VALIDATION_ERROR"
    status_code = 400
    summary = "Invalid order request"


class InsufficientInventoryError(OrderError):
    code = "INSUFFICIENT_INVENTORY"
    status_code = 400
    summary = "Insufficient inventory"


class ReservationConflictError(OrderError):
    """Stock could not be held after a positive validation (lost a race)."""

    code = "RESERVATION_CONFLICT"
    status_code = 409
    summary = "Inventory reservation conflict"


class PaymentDeclinedError(OrderError):
    code = "PAYMENT_DECLINED"
    status_code = 402
    summary = "Payment declined"


class IdempotencyConflictError(OrderError):
    """An idempotency key was reused with a different payload or terms."""

    code = "IDEMPOTENCY_CONFLICT"
    status_code = 409
    summary = "Idempotency key reused with a different payload"


class IdempotencyInProgressError(IdempotencyConflictError):
    """The first request carrying an idempotency key has not finished yet."""

    summary = "Request with this idempotency key is still in progress"


class ServiceUnavailableError(OrderError):
    """A downstream service did not answer in time. The only retryable kind."""

    code = "SERVICE_UNAVAILABLE"
    status_code = 503
    summary = "Service unavailable"


class InventoryServiceUnavailableError(ServiceUnavailableError):
    code = "INVENTORY_UNAVAILABLE"
    summary = "Inventory service unavailable"


class PaymentServiceUnavailableError(ServiceUnavailableError):
    code = "PAYMENT_UNAVAILABLE"
    summary = "Payment service unavailable"


class CompensationFailedError(OrderError):
    """A compensating action failed; the order needs manual reconciliation."""

    code = "COMPENSATION_FAILED"
    status_code = 500
    summary = "Order requires manual reconciliation"


class InternalError(OrderError):
    code = "INTERNAL_ERROR"
    status_code = 500
    summary = "Internal error"
