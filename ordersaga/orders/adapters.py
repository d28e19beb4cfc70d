"""In-process adapters for the orders domain ports.

These adapters implement ``InventoryPort`` and ``PaymentsPort`` by calling
``InventoryStore`` and ``PaymentAuthorizer`` directly, without any network
hop. They back the single-process deployment and most tests; the HTTP
adapters in ``http_adapters`` implement the same ports over the wire.
"""

from typing import List, Optional

from ..services.inventory.repo import InventoryStore
from ..services.payments.repo import PaymentAuthorizer
from .domain import InventoryPort, PaymentReceipt, PaymentsPort, Reservation, StockCheck


class LocalInventory(InventoryPort):
    """``InventoryPort`` over an in-process ``InventoryStore``."""

    def __init__(self, inventory: InventoryStore):
        self.inventory = inventory

    async def validate(self, items: List[tuple[str, int]]) -> StockCheck:
        result = await self.inventory.validate(items)
        return StockCheck(result.valid, [r.to_public() for r in result.results])

    async def reserve(self, order_id: str, items: List[tuple[str, int]]) -> Reservation:
        result = await self.inventory.reserve(order_id, items)
        return Reservation(result.order_id, list(result.lines))

    async def release(self, order_id: str) -> None:
        await self.inventory.release(order_id)


class LocalPayments(PaymentsPort):
    """``PaymentsPort`` over an in-process ``PaymentAuthorizer``."""

    def __init__(self, authorizer: PaymentAuthorizer):
        self.authorizer = authorizer

    async def authorize(self, order_id: str, amount: float, method: str, user_id: str) -> PaymentReceipt:
        payment = await self.authorizer.authorize(order_id, amount, method, user_id)
        return PaymentReceipt(payment.payment_id, payment.status.value)

    async def refund(self, order_id: str, payment_id: Optional[str] = None) -> None:
        await self.authorizer.refund(order_id)
