"""Repository layer for persisting orders.

This module contains a small repository abstraction used by the
orchestrator to persist order records. It keeps a thin interface so the
domain layer is not coupled to a storage backend: orders are written as
JSON documents under ``order:<orderId>`` in a ``KeyValueStore``.
"""

from typing import Optional

from ..store import KeyValueStore
from .domain import Order

ORDER_PREFIX = "order:"


class OrderLedger:
    """Repository that persists ``Order`` domain objects in a key/value store.

    ``save`` overwrites the whole record; the orchestrator is the only
    writer for a given order id, so no lock is taken.
    """

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def save(self, order: Order) -> None:
        await self.store.put(f"{ORDER_PREFIX}{order.order_id}", order.to_dict())

    async def get(self, order_id: str) -> Optional[Order]:
        raw = await self.store.get(f"{ORDER_PREFIX}{order_id}")
        return Order.from_dict(raw) if raw else None

    async def for_user(self, user_id: str) -> list[Order]:
        """Orders placed by ``user_id``, oldest first."""
        orders = [Order.from_dict(raw) for _, raw in await self.store.scan(ORDER_PREFIX)]
        return sorted((o for o in orders if o.user_id == user_id), key=lambda o: o.created_at)
