"""Inventory store: per-product stock and reservation counters.

Each product has one ``InventoryRecord`` holding ``stock`` (units owned)
and ``reserved`` (units held by in-flight or confirmed orders). A
reservation ledger entry per order records exactly what that order holds,
which makes ``release`` idempotent.

Invariant: ``0 <= reserved <= stock`` for every product at all times.

Writes to a product's counters happen only under that product's lock, and
a multi-product reservation takes every product lock (in sorted order)
before re-checking availability, so two concurrent reservations can never
both see the same stale ``available`` and oversell. The counters and the
ledger entry are written with one ``put_many``, so a failed write leaves
neither behind. ``validate`` reads without locks and is advisory only;
``reserve`` is the authority.

Store layout:
    ``inventory:<productId>``  -> InventoryRecord
    ``reservation:<orderId>``  -> {"orderId", "status": "held"|"released", "lines": [...]}
"""

import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Iterable, Optional

from ...errors import ReservationConflictError
from ...observability import NullSink, ObservabilitySink
from ...store import KeyValueStore

PRODUCT_PREFIX = "inventory:"
RESERVATION_PREFIX = "reservation:"

HELD = "held"
RELEASED = "released"


def _product_key(product_id: str) -> str:
    return f"{PRODUCT_PREFIX}{product_id}"


def _reservation_key(order_id: str) -> str:
    return f"{RESERVATION_PREFIX}{order_id}"


@dataclass
class InventoryRecord:
    """Stock counters for one product.

    Attributes:
        product_id: Product identifier (e.g. ``laptop-001``).
        name: Display name used by the catalog listing.
        unit_price: Catalog price.
        stock: Total units owned.
        reserved: Units held by orders.
    """

    product_id: str
    name: str = ""
    unit_price: float = 0.0
    stock: int = 0
    reserved: int = 0

    @property
    def available(self) -> int:
        return self.stock - self.reserved

    def to_dict(self) -> dict:
        return asdict(self)

    def to_public(self) -> dict:
        return {
            "productId": self.product_id,
            "name": self.name,
            "unitPrice": self.unit_price,
            "stock": self.stock,
            "reserved": self.reserved,
            "available": self.available,
        }


@dataclass(frozen=True)
class ItemAvailability:
    product_id: str
    requested: int
    available: int
    valid: bool

    def to_public(self) -> dict:
        return {"productId": self.product_id, "requested": self.requested, "available": self.available, "valid": self.valid}


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a read-only availability check; ``valid`` is the AND of all items."""

    valid: bool
    results: list[ItemAvailability] = field(default_factory=list)


@dataclass(frozen=True)
class ReservationResult:
    """Units held for an order.

    Attributes:
        order_id: Order owning the reservation.
        lines: ``(product_id, quantity)`` pairs actually held.
        replayed: True when the reservation already existed and nothing was
            incremented by this call.
    """

    order_id: str
    lines: list[tuple[str, int]]
    replayed: bool = False


def aggregate(items: Iterable[tuple[str, int]]) -> "OrderedDict[str, int]":
    """Sum quantities of repeated product ids, keeping first-seen order."""
    wanted: "OrderedDict[str, int]" = OrderedDict()
    for product_id, quantity in items:
        wanted[product_id] = wanted.get(product_id, 0) + quantity
    return wanted


class InventoryStore:
    """Owner of inventory records and the reservation ledger."""

    def __init__(self, store: KeyValueStore, sink: Optional[ObservabilitySink] = None):
        self.store = store
        self.sink = sink or NullSink()

    async def seed(self, records: Iterable[InventoryRecord]) -> int:
        """Create records that do not exist yet; existing ones are left untouched.

        Returns:
            int: Number of records created.
        """
        created = 0
        for rec in records:
            async with self.store.lock(_product_key(rec.product_id)):
                if await self.store.get(_product_key(rec.product_id)) is not None:
                    continue
                if not 0 <= rec.reserved <= rec.stock:
                    raise ValueError(f"invalid counters for {rec.product_id}")
                await self._save(rec)
                created += 1
        return created

    async def get(self, product_id: str) -> Optional[InventoryRecord]:
        raw = await self.store.get(_product_key(product_id))
        return InventoryRecord(**raw) if raw else None

    async def list_products(self) -> list[InventoryRecord]:
        return [InventoryRecord(**raw) for _, raw in await self.store.scan(PRODUCT_PREFIX)]

    async def reservation(self, order_id: str) -> Optional[dict]:
        return await self.store.get(_reservation_key(order_id))

    async def validate(self, items: Iterable[tuple[str, int]]) -> ValidationResult:
        """Check that every requested quantity is currently available.

        Read-only and lock-free; the answer may be stale by the time a
        reservation is attempted.

        Args:
            items: ``(product_id, quantity)`` pairs.

        Returns:
            ValidationResult: Per-product availability and the overall verdict.
        """
        results = []
        for product_id, quantity in aggregate(items).items():
            rec = await self.get(product_id)
            available = rec.available if rec else 0
            results.append(ItemAvailability(product_id, quantity, available, rec is not None and available >= quantity))
        valid = bool(results) and all(r.valid for r in results)
        self.sink.event(
            "Inventory validation completed",
            items_validated=len(results),
            all_valid=valid,
            invalid_items=sum(1 for r in results if not r.valid),
        )
        return ValidationResult(valid=valid, results=results)

    async def reserve(self, order_id: str, items: Iterable[tuple[str, int]]) -> ReservationResult:
        """Atomically hold every requested quantity for ``order_id``, or nothing.

        Takes the per-product locks, re-checks availability under them and
        either commits every increment or none. Repeating the call for an
        order that already holds a reservation returns that reservation
        without incrementing again.

        Args:
            order_id: Idempotency key of the reservation.
            items: ``(product_id, quantity)`` pairs.

        Returns:
            ReservationResult: The lines held for the order.

        Raises:
            ReservationConflictError: When any product lacks stock (nothing
                is reserved in that case) or the order's reservation was
                already released.
        """
        wanted = aggregate(items)
        async with self.store.lock(_reservation_key(order_id)):
            entry = await self.store.get(_reservation_key(order_id))
            if entry is not None:
                if entry["status"] == RELEASED:
                    raise ReservationConflictError(
                        "Reservation already released for this order", order_id=order_id
                    )
                return ReservationResult(order_id, [tuple(line) for line in entry["lines"]], replayed=True)

            async with self.store.lock_many(_product_key(pid) for pid in wanted):
                records: dict[str, InventoryRecord] = {}
                shortfalls = []
                for product_id, quantity in wanted.items():
                    rec = await self.get(product_id)
                    available = rec.available if rec else 0
                    if rec is None or available < quantity:
                        shortfalls.append({"productId": product_id, "requested": quantity, "available": available})
                    else:
                        records[product_id] = rec
                if shortfalls:
                    self.sink.metric("errors_total", type="inventory_reservation", service="inventory")
                    self.sink.event(
                        "Inventory reservation failed", logging.WARNING, order_id=order_id, shortfalls=shortfalls
                    )
                    raise ReservationConflictError(
                        "Cannot reserve requested quantities", details=shortfalls, order_id=order_id
                    )

                for product_id, quantity in wanted.items():
                    records[product_id].reserved += quantity
                lines = list(wanted.items())
                # counters and ledger entry commit together or not at all
                await self._save_all(
                    records.values(),
                    {_reservation_key(order_id): {"orderId": order_id, "status": HELD, "lines": [list(line) for line in lines]}},
                )

        self.sink.event("Inventory reserved successfully", order_id=order_id, reservations=len(lines))
        return ReservationResult(order_id, lines)

    async def release(self, order_id: str) -> bool:
        """Return the units held by ``order_id`` to the available pool.

        Idempotent: the ledger entry is flipped to ``released`` in the same
        write as the decrements, so a second call decrements nothing. A
        release for an order that never reserved records the ``released``
        marker, so a late reservation for that order is refused.

        Returns:
            bool: True when counters were decremented by this call.
        """
        async with self.store.lock(_reservation_key(order_id)):
            entry = await self.store.get(_reservation_key(order_id))
            if entry is not None and entry["status"] == RELEASED:
                return False
            if entry is None:
                await self.store.put(_reservation_key(order_id), {"orderId": order_id, "status": RELEASED, "lines": []})
                return False

            lines = [tuple(line) for line in entry["lines"]]
            entry["status"] = RELEASED
            async with self.store.lock_many(_product_key(pid) for pid, _ in lines):
                records = []
                for product_id, quantity in lines:
                    rec = await self.get(product_id)
                    if rec is None:
                        continue
                    # never below zero even if a record was reset out of band
                    rec.reserved = max(0, rec.reserved - quantity)
                    records.append(rec)
                await self._save_all(records, {_reservation_key(order_id): entry})

        self.sink.event("Inventory released", order_id=order_id, lines=len(lines))
        return True

    async def _save(self, rec: InventoryRecord) -> None:
        await self._save_all([rec])

    async def _save_all(self, records: Iterable[InventoryRecord], extra: Optional[dict] = None) -> None:
        records = list(records)
        values = {_product_key(rec.product_id): rec.to_dict() for rec in records}
        values.update(extra or {})
        await self.store.put_many(values)
        for rec in records:
            self.sink.metric("inventory_available", rec.available, product_id=rec.product_id)
