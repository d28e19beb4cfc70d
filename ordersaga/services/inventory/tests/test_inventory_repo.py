"""Unit tests for the inventory store: validation, all-or-nothing
reservations, idempotent release and reservation tombstones."""

import asyncio

import pytest

from ordersaga.errors import ReservationConflictError
from ordersaga.services.inventory.repo import InventoryRecord, InventoryStore, aggregate
from ordersaga.services.inventory.seeder import seed_inventory
from ordersaga.store import MemoryStore


async def counters(inventory, product_id):
    rec = await inventory.get(product_id)
    return rec.stock, rec.reserved


@pytest.mark.asyncio
async def test_seed_never_overwrites(inventory):
    await inventory.reserve("o-1", [("laptop-001", 2)])
    created = await inventory.seed([InventoryRecord("laptop-001", "MacBook Pro", 1299, stock=10)])
    assert created == 0
    assert await counters(inventory, "laptop-001") == (10, 2)


@pytest.mark.asyncio
async def test_list_products_returns_catalog(inventory):
    ids = {rec.product_id for rec in await inventory.list_products()}
    assert ids == {"laptop-001", "phone-001", "tablet-001", "watch-001", "headphones-001"}


@pytest.mark.asyncio
async def test_validate_reports_each_product(inventory):
    result = await inventory.validate([("laptop-001", 1), ("watch-001", 999), ("ghost-001", 1)])
    assert result.valid is False
    by_id = {r.product_id: r for r in result.results}
    assert by_id["laptop-001"].valid is True
    assert by_id["watch-001"].available == 30 and by_id["watch-001"].valid is False
    assert by_id["ghost-001"].available == 0 and by_id["ghost-001"].valid is False


@pytest.mark.asyncio
async def test_validate_empty_is_invalid(inventory):
    assert (await inventory.validate([])).valid is False


@pytest.mark.asyncio
async def test_reserve_increments_counters(inventory):
    result = await inventory.reserve("o-1", [("laptop-001", 1), ("phone-001", 3)])
    assert result.lines == [("laptop-001", 1), ("phone-001", 3)]
    assert await counters(inventory, "laptop-001") == (10, 1)
    assert await counters(inventory, "phone-001") == (25, 3)
    assert (await inventory.reservation("o-1"))["status"] == "held"


@pytest.mark.asyncio
async def test_reserve_is_all_or_nothing(inventory):
    with pytest.raises(ReservationConflictError) as e:
        await inventory.reserve("o-1", [("laptop-001", 1), ("watch-001", 31)])
    assert e.value.details == [{"productId": "watch-001", "requested": 31, "available": 30}]
    assert await counters(inventory, "laptop-001") == (10, 0)
    assert await counters(inventory, "watch-001") == (30, 0)
    assert await inventory.reservation("o-1") is None


@pytest.mark.asyncio
async def test_reserve_sums_duplicate_lines(inventory):
    assert aggregate([("a", 1), ("b", 2), ("a", 3)]) == {"a": 4, "b": 2}
    with pytest.raises(ReservationConflictError):
        await inventory.reserve("o-1", [("laptop-001", 6), ("laptop-001", 5)])
    await inventory.reserve("o-2", [("laptop-001", 6), ("laptop-001", 4)])
    assert await counters(inventory, "laptop-001") == (10, 10)


@pytest.mark.asyncio
async def test_reserve_twice_for_same_order_holds_once(inventory):
    await inventory.reserve("o-1", [("tablet-001", 2)])
    again = await inventory.reserve("o-1", [("tablet-001", 2)])
    assert again.replayed is True
    assert await counters(inventory, "tablet-001") == (15, 2)


@pytest.mark.asyncio
async def test_release_restores_and_is_idempotent(inventory):
    await inventory.reserve("o-1", [("tablet-001", 2)])
    assert await inventory.release("o-1") is True
    assert await inventory.release("o-1") is False
    assert await counters(inventory, "tablet-001") == (15, 0)


@pytest.mark.asyncio
async def test_release_without_reservation_blocks_late_reserve(inventory):
    assert await inventory.release("o-late") is False
    with pytest.raises(ReservationConflictError):
        await inventory.reserve("o-late", [("tablet-001", 1)])
    assert await counters(inventory, "tablet-001") == (15, 0)


@pytest.mark.asyncio
async def test_concurrent_reservations_for_last_unit(inventory):
    await inventory.reserve("o-0", [("laptop-001", 9)])

    results = await asyncio.gather(
        inventory.reserve("o-1", [("laptop-001", 1)]),
        inventory.reserve("o-2", [("laptop-001", 1)]),
        return_exceptions=True,
    )
    assert sum(1 for r in results if isinstance(r, ReservationConflictError)) == 1
    assert await counters(inventory, "laptop-001") == (10, 10)


@pytest.mark.asyncio
async def test_inventory_gauge_is_emitted(inventory, sink):
    await inventory.reserve("o-1", [("laptop-001", 1)])
    assert (9, {"product_id": "laptop-001"}) in sink.samples("inventory_available")


class FailingWriteStore(MemoryStore):
    """Store whose multi-key writes fail while ``failing`` is set."""

    failing = False

    async def put_many(self, values):
        if self.failing:
            raise RuntimeError("disk full")
        await super().put_many(values)


@pytest.mark.asyncio
async def test_failed_write_reserves_nothing():
    store = FailingWriteStore()
    inventory = InventoryStore(store)
    await seed_inventory(inventory)

    store.failing = True
    with pytest.raises(RuntimeError):
        await inventory.reserve("o-1", [("laptop-001", 1), ("phone-001", 1)])
    assert await counters(inventory, "laptop-001") == (10, 0)
    assert await counters(inventory, "phone-001") == (25, 0)
    assert await inventory.reservation("o-1") is None

    store.failing = False
    await inventory.reserve("o-1", [("laptop-001", 1), ("phone-001", 1)])
    store.failing = True
    with pytest.raises(RuntimeError):
        await inventory.release("o-1")
    assert (await inventory.reservation("o-1"))["status"] == "held"

    store.failing = False
    assert await inventory.release("o-1") is True
    assert await counters(inventory, "laptop-001") == (10, 0)
    assert await counters(inventory, "phone-001") == (25, 0)
