"""Seed catalog loaded into the inventory store at start-up."""

from .repo import InventoryRecord, InventoryStore

DEFAULT_CATALOG = (
    InventoryRecord("laptop-001", "MacBook Pro", 1299, stock=10),
    InventoryRecord("phone-001", "iPhone 14", 999, stock=25),
    InventoryRecord("tablet-001", "iPad Air", 599, stock=15),
    InventoryRecord("watch-001", "Apple Watch", 399, stock=30),
    InventoryRecord("headphones-001", "AirPods Pro", 249, stock=50),
)


async def seed_inventory(inventory: InventoryStore, catalog=DEFAULT_CATALOG) -> int:
    """Load ``catalog`` into ``inventory``; already seeded products are kept as they are."""
    return await inventory.seed(InventoryRecord(**rec.to_dict()) for rec in catalog)
