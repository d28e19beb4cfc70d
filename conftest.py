import logging

import pytest
import pytest_asyncio

from ordersaga.config import Settings
from ordersaga.services.inventory.repo import InventoryStore
from ordersaga.services.inventory.seeder import seed_inventory
from ordersaga.services.payments.repo import PaymentAuthorizer, ScriptedFaults
from ordersaga.store import MemoryStore


class RecordingSink:
    """Sink that keeps every event and metric sample for assertions."""

    def __init__(self):
        self.events = []
        self.metrics = []

    def event(self, name, level=logging.INFO, **attributes):
        self.events.append((name, level, attributes))

    def metric(self, name, value=1.0, **labels):
        self.metrics.append((name, value, labels))

    def names(self):
        return [name for name, _, _ in self.events]

    def levels(self, name):
        return [level for n, level, _ in self.events if n == name]

    def samples(self, name):
        return [(value, labels) for n, value, labels in self.metrics if n == name]


@pytest.fixture
def settings():
    # no backoff sleeps, in-process adapters
    return Settings(
        retry_backoff_base=0.0,
        retry_max_sleep=0.0,
        payment_min_latency=0.0,
        payment_max_latency=0.0,
        payment_failure_rate=0.0,
    )


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def store():
    return MemoryStore()


@pytest_asyncio.fixture
async def inventory(store, sink):
    inv = InventoryStore(store, sink)
    await seed_inventory(inv)
    return inv


@pytest.fixture
def faults():
    return ScriptedFaults()


@pytest.fixture
def authorizer(store, faults, sink):
    return PaymentAuthorizer(store, faults, sink)
