"""Service provider helpers for wiring ``OrderService`` with ports.

``build_order_service`` returns a configured ``OrderService``. When
``settings.use_http_adapters`` is true it uses the HTTP adapter clients to
reach the inventory and payments services; otherwise it wires in-process
adapters over an ``InventoryStore`` and a ``PaymentAuthorizer`` sharing the
orders app's store, which is what tests and single-process deployments use.
"""

from dataclasses import dataclass, field
from typing import Mapping, Optional

import httpx

from ..config import Settings
from ..observability import ObservabilitySink
from ..services.inventory.repo import InventoryStore
from ..services.inventory.seeder import DEFAULT_CATALOG, seed_inventory
from ..services.payments.repo import PaymentAuthorizer, RandomFaults
from ..store import KeyValueStore
from .adapters import LocalInventory, LocalPayments
from .domain import OrderService, SagaPolicy
from .http_adapters import CircuitBreaker, HttpInventoryClient, HttpPaymentsClient
from .repository import OrderLedger


@dataclass
class OrderComponents:
    """Everything the orders app needs, plus the HTTP clients it must close."""

    service: OrderService
    ledger: OrderLedger
    clients: list = field(default_factory=list)

    async def aclose(self) -> None:
        for client in self.clients:
            await client.aclose()


def build_http_ports(
    settings: Settings, transports: Optional[Mapping[str, httpx.AsyncBaseTransport]] = None
) -> tuple[HttpInventoryClient, HttpPaymentsClient]:
    """HTTP adapters with one ``AsyncClient`` and one breaker per service.

    Args:
        settings: Base URLs, timeouts and breaker thresholds.
        transports: Optional ``{"inventory": ..., "payments": ...}`` transports
            (``httpx.ASGITransport`` or ``httpx.MockTransport`` in tests).
    """
    transports = transports or {}

    def breaker(name: str) -> CircuitBreaker:
        return CircuitBreaker(name, settings.circuit_fail_threshold, settings.circuit_reset_timeout)

    inventory = HttpInventoryClient(
        httpx.AsyncClient(
            timeout=settings.attempt_timeout(settings.inventory_timeout_secs), transport=transports.get("inventory")
        ),
        settings.inventory_base_url,
        breaker("inventory"),
    )
    payments = HttpPaymentsClient(
        httpx.AsyncClient(
            timeout=settings.attempt_timeout(settings.payments_timeout_secs), transport=transports.get("payments")
        ),
        settings.payments_base_url,
        breaker("payments"),
    )
    return inventory, payments


async def build_order_service(
    settings: Settings,
    store: KeyValueStore,
    sink: Optional[ObservabilitySink] = None,
    inventory: Optional[InventoryStore] = None,
    authorizer: Optional[PaymentAuthorizer] = None,
    transports: Optional[Mapping[str, httpx.AsyncBaseTransport]] = None,
) -> OrderComponents:
    """Return a configured ``OrderService`` and its ledger.

    Args:
        settings: Runtime settings; ``use_http_adapters`` picks the wiring.
        store: Store holding the order ledger (and, in-process, inventory
            and payments).
        sink: Telemetry sink shared by the service and in-process components.
        inventory: In-process inventory to use instead of a freshly seeded one.
        authorizer: In-process payment authorizer to use instead of one with
            ``RandomFaults`` from settings.
        transports: Transports for the HTTP adapters.

    Returns:
        OrderComponents: The service, its ledger and clients to close.
    """
    ledger = OrderLedger(store)
    policy = SagaPolicy.from_settings(settings)

    if settings.use_http_adapters:
        inventory_port, payments_port = build_http_ports(settings, transports)
        service = OrderService(
            inventory_port, payments_port, ledger, sink, policy,
            catalog=[rec.product_id for rec in DEFAULT_CATALOG],
        )
        return OrderComponents(service, ledger, [inventory_port.client, payments_port.client])

    if inventory is None:
        inventory = InventoryStore(store, sink)
        await seed_inventory(inventory)
    if authorizer is None:
        authorizer = PaymentAuthorizer(
            store,
            RandomFaults(
                settings.payment_failure_rate,
                settings.payment_min_latency,
                settings.payment_max_latency,
                settings.payment_fault_seed,
            ),
            sink,
        )
    catalog = [rec.product_id for rec in await inventory.list_products()]
    service = OrderService(LocalInventory(inventory), LocalPayments(authorizer), ledger, sink, policy, catalog=catalog)
    return OrderComponents(service, ledger)
