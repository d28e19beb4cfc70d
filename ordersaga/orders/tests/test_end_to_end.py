"""The orders app talking to the inventory and payments apps over HTTP.

Each downstream app runs behind an ``httpx.ASGITransport`` handed to the
orders app's HTTP adapters, so requests cross the full HTTP stack of all
three apps without opening sockets.
"""

from dataclasses import replace

import httpx
import pytest
import pytest_asyncio

from ordersaga.orders.main import create_app as create_orders_app
from ordersaga.orders.providers import build_order_service
from ordersaga.services.inventory.main import create_app as create_inventory_app
from ordersaga.services.payments.main import create_app as create_payments_app
from ordersaga.services.payments.repo import FaultDecision


@pytest_asyncio.fixture
async def http_client(settings, store, sink, inventory, authorizer):
    http_settings = replace(settings, use_http_adapters=True)
    transports = {
        "inventory": httpx.ASGITransport(app=create_inventory_app(settings, inventory=inventory)),
        "payments": httpx.ASGITransport(app=create_payments_app(settings, payments=authorizer)),
    }
    components = await build_order_service(http_settings, store, sink, transports=transports)
    app = create_orders_app(http_settings, order_service=components.service)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://orders") as c:
        yield c
    await components.aclose()


def order(product_id, quantity, unit_price):
    return {
        "items": [{"productId": product_id, "quantity": quantity, "unitPrice": unit_price}],
        "shippingAddress": {"city": "Berlin"},
        "paymentMethod": "credit_card",
    }


@pytest.mark.asyncio
async def test_order_confirmed_over_http(http_client, inventory, authorizer):
    r = await http_client.post("/orders", json=order("laptop-001", 1, 1299), headers={"X-Request-ID": "req-e2e"})
    assert r.status_code == 201
    assert r.headers["X-Request-ID"] == "req-e2e"
    order_id = r.json()["orderId"]

    assert (await inventory.get("laptop-001")).reserved == 1
    payment = await authorizer.for_order(order_id)
    assert payment.status.value == "authorized"
    assert (await http_client.get(f"/orders/{order_id}")).json()["paymentId"] == payment.payment_id


@pytest.mark.asyncio
async def test_insufficient_stock_over_http(http_client, inventory, faults):
    r = await http_client.post("/orders", json=order("watch-001", 999, 399))
    assert r.status_code == 400
    assert r.json()["code"] == "INSUFFICIENT_INVENTORY"
    assert faults.calls == []
    assert (await inventory.get("watch-001")).reserved == 0


@pytest.mark.asyncio
async def test_decline_over_http_releases(http_client, inventory, faults):
    faults.default = FaultDecision(decline=True)
    r = await http_client.post("/orders", json=order("tablet-001", 1, 599))
    assert r.status_code == 402
    assert (await inventory.get("tablet-001")).reserved == 0
