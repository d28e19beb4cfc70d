"""Start-up wiring of the apps, exercised with their lifespan running."""

from dataclasses import replace

import pytest
from fastapi.testclient import TestClient

from ordersaga.__main__ import APPS
from ordersaga.app import create_app as create_combined_app
from ordersaga.orders.main import create_app as create_orders_app
from ordersaga.services.inventory.main import create_app as create_inventory_app
from ordersaga.services.payments.main import create_app as create_payments_app

ORDER = {
    "items": [{"productId": "laptop-001", "quantity": 1, "unitPrice": 1299}],
    "shippingAddress": {"city": "Oslo"},
    "paymentMethod": "credit_card",
}


def test_combined_app_places_order_and_shares_inventory(settings):
    with TestClient(create_combined_app(settings)) as client:
        r = client.post("/orders", json=ORDER, headers={"X-User-ID": "u-1"})
        assert r.status_code == 201
        products = {p["productId"]: p for p in client.get("/inventory").json()["products"]}
        assert products["laptop-001"]["reserved"] == 1

        order = client.get(f"/orders/{r.json()['orderId']}").json()
        payment = client.get(f"/payments/{order['paymentId']}").json()
        assert payment["orderId"] == order["orderId"]
        assert client.get("/users/u-1/orders").json()["total"] == 1


def test_orders_app_builds_its_own_components(settings):
    with TestClient(create_orders_app(settings)) as client:
        assert client.get("/health").json()["status"] == "healthy"
        assert client.post("/orders", json=ORDER).status_code == 201


def test_orders_app_with_sqlite_store(settings, tmp_path):
    sqlite = replace(settings, store_url=f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    with TestClient(create_orders_app(sqlite)) as client:
        order_id = client.post("/orders", json=ORDER).json()["orderId"]
        assert client.get(f"/orders/{order_id}").json()["status"] == "confirmed"


def test_service_apps_seed_and_serve(settings):
    with TestClient(create_inventory_app(settings)) as client:
        assert client.get("/inventory").json()["total"] == 5
    with TestClient(create_payments_app(settings)) as client:
        r = client.post("/payments/process", json={"orderId": "o-1", "amount": 5, "paymentMethod": "card"})
        assert r.status_code == 200


def test_generated_request_id_and_payload_guard(settings):
    with TestClient(create_orders_app(replace(settings, api_max_bytes=16))) as client:
        r = client.get("/health")
        assert r.headers["X-Request-ID"]
        assert client.post("/orders", json=ORDER).status_code == 413


@pytest.mark.parametrize("name", ["orders", "inventory", "payments", "all"])
def test_entry_point_targets_are_factories(name):
    target, port = APPS[name]
    module, attr = target.split(":")
    assert attr == "create_app" and module.startswith("ordersaga.")
    assert port in (3000, 3001, 3002)
