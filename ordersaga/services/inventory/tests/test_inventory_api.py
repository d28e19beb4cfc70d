from dataclasses import replace

import httpx
import pytest
import pytest_asyncio

from ordersaga.services.inventory.main import create_app


@pytest_asyncio.fixture
async def client(settings, inventory):
    app = create_app(settings, inventory=inventory)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://inventory") as c:
        yield c


@pytest.mark.asyncio
async def test_catalog_listing(client):
    r = await client.get("/inventory")
    assert r.status_code == 200
    body = r.json()
    assert body["total"] == 5
    laptop = next(p for p in body["products"] if p["productId"] == "laptop-001")
    assert laptop == {
        "productId": "laptop-001",
        "name": "MacBook Pro",
        "unitPrice": 1299,
        "stock": 10,
        "reserved": 0,
        "available": 10,
    }


@pytest.mark.asyncio
async def test_validate(client):
    r = await client.post("/inventory/validate", json={"items": [{"productId": "watch-001", "quantity": 999}]})
    assert r.status_code == 200
    assert r.json() == {
        "valid": False,
        "results": [{"productId": "watch-001", "requested": 999, "available": 30, "valid": False}],
    }


@pytest.mark.asyncio
async def test_reserve_then_release(client, inventory):
    r = await client.post(
        "/inventory/reserve", json={"orderId": "o-1", "items": [{"productId": "phone-001", "quantity": 2}]}
    )
    assert r.status_code == 200
    assert r.json() == {
        "orderId": "o-1",
        "reservations": [{"productId": "phone-001", "quantity": 2, "reserved": True}],
        "status": "reserved",
    }
    assert (await inventory.get("phone-001")).reserved == 2

    r = await client.post("/inventory/release", json={"orderId": "o-1"})
    assert r.json() == {"orderId": "o-1", "released": True}
    r = await client.post("/inventory/release", json={"orderId": "o-1"})
    assert r.status_code == 200
    assert (await inventory.get("phone-001")).reserved == 0


@pytest.mark.asyncio
async def test_reserve_conflict_is_409(client):
    r = await client.post(
        "/inventory/reserve", json={"orderId": "o-1", "items": [{"productId": "laptop-001", "quantity": 11}]}
    )
    assert r.status_code == 409
    body = r.json()
    assert body["code"] == "RESERVATION_CONFLICT"
    assert body["details"] == [{"productId": "laptop-001", "requested": 11, "available": 10}]


@pytest.mark.asyncio
async def test_reserve_rejects_non_positive_quantity(client):
    r = await client.post(
        "/inventory/reserve", json={"orderId": "o-1", "items": [{"productId": "laptop-001", "quantity": 0}]}
    )
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    r = await client.get("/inventory", headers={"X-Request-ID": "req-123"})
    assert r.headers["X-Request-ID"] == "req-123"


@pytest.mark.asyncio
async def test_health_and_metrics(client):
    r = await client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "inventory_available" in r.text


@pytest.mark.asyncio
async def test_oversized_body_is_rejected(settings, inventory):
    app = create_app(replace(settings, api_max_bytes=10), inventory=inventory)
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://inventory") as c:
        r = await c.post("/inventory/validate", json={"items": [{"productId": "laptop-001", "quantity": 1}]})
    assert r.status_code == 413
