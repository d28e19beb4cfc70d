import pytest

from ordersaga.services.payments.repo import FaultDecision

ORDER = {
    "items": [{"productId": "headphones-001", "quantity": 2, "unitPrice": 249}],
    "shippingAddress": "221B Baker Street",
    "paymentMethod": "paypal",
}


@pytest.mark.asyncio
async def test_get_order_returns_ledger_record(client):
    created = (await client.post("/orders", json=ORDER, headers={"X-User-ID": "u-7"})).json()

    r = await client.get(f"/orders/{created['orderId']}")
    assert r.status_code == 200
    order = r.json()
    assert order["orderId"] == created["orderId"]
    assert order["userId"] == "u-7"
    assert order["status"] == "confirmed"
    assert order["totalAmount"] == 498
    assert order["items"] == [{"productId": "headphones-001", "quantity": 2, "unitPrice": 249}]
    assert order["paymentId"]


@pytest.mark.asyncio
async def test_failed_order_is_readable(client, faults):
    faults.default = FaultDecision(decline=True)
    created = (await client.post("/orders", json=ORDER)).json()

    order = (await client.get(f"/orders/{created['orderId']}")).json()
    assert order["status"] == "failed"
    assert order["userId"] == "anonymous"
    assert order["failure"]["code"] == "PAYMENT_DECLINED"


@pytest.mark.asyncio
async def test_unknown_order_404(client):
    r = await client.get("/orders/does-not-exist")
    assert r.status_code == 404
    assert r.json() == {"error": "Order not found"}


@pytest.mark.asyncio
async def test_user_orders(client):
    for _ in range(2):
        await client.post("/orders", json=ORDER, headers={"X-User-ID": "u-1"})
    await client.post("/orders", json=ORDER, headers={"X-User-ID": "u-2"})

    body = (await client.get("/users/u-1/orders")).json()
    assert body["total"] == 2
    assert {o["userId"] for o in body["orders"]} == {"u-1"}
    assert (await client.get("/users/nobody/orders")).json() == {"orders": [], "total": 0}
