import httpx
import pytest_asyncio

from ordersaga.orders.main import create_app
from ordersaga.orders.providers import build_order_service


@pytest_asyncio.fixture
async def orders_app(settings, store, sink, inventory, authorizer):
    components = await build_order_service(settings, store, sink, inventory=inventory, authorizer=authorizer)
    return create_app(settings, order_service=components.service)


@pytest_asyncio.fixture
async def client(orders_app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=orders_app), base_url="http://orders") as c:
        yield c
