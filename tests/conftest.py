"""Shared fixtures: a fake application API that honours DegradedMode."""

import asyncio
import sys
import time
from pathlib import Path

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

# Ensure the project root is in sys.path for the flat modules
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from data_store import DataStore  # noqa: E402
from degraded_mode import DegradedMode  # noqa: E402
from event_sink import MemorySink  # noqa: E402
from workload_config import TrafficSettings  # noqa: E402

# 1 configured second == 10ms of wall clock
TIME_SCALE = 0.01


def build_app(degraded: DegradedMode, store: DataStore) -> web.Application:
    """CRUD endpoints shaped like the demo app's, reacting to degraded mode."""
    seen = []

    @web.middleware
    async def record_headers(request, handler):
        seen.append({"method": request.method, "path": request.path, "headers": dict(request.headers)})
        return await handler(request)

    async def guard(service):
        delay_ms = degraded.latency_penalty_ms(service)
        if delay_ms:
            await asyncio.sleep(delay_ms / 1000)
        if degraded.is_service_unavailable(service):
            raise web.HTTPServiceUnavailable(
                text='{"error": "service unavailable"}', content_type="application/json"
            )

    async def health(request):
        if degraded.flag("systemFailure"):
            return web.json_response({"status": "down"}, status=503)
        return web.json_response({"status": "ok", "degraded": degraded.active})

    async def list_products(request):
        await guard("products")
        return web.json_response(store.products())

    async def get_product(request):
        await guard("products")
        product = store.get_product(request.match_info["id"])
        if product is None:
            return web.json_response({"error": "Product not found"}, status=404)
        return web.json_response(product)

    async def update_product(request):
        await guard("products")
        body = await request.json()
        if "name" not in body or "price" not in body:
            return web.json_response({"error": "name and price are required"}, status=400)
        return web.json_response(body)

    async def list_orders(request):
        await guard("orders")
        return web.json_response(store.orders())

    async def get_order(request):
        await guard("orders")
        order = store.get_order(request.match_info["id"])
        if order is None:
            return web.json_response({"error": "Order not found"}, status=404)
        return web.json_response(order)

    async def create_order(request):
        await guard("orders")
        body = await request.json()
        if not body.get("items") or "customerName" not in body:
            return web.json_response({"error": "items and customerName are required"}, status=400)
        return web.json_response(store.add_order(body), status=201)

    async def list_reservations(request):
        await guard("reservations")
        return web.json_response(store.reservations())

    async def get_reservation(request):
        await guard("reservations")
        return web.json_response({"error": "Reservation not found"}, status=404)

    async def create_reservation(request):
        await guard("reservations")
        body = await request.json()
        if "customerName" not in body or "partySize" not in body:
            return web.json_response({"error": "customerName and partySize are required"}, status=400)
        return web.json_response(store.add_reservation(body), status=201)

    async def settings(request):
        return web.json_response({"restaurantName": "Demo Bistro", "timeUpdated": time.time()})

    app = web.Application(middlewares=[record_headers])
    app["seen"] = seen
    app.router.add_get("/api/health", health)
    app.router.add_get("/api/products", list_products)
    app.router.add_get("/api/products/{id}", get_product)
    app.router.add_put("/api/products/{id}", update_product)
    app.router.add_get("/api/orders", list_orders)
    app.router.add_get("/api/orders/{id}", get_order)
    app.router.add_post("/api/orders", create_order)
    app.router.add_get("/api/reservations", list_reservations)
    app.router.add_get("/api/reservations/{id}", get_reservation)
    app.router.add_post("/api/reservations", create_reservation)
    app.router.add_get("/api/settings", settings)
    return app


@pytest.fixture
def degraded():
    return DegradedMode(time_scale=TIME_SCALE)


@pytest.fixture
def data_store():
    return DataStore()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def fast_settings():
    return TrafficSettings(
        tick_seconds=1.0,
        spawn_interval_range=(1.0, 2.0),
        time_scale=TIME_SCALE,
    )


@pytest_asyncio.fixture
async def api_server(degraded, data_store):
    server = TestServer(build_app(degraded, data_store))
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
def base_url(api_server):
    return str(api_server.make_url("/")).rstrip("/")


@pytest.fixture
def seen_requests(api_server):
    return api_server.app["seen"]


async def _wait_for(predicate, timeout: float = 3.0, interval: float = 0.005) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def wait_for():
    """Poll a predicate on the running loop until it holds or times out."""
    return _wait_for
