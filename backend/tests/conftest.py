"""Shared test configuration and fixtures for the channel hub backend.

Key principles:
- No remote services: OTA HTTP is mocked with respx, MongoDB with an
  in-memory mongomock-motor client (fresh database per test).
- All HTTP calls go through the local ASGI app via httpx.ASGITransport.
- AnyIO is the single async runner via pytest-anyio (@pytest.mark.anyio).
"""

from typing import Any, AsyncGenerator

import os
import sys
import uuid
from pathlib import Path

import httpx
import pytest
from httpx import ASGITransport
from mongomock_motor import AsyncMongoMockClient

# Ensure backend root is on sys.path so that `server` module is importable
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

os.environ.setdefault("SCHEDULER_ENABLED", "false")

from server import app  # noqa: E402
from channel_hub.indexes.channel_indexes import ensure_channel_indexes  # noqa: E402
from channel_hub.runtime import get_orchestrator  # noqa: E402
from channel_hub.services.channels.orchestrator import ChannelOrchestrator  # noqa: E402
from channel_hub.services.channels.providers.agoda import AgodaChannelProvider  # noqa: E402
from channel_hub.services.channels.registry import AdapterRegistry  # noqa: E402

from channel_fakes import FakeChannelProvider  # noqa: E402

AGODA_TEST_BASE = "https://agoda.test/ycs/v2"


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Force pytest-anyio to use asyncio event loop."""

    return "asyncio"


@pytest.fixture(scope="function")
async def test_db() -> AsyncGenerator[Any, None]:
    """Function-scoped isolated database with the production indexes."""

    client = AsyncMongoMockClient(tz_aware=True)
    db = client[f"channel_hub_test_{uuid.uuid4().hex}"]
    await ensure_channel_indexes(db)
    yield db


@pytest.fixture
def fake_booking_com() -> FakeChannelProvider:
    return FakeChannelProvider("BOOKING_COM")


@pytest.fixture
def fake_expedia() -> FakeChannelProvider:
    return FakeChannelProvider("EXPEDIA")


@pytest.fixture
def registry(fake_booking_com: FakeChannelProvider, fake_expedia: FakeChannelProvider) -> AdapterRegistry:
    reg = AdapterRegistry()
    reg.register("AGODA", AgodaChannelProvider(base_url=AGODA_TEST_BASE, timeout_s=2.0))
    reg.register("BOOKING_COM", fake_booking_com)
    reg.register("EXPEDIA", fake_expedia)
    return reg


@pytest.fixture
def orchestrator(test_db, registry) -> ChannelOrchestrator:
    return ChannelOrchestrator(
        test_db,
        registry,
        degrade_threshold=3,
        concurrency=4,
        call_timeout=0.5,
        propagate_bookings=True,
    )


@pytest.fixture(scope="function")
async def app_with_overrides(orchestrator) -> AsyncGenerator[Any, None]:
    """FastAPI app whose orchestrator dependency points at the test database."""

    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    try:
        yield app
    finally:
        app.dependency_overrides.clear()


@pytest.fixture(scope="function")
async def async_client(app_with_overrides) -> AsyncGenerator[httpx.AsyncClient, None]:
    transport = ASGITransport(app=app_with_overrides)
    async with httpx.AsyncClient(transport=transport, base_url="http://test", timeout=30.0) as client:
        yield client
