"""Unit tests for health, session and metrics endpoints.

Tests verify:
- /health reflects transport state
- /liveness always answers
- /sessions lists registered sessions
- /metrics and /metrics/summary formats
"""

from collections.abc import AsyncGenerator
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from voice_assistant.health import setup_health_routes
from voice_assistant.metrics import MetricsCollector
from voice_assistant.registry import SessionRegistry


@pytest.fixture
def registry() -> SessionRegistry:
    """Create empty registry."""
    return SessionRegistry()


@pytest.fixture
def transport() -> MagicMock:
    """Create mock running transport."""
    transport = MagicMock()
    transport.is_running = True
    return transport


@pytest.fixture
def collector() -> MetricsCollector:
    """Create a fresh metrics collector."""
    return MetricsCollector()


@pytest_asyncio.fixture
async def client(
    registry: SessionRegistry, transport: MagicMock, collector: MetricsCollector
) -> AsyncGenerator[TestClient, None]:
    """Create test client."""
    app = web.Application()
    setup_health_routes(app, registry, transport=transport, metrics_collector=collector)
    async with TestClient(TestServer(app)) as client:
        yield client


@pytest.mark.asyncio
async def test_health_ok(client: Any, registry: SessionRegistry) -> None:
    """Test /health when the transport is running."""
    session = MagicMock()
    session.session_id = "ws-1"
    session.close = AsyncMock()
    await registry.add(session)

    resp = await client.get("/health")

    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "healthy"
    assert data["active_sessions"] == 1
    assert data["transport"] is True
    assert data["uptime_seconds"] >= 0


@pytest.mark.asyncio
async def test_health_transport_down(client: Any, transport: MagicMock) -> None:
    """Test /health returns 503 when the transport stopped."""
    transport.is_running = False

    resp = await client.get("/health")

    assert resp.status == 503
    data = await resp.json()
    assert data["status"] == "unhealthy"


@pytest.mark.asyncio
async def test_liveness(client: Any, transport: MagicMock) -> None:
    """Test /liveness answers even when unhealthy."""
    transport.is_running = False

    resp = await client.get("/liveness")

    assert resp.status == 200
    assert (await resp.json())["status"] == "alive"


@pytest.mark.asyncio
async def test_sessions(client: Any, registry: SessionRegistry) -> None:
    """Test /sessions lists per-session summaries."""
    session = MagicMock()
    session.session_id = "ws-1"
    session.get_metrics_summary.return_value = {"session_id": "ws-1", "turns_started": 2}
    await registry.add(session)

    resp = await client.get("/sessions")

    assert resp.status == 200
    assert await resp.json() == {
        "count": 1,
        "sessions": [{"session_id": "ws-1", "turns_started": 2}],
    }


@pytest.mark.asyncio
async def test_metrics_endpoint(client: Any, collector: MetricsCollector) -> None:
    """Test /metrics returns Prometheus text."""
    collector.record_turn_started()

    resp = await client.get("/metrics")

    assert resp.status == 200
    # Content-Type may or may not include charset depending on aiohttp version
    assert resp.content_type.startswith("text/plain")
    text = await resp.text()
    assert "# TYPE turns_started_total counter" in text
    assert "turns_started_total 1.0" in text


@pytest.mark.asyncio
async def test_metrics_export_failure(client: Any, collector: MetricsCollector) -> None:
    """Test /metrics returns 500 if export fails."""
    collector.export_prometheus = MagicMock(side_effect=RuntimeError("boom"))  # type: ignore[method-assign]

    resp = await client.get("/metrics")

    assert resp.status == 500
    assert "boom" in await resp.text()


@pytest.mark.asyncio
async def test_metrics_summary(client: Any, collector: MetricsCollector) -> None:
    """Test /metrics/summary JSON."""
    collector.record_session_start()

    resp = await client.get("/metrics/summary")

    assert resp.status == 200
    data = await resp.json()
    assert data["status"] == "ok"
    assert data["metrics"]["sessions_total"] == 1
    assert data["metrics"]["active_sessions"] == 1
