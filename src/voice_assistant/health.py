"""Health check endpoints for the voice assistant.

Provides HTTP endpoints for load balancers, monitoring systems and
orchestration tools (Docker healthcheck, Kubernetes probes), plus a
Prometheus scrape endpoint and per-session summaries.
"""

import logging
import time
from typing import Any

from aiohttp import web

from voice_assistant.metrics import MetricsCollector, get_metrics_collector
from voice_assistant.registry import SessionRegistry

logger = logging.getLogger(__name__)


class HealthCheckHandler:
    """Health check handler.

    Provides /health, /liveness, /sessions, /metrics and /metrics/summary.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        transport: Any = None,
        metrics_collector: MetricsCollector | None = None,
    ) -> None:
        """Initialize health check handler.

        Args:
            registry: Active session registry
            transport: Client transport (reports whether it is accepting clients)
            metrics_collector: Metrics source (defaults to the global collector)
        """
        self.registry = registry
        self.transport = transport
        self.start_time = time.time()
        self.metrics_collector = metrics_collector or get_metrics_collector()

    async def health_check(self, request: web.Request) -> web.Response:
        """Health check endpoint.

        Returns:
            200 OK: Transport is accepting clients
            503 Service Unavailable: Transport is not running

        Response format:
        {
            "status": "healthy" | "unhealthy",
            "uptime_seconds": float,
            "active_sessions": int,
            "transport": bool
        }
        """
        transport_ok = self.transport is None or bool(self.transport.is_running)
        status_code = 200 if transport_ok else 503

        response_data = {
            "status": "healthy" if transport_ok else "unhealthy",
            "uptime_seconds": time.time() - self.start_time,
            "active_sessions": len(self.registry),
            "transport": transport_ok,
        }

        logger.debug("Health check performed", extra={"status": response_data["status"]})
        return web.json_response(response_data, status=status_code)

    async def liveness_check(self, request: web.Request) -> web.Response:
        """Liveness check endpoint.

        Returns OK if the process is running, even if the transport is down.
        """
        return web.json_response(
            {"status": "alive", "uptime_seconds": time.time() - self.start_time},
            status=200,
        )

    async def sessions(self, request: web.Request) -> web.Response:
        """Per-session metrics summaries."""
        summaries = self.registry.summaries()
        return web.json_response({"count": len(summaries), "sessions": summaries})

    async def metrics_endpoint(self, request: web.Request) -> web.Response:
        """Prometheus metrics endpoint.

        Returns:
            200 OK: Metrics in Prometheus text format
            Content-Type: text/plain; version=0.0.4
        """
        try:
            metrics_text = self.metrics_collector.export_prometheus()
        except Exception as e:
            logger.error("Failed to export metrics", extra={"error": str(e)}, exc_info=True)
            return web.Response(
                text=f"# Error exporting metrics: {e}\n",
                content_type="text/plain",
                status=500,
            )

        return web.Response(
            text=metrics_text,
            content_type="text/plain; version=0.0.4",
            status=200,
        )

    async def metrics_summary(self, request: web.Request) -> web.Response:
        """Human-readable metrics summary in JSON."""
        try:
            summary = self.metrics_collector.get_summary()
        except Exception as e:
            logger.error(
                "Failed to generate metrics summary", extra={"error": str(e)}, exc_info=True
            )
            return web.json_response({"status": "error", "error": str(e)}, status=500)

        return web.json_response(
            {
                "status": "ok",
                "uptime_seconds": time.time() - self.start_time,
                "metrics": summary,
            },
            status=200,
        )


def setup_health_routes(
    app: web.Application,
    registry: SessionRegistry,
    transport: Any = None,
    metrics_collector: MetricsCollector | None = None,
) -> None:
    """Set up health check routes on application.

    Args:
        app: aiohttp Application instance
        registry: Active session registry
        transport: Client transport (optional)
        metrics_collector: Metrics source (optional)
    """
    handler = HealthCheckHandler(
        registry=registry, transport=transport, metrics_collector=metrics_collector
    )

    app.router.add_get("/health", handler.health_check)
    app.router.add_get("/liveness", handler.liveness_check)
    app.router.add_get("/sessions", handler.sessions)
    app.router.add_get("/metrics", handler.metrics_endpoint)
    app.router.add_get("/metrics/summary", handler.metrics_summary)

    logger.info(
        "Health check endpoints configured: /health, /liveness, /sessions, /metrics, "
        "/metrics/summary"
    )
