"""Health check utilities and the monitoring HTTP endpoint.

Serves GET /health (readiness, uptime, resource usage, service info) and
GET /stats (queue counts) with aiohttp.
"""
import time
from typing import Any, Dict, Optional, TYPE_CHECKING

import psutil
from aiohttp import web

from autoflow.core.logging import get_logger

if TYPE_CHECKING:
    from autoflow.services.execution_service import WorkflowExecutionService

logger = get_logger(__name__)

SERVICE_KEY = web.AppKey("execution_service", object)
STARTUP_KEY = web.AppKey("startup_time", float)


def get_memory_mb() -> float:
    """Get current process memory usage in MB."""
    return psutil.Process().memory_info().rss / (1024 * 1024)


def get_cpu_percent() -> float:
    """Get current process CPU usage percentage (non-blocking sample)."""
    return psutil.Process().cpu_percent(interval=None)


async def get_health_status(service: "WorkflowExecutionService",
                            startup_time: float) -> Dict[str, Any]:
    """Get health status for the /health endpoint."""
    ready = service.is_ready()
    return {
        "status": "healthy" if ready else "unavailable",
        "uptime_seconds": round(time.time() - startup_time, 1),
        "memory_mb": round(get_memory_mb(), 1),
        "cpu_percent": round(get_cpu_percent(), 1),
        "service": await service.get_service_info(),
    }


async def health_handler(request: web.Request) -> web.Response:
    status = await get_health_status(request.app[SERVICE_KEY], request.app[STARTUP_KEY])
    return web.json_response(status, status=200 if status["status"] == "healthy" else 503)


async def stats_handler(request: web.Request) -> web.Response:
    service = request.app[SERVICE_KEY]
    if not service.is_ready():
        return web.json_response({"error": "Service not ready"}, status=503)
    return web.json_response(await service.get_queue_stats())


def create_monitoring_app(service: "WorkflowExecutionService") -> web.Application:
    app = web.Application()
    app[SERVICE_KEY] = service
    app[STARTUP_KEY] = time.time()
    app.router.add_get("/health", health_handler)
    app.router.add_get("/stats", stats_handler)
    return app


class MonitoringServer:
    """Runs the monitoring app in the background of the current event loop."""

    def __init__(self, service: "WorkflowExecutionService",
                 host: str = "0.0.0.0", port: int = 3001):
        self.service = service
        self.host = host
        self.port = port
        self._runner: Optional[web.AppRunner] = None

    @property
    def is_running(self) -> bool:
        return self._runner is not None

    async def start(self) -> None:
        if self._runner is not None:
            logger.warning("Monitoring server already running")
            return
        runner = web.AppRunner(create_monitoring_app(self.service))
        await runner.setup()
        await web.TCPSite(runner, self.host, self.port).start()
        self._runner = runner
        logger.info("Monitoring server started", host=self.host, port=self.port)

    async def stop(self) -> None:
        if self._runner is None:
            return
        await self._runner.cleanup()
        self._runner = None
        logger.info("Monitoring server stopped")
