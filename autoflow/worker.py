"""Standalone execution worker.

Runs the workflow and node queue workers in their own process, enabling
horizontal scaling: start several workers against the same Redis and they
share both queues.

    python -m autoflow.worker
"""

import asyncio
import signal
from typing import Optional

from autoflow.core.config import Settings
from autoflow.core.container import create_container
from autoflow.core.health import MonitoringServer
from autoflow.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def run_standalone_worker(settings: Optional[Settings] = None,
                                stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the execution service until SIGINT/SIGTERM (or ``stop_event``).

    Args:
        settings: Settings to use (loaded from the environment when omitted)
        stop_event: Event that ends the run when set
    """
    settings = settings or Settings()
    configure_logging(settings)
    container = create_container(settings)
    service = container.execution_service()
    stop_event = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # add_signal_handler is unavailable on Windows event loops
            pass

    logger.info("Starting standalone worker",
                backend=settings.queue_backend,
                workflow_concurrency=settings.workflow_concurrency,
                node_concurrency=settings.node_concurrency)

    await service.initialize()
    monitoring: Optional[MonitoringServer] = None
    try:
        if settings.monitoring_enabled:
            monitoring = MonitoringServer(service, settings.monitoring_host, settings.monitoring_port)
            await monitoring.start()

        logger.info("Worker running. Press Ctrl+C to stop.")
        await stop_event.wait()
        logger.info("Shutdown requested")
    finally:
        if monitoring is not None:
            await monitoring.stop()
        await service.stop()


def main() -> None:
    asyncio.run(run_standalone_worker())


if __name__ == "__main__":
    main()
