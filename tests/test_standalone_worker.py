"""Tests for the standalone worker entry point."""

import asyncio
from unittest.mock import patch

from autoflow.core.config import Settings
from autoflow.core.container import create_container
from autoflow.worker import run_standalone_worker


async def test_runs_until_stop_event_then_stops_service():
    settings = Settings(_env_file=None, queue_backend="memory", monitoring_enabled=False)
    stop_event = asyncio.Event()
    containers = []

    def build_container(worker_settings):
        container = create_container(worker_settings)
        containers.append(container)
        return container

    with patch("autoflow.worker.create_container", side_effect=build_container), \
            patch("autoflow.worker.configure_logging") as configure_logging:
        task = asyncio.create_task(run_standalone_worker(settings, stop_event))

        for _ in range(200):
            if containers and containers[0].execution_service().is_ready():
                break
            await asyncio.sleep(0.01)
        service = containers[0].execution_service()
        assert service.is_ready()
        assert not task.done()

        stop_event.set()
        await asyncio.wait_for(task, timeout=5.0)

    configure_logging.assert_called_once_with(settings)
    assert not service.is_ready()
    assert (await service.get_service_info())["initialized"] is False
