"""Tests for the execution service, DI container, monitoring app and log sinks."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from aiohttp.test_utils import TestClient, TestServer
from redis.exceptions import ConnectionError as RedisConnectionError

from autoflow.constants import BUILTIN_PROCESSOR_TYPES, SERVICE_VERSION
from autoflow.core.config import Settings
from autoflow.core.container import create_container
from autoflow.core.health import create_monitoring_app
from autoflow.services.execution import (
    InMemoryWorkflowRepository,
    LogEntry,
    LogLevel,
    QueueUnavailable,
    WorkflowExecutionInput,
    WorkflowStatus,
    create_log_sink,
)
from autoflow.services.execution.logs import NullLogSink, RedisLogSink
from autoflow.services.execution_service import WorkflowExecutionService
from conftest import wait_for_status


def memory_settings(**overrides) -> Settings:
    return Settings(_env_file=None, queue_backend="memory", **overrides)


@pytest.fixture
async def service(repository, gateways):
    svc = WorkflowExecutionService(memory_settings(), repository, gateways=gateways)
    yield svc
    await svc.stop()


class TestWorkflowExecutionService:
    async def test_engine_unavailable_before_initialize(self, service):
        assert not service.is_ready()
        with pytest.raises(RuntimeError):
            service.engine

    async def test_initialize_registers_builtin_processors(self, service):
        await service.initialize()

        info = await service.get_service_info()
        assert service.is_ready()
        assert info["initialized"] is True
        assert info["version"] == SERVICE_VERSION
        assert info["backend"] == "memory"
        assert info["processors"] == sorted(BUILTIN_PROCESSOR_TYPES)
        assert set(info["queues"]) == {"workflow", "node"}

    async def test_runs_workflow_to_completion(self, service, http_recorder):
        await service.initialize()

        execution_id = await service.execute_workflow(WorkflowExecutionInput(workflow_id="wf-1"))
        status = await wait_for_status(service.engine, execution_id,
                                       {WorkflowStatus.COMPLETED, WorkflowStatus.FAILED})

        assert status == WorkflowStatus.COMPLETED
        output = await service.get_execution_output(execution_id)
        assert set(output["result"]) == {"t1", "h1"}
        assert len(http_recorder.requests) == 1

    async def test_stop_makes_service_unready(self, service):
        await service.initialize()
        await service.stop()

        assert not service.is_ready()
        info = await service.get_service_info()
        assert info["initialized"] is False
        assert info["queues"] is None

    async def test_unreachable_redis_raises_queue_unavailable(self, repository):
        client = MagicMock()
        client.ping = AsyncMock(side_effect=RedisConnectionError("refused"))
        client.aclose = AsyncMock()
        svc = WorkflowExecutionService(Settings(_env_file=None, queue_backend="redis"), repository)

        with patch("autoflow.services.execution_service.create_redis_client", return_value=client):
            with pytest.raises(QueueUnavailable) as exc_info:
                await svc.initialize()

        assert exc_info.value.backend == "redis"
        client.aclose.assert_awaited_once()
        assert not svc.is_ready()


class TestContainer:
    def test_execution_service_is_singleton(self):
        container = create_container(memory_settings())

        first = container.execution_service()
        assert first is container.execution_service()
        assert first.settings.queue_backend == "memory"
        assert first.repository is container.workflow_repository()


class TestMonitoringApp:
    async def test_health_reports_unavailable_before_start(self):
        svc = WorkflowExecutionService(memory_settings(), InMemoryWorkflowRepository())

        async with TestClient(TestServer(create_monitoring_app(svc))) as client:
            health = await client.get("/health")
            stats = await client.get("/stats")

            assert health.status == 503
            assert (await health.json())["status"] == "unavailable"
            assert stats.status == 503

    async def test_health_and_stats_when_ready(self, service):
        await service.initialize()

        async with TestClient(TestServer(create_monitoring_app(service))) as client:
            health = await client.get("/health")
            body = await health.json()
            stats = await client.get("/stats")

            assert health.status == 200
            assert body["status"] == "healthy"
            assert body["memory_mb"] > 0
            assert body["service"]["ready"] is True
            assert stats.status == 200
            assert set(await stats.json()) == {"workflow", "node"}


class TestLogSinks:
    def test_factory_picks_null_sink_when_disabled(self):
        assert isinstance(create_log_sink(MagicMock(), enabled=False), NullLogSink)
        assert isinstance(create_log_sink(None, enabled=True), NullLogSink)
        assert isinstance(create_log_sink(MagicMock(), enabled=True), RedisLogSink)

    async def test_null_sink_reads_nothing(self):
        sink = NullLogSink()
        await sink.append("exec-1", LogEntry.create("exec-1", LogLevel.INFO, "hi"))
        assert await sink.read("exec-1") == []

    async def test_redis_sink_appends_with_ttl(self):
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[1, True])
        pipeline = MagicMock()
        pipeline.__aenter__ = AsyncMock(return_value=pipe)
        pipeline.__aexit__ = AsyncMock(return_value=False)
        client = MagicMock()
        client.pipeline.return_value = pipeline
        sink = RedisLogSink(client, key_prefix="test", retention_seconds=120)
        entry = LogEntry.create("exec-1", LogLevel.WARN, "careful", node_id="n1")

        await sink.append("exec-1", entry)

        key, raw = pipe.rpush.call_args.args
        assert key == "test:logs:exec-1"
        assert json.loads(raw)["message"] == "careful"
        pipe.expire.assert_called_once_with("test:logs:exec-1", 120)

    async def test_redis_sink_reads_entries_in_order(self):
        entries = [LogEntry.create("exec-1", LogLevel.INFO, f"line {n}") for n in range(2)]
        client = MagicMock()
        client.lrange = AsyncMock(return_value=[json.dumps(e.to_dict()) for e in entries])

        restored = await RedisLogSink(client).read("exec-1")

        client.lrange.assert_awaited_once_with("autoflow:logs:exec-1", 0, -1)
        assert [entry.message for entry in restored] == ["line 0", "line 1"]
        assert restored[0].level == LogLevel.INFO

