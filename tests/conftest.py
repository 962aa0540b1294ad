"""Pytest configuration and fixtures."""

import asyncio
import time
from typing import Any, Dict, Iterable, List

import httpx
import pytest

from autoflow.services.execution import (
    ExecutionEngine,
    ExecutionEngineConfig,
    InMemoryWorkflowRepository,
    LogEntry,
    MemoryJobQueue,
    NodeJobData,
    QueueConfig,
    RetryConfig,
)
from autoflow.services.gateways import Gateways, HttpGateway
from autoflow.services.processors import builtin_processors

SIMPLE_WORKFLOW: Dict[str, Any] = {
    "id": "wf-1",
    "name": "Fetch items",
    "nodes": [
        {"id": "t1", "type": "manual_trigger", "data": {"config": {}}},
        {"id": "h1", "type": "http_request",
         "data": {"config": {"url": "https://api.example.com/items", "method": "GET"}}},
    ],
    "edges": [{"id": "e1", "source": "t1", "target": "h1"}],
}


def fast_config(**overrides) -> ExecutionEngineConfig:
    """Engine config with millisecond backoffs so retries finish quickly."""
    options = {
        "workflow": QueueConfig(concurrency=2, remove_on_complete=100, remove_on_fail=50,
                                attempts=3, backoff_delay=10),
        "node": QueueConfig(concurrency=4, remove_on_complete=200, remove_on_fail=100,
                            attempts=2, backoff_delay=10),
        "retry": RetryConfig(attempts=3, delay=10),
        "node_job_timeout": 10.0,
    }
    options.update(overrides)
    return ExecutionEngineConfig(**options)


def node_job(node_type: str, config: Dict[str, Any] = None,
             inputs: Dict[str, Any] = None, node_id: str = "n1") -> NodeJobData:
    return NodeJobData(
        execution_id="exec-1",
        node_id=node_id,
        node_type=node_type,
        config=config or {},
        inputs=inputs or {},
    )


async def wait_for_status(engine: ExecutionEngine, execution_id: str,
                          statuses: Iterable, timeout: float = 5.0):
    """Poll until the execution reaches one of ``statuses``."""
    wanted = set(statuses)
    deadline = time.monotonic() + timeout
    status = None
    while time.monotonic() < deadline:
        status = await engine.get_execution_status(execution_id)
        if status in wanted:
            return status
        await asyncio.sleep(0.01)
    raise AssertionError(f"Execution {execution_id} stuck in {status}, expected {wanted}")


class HttpRecorder:
    """httpx MockTransport handler that records calls and returns a fixed response."""

    def __init__(self, status_code: int = 200, body: Any = None):
        self.status_code = status_code
        self.body = body if body is not None else {"items": [1, 2, 3]}
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.body)


class RecordingLogSink:
    """Durable log sink kept in a dict."""

    def __init__(self):
        self.entries: Dict[str, List[LogEntry]] = {}

    @property
    def enabled(self) -> bool:
        return True

    async def append(self, execution_id: str, entry: LogEntry) -> None:
        self.entries.setdefault(execution_id, []).append(entry)

    async def read(self, execution_id: str) -> List[LogEntry]:
        return list(self.entries.get(execution_id, []))


@pytest.fixture
def http_recorder():
    return HttpRecorder()


@pytest.fixture
def gateways(http_recorder):
    return Gateways(http=HttpGateway(transport=httpx.MockTransport(http_recorder)))


@pytest.fixture
def repository():
    repo = InMemoryWorkflowRepository()
    repo.save(SIMPLE_WORKFLOW)
    return repo


@pytest.fixture
async def engine_factory(repository, gateways):
    """Build engines over fresh in-memory queues; every engine is stopped at teardown."""
    engines: List[ExecutionEngine] = []

    def build(config: ExecutionEngineConfig = None, **kwargs) -> ExecutionEngine:
        config = config or fast_config()
        kwargs.setdefault("repository", repository)
        engine = ExecutionEngine(
            config,
            workflow_queue=MemoryJobQueue("workflow-execution", config.workflow.default_job_options()),
            node_queue=MemoryJobQueue("node-execution", config.node.default_job_options()),
            **kwargs,
        )
        for processor in builtin_processors(gateways):
            engine.register_node_processor(processor)
        engines.append(engine)
        return engine

    yield build

    for engine in engines:
        await engine.stop()


@pytest.fixture
def engine(engine_factory):
    """Engine with built-in processors; workers are not started."""
    return engine_factory()
