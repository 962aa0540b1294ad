"""Workflow execution service - composition root of the engine.

Builds the queue backend, durable log sink and engine from settings,
registers the built-in node processors and exposes the engine operations to
callers (API layers, the standalone worker, tests).
"""

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import redis.asyncio as redis

from autoflow.constants import NODE_QUEUE_NAME, SERVICE_VERSION, WORKFLOW_QUEUE_NAME
from autoflow.core.config import Settings
from autoflow.core.logging import get_logger, log_execution_time
from autoflow.core.redis import create_redis_client, ping_or_raise
from autoflow.services.execution import (
    EventBus,
    ExecutionEngine,
    ExecutionEngineConfig,
    LogEntry,
    NodeProcessor,
    RetryConfig,
    WorkflowExecutionInput,
    WorkflowRepository,
    WorkflowStatus,
    WorkflowTrigger,
    create_job_queue,
    create_log_sink,
)
from autoflow.services.gateways import Gateways
from autoflow.services.processors import builtin_processors

logger = get_logger(__name__)


class WorkflowExecutionService:
    """Owns one ExecutionEngine and the connections behind it."""

    def __init__(self, settings: Settings, repository: WorkflowRepository,
                 gateways: Optional[Gateways] = None,
                 events: Optional[EventBus] = None):
        self.settings = settings
        self.repository = repository
        self.gateways = gateways or Gateways()
        self.events = events or EventBus()
        self.redis: Optional[redis.Redis] = None
        self._engine: Optional[ExecutionEngine] = None
        self._started_at: Optional[float] = None

    @property
    def engine(self) -> ExecutionEngine:
        if self._engine is None:
            raise RuntimeError("Workflow execution service is not initialized")
        return self._engine

    def is_ready(self) -> bool:
        return self._engine is not None and self._engine.is_running

    async def initialize(self) -> None:
        """Connect the queue backend, start workers and register processors.

        Raises:
            QueueUnavailable: The Redis backend did not answer
        """
        if self._engine is not None:
            logger.warning("Workflow execution service already initialized")
            return

        start_time = time.time()
        config = ExecutionEngineConfig.from_settings(self.settings)
        if self.settings.queue_backend == "redis":
            client = create_redis_client(self.settings)
            try:
                await ping_or_raise(client, self.settings)
            except Exception:
                await client.aclose()
                raise
            self.redis = client

        engine = ExecutionEngine(
            config,
            workflow_queue=create_job_queue(
                WORKFLOW_QUEUE_NAME, config.workflow.default_job_options(),
                self.redis, key_prefix=config.key_prefix,
            ),
            node_queue=create_job_queue(
                NODE_QUEUE_NAME, config.node.default_job_options(),
                self.redis, key_prefix=config.key_prefix,
            ),
            repository=self.repository,
            events=self.events,
            log_sink=create_log_sink(
                self.redis, enabled=config.log_persistence_enabled,
                key_prefix=config.key_prefix,
                retention_seconds=config.log_retention_seconds,
            ),
        )
        for processor in builtin_processors(self.gateways):
            engine.register_node_processor(processor)
        await engine.start()

        self._engine = engine
        self._started_at = time.time()
        log_execution_time(logger, "service_initialize", start_time, self._started_at,
                           backend=self.settings.queue_backend,
                           processors=len(engine.registry))

    async def stop(self) -> None:
        """Stop the engine and release the Redis connection."""
        try:
            if self._engine is not None:
                await self._engine.stop()
        finally:
            self._engine = None
            if self.redis is not None:
                await self.redis.aclose()
                self.redis = None
        logger.info("Workflow execution service stopped")

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def execute_workflow(self, execution_input: WorkflowExecutionInput,
                               retry_config: Optional[Union[RetryConfig, Dict[str, Any]]] = None,
                               priority: Optional[int] = None) -> str:
        return await self.engine.execute_workflow(execution_input, retry_config, priority)

    async def get_execution_status(self, execution_id: str) -> Optional[WorkflowStatus]:
        return await self.engine.get_execution_status(execution_id)

    async def get_execution_output(self, execution_id: str) -> Optional[Dict[str, Any]]:
        return await self.engine.get_execution_output(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        return await self.engine.cancel_execution(execution_id)

    async def get_execution_logs(self, execution_id: str) -> List[LogEntry]:
        return await self.engine.get_execution_logs(execution_id)

    async def get_queue_stats(self) -> Dict[str, Dict[str, int]]:
        return await self.engine.get_queue_stats()

    async def clear_queues(self) -> None:
        await self.engine.clear_queues()

    async def pause_queues(self) -> None:
        await self.engine.pause_queues()

    async def resume_queues(self) -> None:
        await self.engine.resume_queues()

    async def clean_queues(self, grace_ms: int) -> Dict[str, int]:
        return await self.engine.clean_queues(grace_ms)

    def register_node_processor(self, processor: NodeProcessor) -> None:
        self.engine.register_node_processor(processor)

    def register_trigger(self, trigger: WorkflowTrigger) -> None:
        self.engine.register_trigger(trigger)

    async def fire_trigger(self, trigger_type: str, data: Any) -> str:
        return await self.engine.fire_trigger(trigger_type, data)

    async def get_service_info(self) -> Dict[str, Any]:
        """Service summary for monitoring endpoints."""
        info: Dict[str, Any] = {
            "initialized": self._engine is not None,
            "ready": self.is_ready(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": SERVICE_VERSION,
            "backend": self.settings.queue_backend,
            "uptimeSeconds": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
            "queues": None,
            "processors": [],
            "triggers": [],
        }
        if self._engine is not None:
            info["queues"] = await self._engine.get_queue_stats()
            info["processors"] = self._engine.registry.node_types()
            info["triggers"] = self._engine.triggers.trigger_types()
        return info
