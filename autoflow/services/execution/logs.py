"""Durable execution log sink.

Execution contexts live only while their workflow job runs. When log
persistence is enabled, every log entry is also written to Redis so logs
remain readable after the context is torn down.

Usage:
    from autoflow.services.execution.logs import create_log_sink

    sink = create_log_sink(redis_client, enabled=settings.log_persistence_enabled)
    await sink.append(execution_id, entry)
"""

import json
from typing import List, Optional, Protocol

import redis.asyncio as redis

from autoflow.core.logging import get_logger
from .models import LogEntry

logger = get_logger(__name__)


class LogSinkProtocol(Protocol):
    """Protocol for log sinks (enables duck typing)."""

    @property
    def enabled(self) -> bool:
        ...

    async def append(self, execution_id: str, entry: LogEntry) -> None:
        ...

    async def read(self, execution_id: str) -> List[LogEntry]:
        ...


class NullLogSink:
    """No-op sink when log persistence is disabled.

    This follows the Null Object pattern - writes succeed silently and reads
    return nothing.
    """

    @property
    def enabled(self) -> bool:
        return False

    async def append(self, execution_id: str, entry: LogEntry) -> None:
        return None

    async def read(self, execution_id: str) -> List[LogEntry]:
        return []


class RedisLogSink:
    """Stores execution logs in Redis lists.

    Key schema:
        {prefix}:logs:{execution_id} -> LIST (LogEntry JSON, append order)
    """

    def __init__(self, client: redis.Redis, key_prefix: str = "autoflow",
                 retention_seconds: int = 86400):
        """Initialize the sink.

        Args:
            client: Redis client (decode_responses=True)
            key_prefix: Namespace shared with the queues
            retention_seconds: TTL refreshed on every append
        """
        self.redis = client
        self.key_prefix = key_prefix
        self.retention_seconds = retention_seconds

    @property
    def enabled(self) -> bool:
        return True

    def _key(self, execution_id: str) -> str:
        return f"{self.key_prefix}:logs:{execution_id}"

    async def append(self, execution_id: str, entry: LogEntry) -> None:
        key = self._key(execution_id)
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.rpush(key, json.dumps(entry.to_dict()))
                pipe.expire(key, self.retention_seconds)
                await pipe.execute()
        except redis.RedisError as e:
            logger.error("Failed to persist execution log",
                         execution_id=execution_id, error=str(e))

    async def read(self, execution_id: str) -> List[LogEntry]:
        raw = await self.redis.lrange(self._key(execution_id), 0, -1)
        return [LogEntry.from_dict(json.loads(item)) for item in raw]


def create_log_sink(client: Optional[redis.Redis], enabled: bool = False,
                    key_prefix: str = "autoflow",
                    retention_seconds: int = 86400) -> LogSinkProtocol:
    """Factory function to create the appropriate log sink.

    Args:
        client: Redis client, required when enabled
        enabled: Whether log persistence is enabled

    Returns:
        RedisLogSink if enabled and a client is available, NullLogSink otherwise
    """
    if enabled and client is not None:
        logger.info("Execution log persistence enabled", retention_seconds=retention_seconds)
        return RedisLogSink(client, key_prefix=key_prefix, retention_seconds=retention_seconds)
    if enabled:
        logger.warning("Log persistence requested without a Redis client, using NullLogSink")
    return NullLogSink()
