"""Redis connection helpers for the queue backend."""

import redis.asyncio as redis
from redis.exceptions import RedisError

from autoflow.core.config import Settings
from autoflow.core.logging import get_logger
from autoflow.services.execution.exceptions import QueueUnavailable

logger = get_logger(__name__)


def create_redis_client(settings: Settings) -> redis.Redis:
    """Build an async Redis client from settings (no I/O happens here)."""
    return redis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        db=settings.redis_db,
        decode_responses=True,
        socket_connect_timeout=settings.redis_connect_timeout,
        health_check_interval=30,
    )


async def ping_or_raise(client: redis.Redis, settings: Settings) -> None:
    """Fail fast when the queue backend is unreachable.

    Raises:
        QueueUnavailable: The server did not answer PING
    """
    try:
        await client.ping()
    except (RedisError, OSError) as e:
        logger.error("Redis connection failed", host=settings.redis_host,
                     port=settings.redis_port, error=str(e))
        raise QueueUnavailable(
            "redis", f"Cannot connect to {settings.redis_host}:{settings.redis_port}: {e}",
        ) from e
    logger.info("Redis connected", host=settings.redis_host, port=settings.redis_port,
                db=settings.redis_db)
