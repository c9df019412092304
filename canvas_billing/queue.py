"""Shared ARQ Redis pool for enqueueing billing notifications and delayed checks."""

import logging

from arq import ArqRedis, create_pool
from arq.connections import RedisSettings
from redis.exceptions import RedisError

from canvas_billing.config import get_settings

logger = logging.getLogger(__name__)

_pool: ArqRedis | None = None


def get_queue() -> ArqRedis | None:
    """Return the shared pool, or None when the queue is not available."""
    return _pool


def set_queue(pool: ArqRedis | None) -> None:
    """Install a pool directly (worker context, tests)."""
    global _pool
    _pool = pool


async def init_queue() -> None:
    """Connect the shared pool. Call during app startup.

    A missing Redis only disables notifications; billing itself keeps working.
    """
    global _pool
    try:
        _pool = await create_pool(RedisSettings.from_dsn(get_settings().redis_url))
    except (OSError, RedisError) as e:
        logger.warning("Job queue unavailable, billing notifications disabled: %s", e)
        _pool = None


async def close_queue() -> None:
    """Close the shared pool. Call during app shutdown."""
    global _pool
    if _pool:
        await _pool.close()
        _pool = None
