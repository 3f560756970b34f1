"""
Redis client manager.

Provides:
- Async Redis client with connection pooling
- Singleton pattern for resource efficiency
- Graceful degradation when Redis is not configured or unreachable

Redis backs the single-instance lock of the batch jobs.
"""

from typing import Optional

import redis.asyncio as redis
import structlog

from libs.common.settings import get_settings

logger = structlog.get_logger(__name__)

# Global Redis client instance (singleton)
_redis_client: Optional[redis.Redis] = None
_connection_failed = False


def _redact(url: str) -> str:
    return url.split("@")[-1] if "@" in url else url.split("//")[-1]


async def get_redis_client(use_fake: Optional[bool] = None, redis_url: Optional[str] = None) -> Optional[redis.Redis]:
    """
    Get or create async Redis client with connection pooling.

    Args:
        use_fake: If True, use fakeredis. If None, auto-detect from settings.
        redis_url: Override for the configured Redis URL

    Returns:
        Redis client instance or None if Redis is unavailable
    """
    global _redis_client, _connection_failed

    settings = get_settings()
    if use_fake is None:
        use_fake = settings.is_test

    if use_fake:
        if _redis_client is None:
            from fakeredis import aioredis as fakeredis

            _redis_client = fakeredis.FakeRedis(decode_responses=True)
            logger.info("Using fakeredis for testing")
        return _redis_client

    if _connection_failed:
        logger.warning("Redis connection previously failed, skipping reconnect attempt")
        return None

    if _redis_client is not None:
        try:
            await _redis_client.ping()
            return _redis_client
        except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
            logger.warning("Existing Redis connection failed, reconnecting", error=str(e))
            _redis_client = None

    redis_url = redis_url or settings.redis_url
    if not redis_url:
        logger.warning(
            "Redis URL not configured, job locks are process-local",
            hint="Set REALTY_REDIS_URL to share locks across processes",
        )
        _connection_failed = True
        return None

    client = redis.from_url(
        redis_url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=20,
        socket_timeout=5,
        socket_connect_timeout=5,
        retry_on_timeout=True,
    )
    try:
        await client.ping()
    except (redis.ConnectionError, redis.TimeoutError, OSError) as e:
        logger.error(
            "Redis connection failed",
            error=str(e),
            redis_url=_redact(redis_url),
            hint="Check REALTY_REDIS_URL and ensure Redis server is running",
        )
        _connection_failed = True
        await client.aclose()
        return None

    _redis_client = client
    logger.info("Redis client initialized successfully", url=_redact(redis_url), max_connections=20)
    return _redis_client


async def reset_redis_client():
    """Reset Redis client (for testing or after connection failures)."""
    global _redis_client, _connection_failed

    if _redis_client is not None:
        try:
            await _redis_client.aclose()
        except (redis.RedisError, OSError) as e:
            logger.warning("Error closing Redis client", error=str(e))

    _redis_client = None
    _connection_failed = False
    logger.info("Redis client reset")
