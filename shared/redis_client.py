"""
Async Redis client factory for the Consultorio services

Provides a singleton connection pool and client. Pool settings are read from
environment variables (the connection URL normally comes from the service
config):
- CONSULTORIO_REDIS_URL: Connection string (default: redis://localhost:6379/0)
- CONSULTORIO_REDIS_MAX_CONNECTIONS: Connection pool size (default: 20)
- CONSULTORIO_REDIS_SOCKET_TIMEOUT: Socket timeout in seconds (default: 5.0)
- CONSULTORIO_REDIS_SOCKET_CONNECT_TIMEOUT: Connect timeout in seconds (default: 5.0)

Usage:
    from shared.redis_client import get_redis_client, close_redis_client

    client = await get_redis_client(config.redis_url)
    await client.setex("key", 60, "value")
    await close_redis_client()
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None
_redis_pool: Optional[redis.ConnectionPool] = None
_lock = asyncio.Lock()


@dataclass
class RedisConfig:
    """Connection pool settings"""

    url: str = "redis://localhost:6379/0"
    max_connections: int = 20
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 5.0
    connect_retries: int = 3

    @staticmethod
    def from_env(url: Optional[str] = None) -> "RedisConfig":
        """Load pool settings from environment variables; url overrides CONSULTORIO_REDIS_URL"""
        return RedisConfig(
            url=url or os.getenv("CONSULTORIO_REDIS_URL", "redis://localhost:6379/0"),
            max_connections=int(os.getenv("CONSULTORIO_REDIS_MAX_CONNECTIONS", "20")),
            socket_timeout=float(os.getenv("CONSULTORIO_REDIS_SOCKET_TIMEOUT", "5.0")),
            socket_connect_timeout=float(os.getenv("CONSULTORIO_REDIS_SOCKET_CONNECT_TIMEOUT", "5.0")),
        )


async def get_redis_client(url: Optional[str] = None) -> redis.Redis:
    """
    Get or create the async Redis client.

    The first call builds the pool and pings the server, retrying with
    exponential backoff (1s, 2s).

    Args:
        url: Redis connection URL (used only when the client is first created)

    Returns:
        redis.Redis: Shared client instance

    Raises:
        RedisConnectionError: If the server is unreachable after all attempts
    """
    global _redis_client, _redis_pool

    async with _lock:
        if _redis_client is not None:
            return _redis_client

        config = RedisConfig.from_env(url)
        logger.info(f"Creating Redis connection pool (max_connections={config.max_connections})")

        # decode_responses=True: sessions and counters are stored as text
        _redis_pool = redis.ConnectionPool.from_url(
            config.url,
            max_connections=config.max_connections,
            socket_timeout=config.socket_timeout,
            socket_connect_timeout=config.socket_connect_timeout,
            decode_responses=True,
        )
        client = redis.Redis(connection_pool=_redis_pool)

        for attempt in range(config.connect_retries):
            try:
                await client.ping()
                logger.info("Redis client connected")
                break
            except RedisConnectionError as e:
                if attempt < config.connect_retries - 1:
                    delay = 2.0 ** attempt
                    logger.warning(
                        f"Redis connection attempt {attempt + 1}/{config.connect_retries} failed: {e}. "
                        f"Retrying in {delay}s..."
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Redis connection failed after {config.connect_retries} attempts: {e}")
                    await _redis_pool.disconnect()
                    _redis_pool = None
                    raise

        _redis_client = client
        return _redis_client


async def ping_redis(client: Optional[redis.Redis]) -> bool:
    """True when PING succeeds"""
    if client is None:
        return False
    try:
        return bool(await client.ping())
    except Exception as e:
        logger.error(f"Redis PING failed: {e}")
        return False


async def close_redis_client():
    """Close the shared client and its pool (call on shutdown)"""
    global _redis_client, _redis_pool

    async with _lock:
        if _redis_client is not None:
            try:
                await _redis_client.aclose()
                logger.info("Redis client closed")
            except Exception as e:
                logger.error(f"Error closing Redis client: {e}")
            finally:
                _redis_client = None

        if _redis_pool is not None:
            try:
                await _redis_pool.disconnect()
            except Exception as e:
                logger.error(f"Error disconnecting Redis pool: {e}")
            finally:
                _redis_pool = None
