"""
Shared utilities for the Consultorio services

- Redis client factory and connection pooling
- Health check utilities for Redis and HTTP endpoints

Usage:
    from shared import get_redis_client, check_redis_health

    client = await get_redis_client(config.redis_url)
    health = await check_redis_health(client)
"""

from .redis_client import (
    get_redis_client,
    close_redis_client,
    ping_redis,
    RedisConfig,
)

from .health_check import (
    check_redis_health,
    check_service_health,
    HealthCheckResult,
)

__all__ = [
    "get_redis_client",
    "close_redis_client",
    "ping_redis",
    "RedisConfig",
    "check_redis_health",
    "check_service_health",
    "HealthCheckResult",
]
