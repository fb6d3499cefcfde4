"""
Health check utilities

Reusable checks for Redis and HTTP dependencies. All checks return a
HealthCheckResult whose status is one of:
- "healthy": dependency is fully operational
- "degraded": dependency answers but reports a problem
- "unhealthy": dependency cannot be reached

Usage:
    from shared.health_check import check_redis_health, check_service_health

    result = await check_service_health("backend", "/health", client=http_client)
    if not result.is_healthy():
        logger.warning(f"backend is {result.status}: {result.details}")
"""

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

import httpx

from shared.redis_client import ping_redis

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """
    Standardized health check result.

    Attributes:
        service_name: Name of the dependency being checked
        status: "healthy", "unhealthy", or "degraded"
        latency_ms: Response time in milliseconds
        details: Additional information (error messages, status codes)
        timestamp: Unix timestamp when the check was performed
    """
    service_name: str
    status: str
    latency_ms: float
    details: Dict[str, Any]
    timestamp: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def is_healthy(self) -> bool:
        return self.status == "healthy"


async def check_redis_health(redis_client: Optional[Any], timeout: float = 1.0) -> HealthCheckResult:
    """PING Redis within timeout seconds"""
    start_time = time.time()
    try:
        ok = await asyncio.wait_for(ping_redis(redis_client), timeout=timeout)
        details = {} if ok else {"error": "PING failed" if redis_client else "not configured"}
    except asyncio.TimeoutError:
        ok = False
        details = {"error": f"PING timed out after {timeout}s"}

    return HealthCheckResult(
        service_name="redis",
        status="healthy" if ok else "unhealthy",
        latency_ms=(time.time() - start_time) * 1000,
        details=details,
        timestamp=time.time(),
    )


async def check_service_health(
    service_name: str,
    url: str,
    timeout: float = 5.0,
    client: Optional[httpx.AsyncClient] = None,
) -> HealthCheckResult:
    """
    Check an HTTP health endpoint.

    Args:
        service_name: Name of the service (for display)
        url: Health endpoint URL (relative when client has a base URL)
        timeout: Request timeout in seconds (default: 5.0)
        client: Existing httpx client; a temporary one is created otherwise

    Returns:
        HealthCheckResult: 200 is healthy, 503 degraded, anything else unhealthy
    """
    start_time = time.time()

    try:
        if client is not None:
            response = await client.get(url, timeout=timeout)
        else:
            async with httpx.AsyncClient(timeout=timeout) as temporary:
                response = await temporary.get(url)
        latency_ms = (time.time() - start_time) * 1000

        if response.status_code == 200:
            status = "healthy"
        elif response.status_code == 503:
            status = "degraded"
        else:
            status = "unhealthy"

        try:
            details = response.json()
            if not isinstance(details, dict):
                details = {"body": details}
        except ValueError:
            details = {"raw_response": response.text[:200]}
        details["status_code"] = response.status_code

        return HealthCheckResult(
            service_name=service_name,
            status=status,
            latency_ms=latency_ms,
            details=details,
            timestamp=time.time(),
        )

    except httpx.TimeoutException:
        logger.error(f"{service_name} health check timed out after {timeout}s")
        return HealthCheckResult(
            service_name=service_name,
            status="unhealthy",
            latency_ms=timeout * 1000,
            details={"error": f"Request timed out after {timeout}s"},
            timestamp=time.time(),
        )

    except httpx.HTTPError as e:
        logger.error(f"{service_name} health check failed: {e}")
        return HealthCheckResult(
            service_name=service_name,
            status="unhealthy",
            latency_ms=(time.time() - start_time) * 1000,
            details={"error": str(e)},
            timestamp=time.time(),
        )
