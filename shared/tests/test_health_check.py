"""
Tests for Redis and HTTP health checks.
"""

import asyncio

import pytest

from shared.health_check import check_redis_health, check_service_health


class TestRedisHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, mock_redis_client):
        result = await check_redis_health(mock_redis_client)

        assert result.is_healthy()
        assert result.service_name == "redis"
        assert result.details == {}

    @pytest.mark.asyncio
    async def test_not_configured(self):
        result = await check_redis_health(None)

        assert not result.is_healthy()
        assert result.details == {"error": "not configured"}

    @pytest.mark.asyncio
    async def test_ping_error(self, mock_redis_client):
        mock_redis_client.ping.side_effect = ConnectionError("refused")

        result = await check_redis_health(mock_redis_client)

        assert result.status == "unhealthy"
        assert result.details == {"error": "PING failed"}

    @pytest.mark.asyncio
    async def test_ping_timeout(self, mock_redis_client):
        async def hang():
            await asyncio.sleep(1)
            return True

        mock_redis_client.ping.side_effect = hang

        result = await check_redis_health(mock_redis_client, timeout=0.01)

        assert not result.is_healthy()
        assert "timed out" in result.details["error"]


class TestServiceHealth:
    @pytest.mark.asyncio
    async def test_healthy(self, health_server):
        result = await check_service_health("backend", "/health", client=health_server)

        assert result.is_healthy()
        assert result.details == {"status": "ok", "status_code": 200}

    @pytest.mark.asyncio
    async def test_degraded_on_503(self, health_server):
        health_server.state["status_code"] = 503

        result = await check_service_health("backend", "/health", client=health_server)

        assert result.status == "degraded"
        assert not result.is_healthy()

    @pytest.mark.asyncio
    async def test_unhealthy_on_other_status(self, health_server):
        health_server.state["status_code"] = 404
        result = await check_service_health("backend", "/health", client=health_server)
        assert result.status == "unhealthy"

    @pytest.mark.asyncio
    async def test_timeout(self, health_server):
        health_server.state["timeout"] = True

        result = await check_service_health("backend", "/health", timeout=2.0, client=health_server)

        assert result.status == "unhealthy"
        assert result.latency_ms == 2000.0
        assert "timed out" in result.details["error"]

    @pytest.mark.asyncio
    async def test_non_dict_body(self, health_server):
        health_server.state["body"] = ["ok"]
        result = await check_service_health("backend", "/health", client=health_server)
        assert result.details == {"body": ["ok"], "status_code": 200}
