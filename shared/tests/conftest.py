"""
Pytest fixtures for shared module tests.
"""

from unittest.mock import AsyncMock

import httpx
import pytest

import shared.redis_client as redis_client_module


@pytest.fixture
def mock_redis_client():
    """Create a mock Redis client."""
    client = AsyncMock()
    client.ping = AsyncMock(return_value=True)
    return client


@pytest.fixture
def health_server():
    """httpx client answering /health with a configurable status"""
    state = {"status_code": 200, "body": {"status": "ok"}, "timeout": False}

    def handler(request: httpx.Request) -> httpx.Response:
        if state["timeout"]:
            raise httpx.ReadTimeout("slow", request=request)
        return httpx.Response(state["status_code"], json=state["body"])

    client = httpx.AsyncClient(base_url="http://service.test", transport=httpx.MockTransport(handler))
    client.state = state
    return client


@pytest.fixture(autouse=True)
def reset_redis_singleton():
    """Each test starts without a shared client"""
    redis_client_module._redis_client = None
    redis_client_module._redis_pool = None
    yield
    redis_client_module._redis_client = None
    redis_client_module._redis_pool = None
