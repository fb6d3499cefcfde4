"""
Test configuration and fixtures for the booking service tests.

Mocks Redis with an in-memory dict and serves the scheduling backend from an
in-process fake through httpx.MockTransport.
"""

import json
from datetime import datetime
from typing import Any, Dict, List
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient

from consultorio.app import app, build_engine
from consultorio.cache import TTLCache
from consultorio.config import BookingConfig
from consultorio.fallback import FallbackProvider
from consultorio.availability import AvailabilityGateway
from consultorio.retry import RetryPolicy
from consultorio.sobreturnos import OverflowAllocator

# Monday 10 June 2024, 08:00 local time
NOW = datetime(2024, 6, 10, 8, 0)
TODAY = "2024-06-10"
ADMIN_NUMBER = "5493624000000"


class FakeBackend:
    """In-memory stand-in for the scheduling backend API"""

    def __init__(self):
        self.healthy = True
        self.validate_enabled = True
        self.validate_always_available = False
        self.timeout_paths: set = set()
        self.error_paths: Dict[str, int] = {}
        self.forced_responses: Dict[tuple, httpx.Response] = {}
        self.available: Dict[str, Any] = {
            "morning": [
                {"time": "09:00", "displayTime": "09:00", "status": "available"},
                {"time": "09:30", "displayTime": "09:30", "status": "available"},
                {"time": "10:00", "displayTime": "10:00", "status": "unavailable"},
            ],
            "afternoon": [
                {"time": "16:00", "displayTime": "16:00", "status": "available"},
                {"time": "16:30", "displayTime": "16:30", "status": "available"},
            ],
        }
        self.reserved: List[str] = []
        self.appointments: List[dict] = []
        self.sobreturnos: List[dict] = []
        self.calls: List[tuple] = []

    def count(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def taken(self, date: str, number: int) -> bool:
        return any(
            record["date"] == date
            and record.get("sobreturnoNumber") == number
            and record.get("status") not in ("available", "cancelled")
            for record in self.sobreturnos
        )

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path.startswith("/api"):
            path = path[len("/api"):]
        self.calls.append((request.method, path))

        if path in self.timeout_paths:
            raise httpx.ReadTimeout("backend timed out", request=request)
        if (request.method, path) in self.forced_responses:
            return self.forced_responses[(request.method, path)]
        if path in self.error_paths:
            return httpx.Response(self.error_paths[path], json={"message": "Internal error"})

        if path in ("/health", "/sobreturnos/health"):
            return httpx.Response(200 if self.healthy else 503, json={"status": "ok"})

        if request.method == "GET" and path.startswith("/appointments/available/"):
            date = path.rsplit("/", 1)[-1]
            return httpx.Response(200, json={
                "success": True,
                "data": {"displayDate": date, "available": self.available},
            })

        if request.method == "GET" and path.startswith("/appointments/reserved/"):
            return httpx.Response(200, json={"success": True, "data": list(self.reserved)})

        if request.method == "POST" and path == "/appointments":
            body = _json(request)
            if body["time"] in self.reserved:
                return httpx.Response(409, json={"message": "Appointment already exists"})
            record = {**body, "_id": f"apt-{len(self.appointments) + 1}"}
            self.appointments.append(record)
            self.reserved.append(body["time"])
            return httpx.Response(201, json={"success": True, "data": record})

        if request.method == "GET" and path == "/sobreturnos/validate":
            if not self.validate_enabled:
                return httpx.Response(500, json={"message": "validate unavailable"})
            date = request.url.params["date"]
            number = int(request.url.params["sobreturnoNumber"])
            available = self.validate_always_available or not self.taken(date, number)
            return httpx.Response(200, json={"available": available})

        if request.method == "GET" and path == "/sobreturnos":
            date = request.url.params.get("date")
            return httpx.Response(200, json=[r for r in self.sobreturnos if r["date"] == date])

        if request.method == "POST" and path == "/sobreturnos":
            body = _json(request)
            if self.taken(body["date"], body["sobreturnoNumber"]):
                return httpx.Response(409, json={"message": "Sobreturno already exists"})
            record = {**body, "_id": f"sob-{len(self.sobreturnos) + 1}"}
            self.sobreturnos.append(record)
            return httpx.Response(201, json=record)

        return httpx.Response(404, json={"message": f"No route for {request.method} {path}"})


def _json(request: httpx.Request) -> dict:
    return json.loads(request.content)


class RecordingSleep:
    """Replacement for asyncio.sleep that records requested delays"""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def test_config():
    """Test configuration fixture"""
    return BookingConfig(
        api_url="http://backend.test/api",
        redis_url="redis://localhost:6379",
        session_ttl=1800,
        max_retries=3,
        timeout_backoff=0.001,
        error_backoff=0.001,
        admin_number=ADMIN_NUMBER,
    )


@pytest.fixture
def mock_redis_client():
    """Mock Redis client for testing"""
    mock_client = AsyncMock()
    # Store for session data persistence across calls
    stored_data = {}

    async def mock_get(key):
        return stored_data.get(key)

    async def mock_setex(key, ttl, value):
        stored_data[key] = value
        return True

    async def mock_delete(*keys):
        deleted = 0
        for key in keys:
            if key in stored_data:
                del stored_data[key]
                deleted += 1
        return deleted

    async def mock_incr(key):
        stored_data[key] = str(int(stored_data.get(key) or 0) + 1)
        return int(stored_data[key])

    async def mock_scan(cursor, match=None, count=None):
        prefix = (match or "").rstrip("*")
        return 0, [key for key in stored_data if key.startswith(prefix)]

    mock_client.get.side_effect = mock_get
    mock_client.setex.side_effect = mock_setex
    mock_client.delete.side_effect = mock_delete
    mock_client.incr.side_effect = mock_incr
    mock_client.scan.side_effect = mock_scan
    mock_client.ping.return_value = True
    mock_client.stored_data = stored_data
    return mock_client


@pytest.fixture
def fake_backend():
    return FakeBackend()


@pytest.fixture
def http_client(fake_backend, test_config):
    return httpx.AsyncClient(
        base_url=test_config.api_url,
        transport=httpx.MockTransport(fake_backend.handler),
    )


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def retry_policy(sleeper):
    return RetryPolicy(max_retries=3, timeout_backoff=5.0, error_backoff=1.0, sleep=sleeper)


@pytest.fixture
def cache():
    return TTLCache()


@pytest.fixture
def gateway(http_client, cache, retry_policy, test_config):
    return AvailabilityGateway(http_client, cache, retry_policy, FallbackProvider(), test_config, now=lambda: NOW)


@pytest.fixture
def allocator(http_client, cache, retry_policy, test_config):
    return OverflowAllocator(http_client, cache, retry_policy, test_config, now=lambda: NOW)


@pytest.fixture
def engine(test_config, http_client, mock_redis_client):
    return build_engine(test_config, http_client, mock_redis_client, now=lambda: NOW)


@pytest.fixture
def client(mock_redis_client, test_config, engine):
    """FastAPI test client with mocked dependencies"""
    with patch("consultorio.app.redis_client", mock_redis_client), \
         patch("consultorio.app.config", test_config), \
         patch("consultorio.app.engine", engine):
        yield TestClient(app)
