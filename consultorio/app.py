"""
Consultorio Booking Service - FastAPI Application

Receives chat messages from the messaging transport, runs them through the
booking conversation engine and returns the replies to send. Sessions are
persisted in Redis; availability comes from the scheduling backend.
"""

import os
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import httpx
import redis.asyncio as redis
from fastapi import FastAPI, HTTPException

from consultorio import __version__
from consultorio.availability import AvailabilityGateway
from consultorio.bot_control import BotControl
from consultorio.cache import TTLCache
from consultorio.config import BookingConfig
from consultorio.engine import ConversationEngine
from consultorio.fallback import FallbackProvider
from consultorio.fsm_manager import ConversationFSM
from consultorio.models import (
    AdminClearSessionsResponse, ClearCacheRequest, HealthResponse, InboundMessage,
    MetricsResponse, OutboundReply, SessionStatusResponse, SobreturnoAvailabilityResponse,
)
from consultorio.retry import RetryPolicy
from consultorio.session_store import SessionStore
from consultorio.sobreturnos import BackendUnavailableError, OverflowAllocator
from consultorio.validation import validate_date
from shared.health_check import check_redis_health
from shared.redis_client import close_redis_client, get_redis_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# Global state
redis_client: Optional[redis.Redis] = None
http_client: Optional[httpx.AsyncClient] = None
config: Optional[BookingConfig] = None
engine: Optional[ConversationEngine] = None
app_start_time: float = 0.0

METRICS_PREFIX = "consultorio:metrics:"

# Engine events -> metric counters
EVENT_METRICS = {
    "session_started": "sessions_started",
    "booking_confirmed": "bookings_confirmed",
    "booking_failed": "bookings_failed",
    "session_cancelled": "sessions_cancelled",
}


def local_clock(timezone: str) -> Callable[[], datetime]:
    """Callable returning the current time in the clinic's zone"""
    zone = ZoneInfo(timezone)
    return lambda: datetime.now(zone)


def build_engine(
    config: BookingConfig,
    client: httpx.AsyncClient,
    redis_client: Optional[redis.Redis] = None,
    now: Optional[Callable[[], datetime]] = None,
) -> ConversationEngine:
    """Wire the process-wide services into one engine"""
    now = now or local_clock(config.timezone)
    cache = TTLCache(default_ttl=config.cache_ttl)
    retry_policy = RetryPolicy(
        max_retries=config.max_retries,
        timeout_backoff=config.timeout_backoff,
        error_backoff=config.error_backoff,
    )
    gateway = AvailabilityGateway(client, cache, retry_policy, FallbackProvider(), config, now=now)
    allocator = OverflowAllocator(client, cache, retry_policy, config, now=now)
    store = SessionStore(redis_client, ttl=config.session_ttl)

    return ConversationEngine(
        fsm=ConversationFSM(config),
        store=store,
        gateway=gateway,
        allocator=allocator,
        bot_control=BotControl(),
        config=config,
        now=now,
    )


# ============================================================================
# Lifespan Management
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Manage service lifecycle (startup/shutdown)
    """
    global redis_client, http_client, config, engine, app_start_time

    logger.info("Starting Consultorio booking service...")
    app_start_time = time.time()

    try:
        config = BookingConfig.from_env()
        logger.info("Configuration loaded")
    except Exception as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

    try:
        redis_client = await get_redis_client(config.redis_url)
    except Exception as e:
        logger.warning(f"Redis connection failed: {e} - sessions will be kept in memory")
        redis_client = None

    http_client = httpx.AsyncClient(
        base_url=config.api_url,
        timeout=config.request_timeout,
        headers={"Content-Type": "application/json"},
    )
    engine = build_engine(config, http_client, redis_client)

    logger.info(f"Consultorio booking service ready (backend: {config.api_url})")

    yield

    logger.info("Shutting down Consultorio booking service...")
    await http_client.aclose()
    if redis_client:
        await close_redis_client()
    logger.info("Service stopped")


# ============================================================================
# FastAPI Application
# ============================================================================

app = FastAPI(
    title="Consultorio Booking Service",
    description="Chat-driven appointment and sobreturno booking",
    version=__version__,
    lifespan=lifespan
)


def _require_engine() -> ConversationEngine:
    if not config or not engine:
        raise HTTPException(status_code=503, detail="Service not configured")
    return engine


# ============================================================================
# API Endpoints
# ============================================================================

@app.post("/v1/messages", response_model=OutboundReply)
async def receive_message(message: InboundMessage):
    """
    Process one inbound chat message.

    Returns:
        Messages to send back (possibly none) and an optional flow hand-off
    """
    current = _require_engine()

    result = await current.handle_message(message.from_, message.body)

    await _increment_metric("messages_received")
    for event in result.events:
        if event in EVENT_METRICS:
            await _increment_metric(EVENT_METRICS[event])

    return OutboundReply(messages=result.messages, next_flow=result.next_flow)


@app.get("/api/v1/session/{phone}", response_model=SessionStatusResponse)
async def get_session_status(phone: str):
    """Current state and collected data for a phone's conversation"""
    current = _require_engine()

    try:
        session = await current.store.get(phone)
    except Exception as e:
        logger.error(f"Failed to retrieve session {phone}: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve session")

    if session is None:
        raise HTTPException(status_code=404, detail="Session not found or expired")

    data = session.to_dict()
    return SessionStatusResponse(
        phone=phone,
        state=session.state.value,
        flow=session.flow.value,
        data={key: value for key, value in data.items() if key not in ("phone", "state", "flow")},
    )


@app.delete("/api/v1/session/{phone}")
async def delete_session(phone: str):
    """Abandon a conversation; an in-flight backend result for it is dropped"""
    current = _require_engine()

    try:
        deleted = await current.store.clear(phone)
    except Exception as e:
        logger.error(f"Failed to delete session {phone}: {e}")
        raise HTTPException(status_code=500, detail="Failed to delete session")

    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")

    logger.info(f"Session deleted: {phone}")
    await _increment_metric("sessions_cancelled")
    return {"message": "Session deleted successfully"}


@app.get("/api/v1/sobreturnos/{date}", response_model=SobreturnoAvailabilityResponse)
async def get_sobreturnos(date: str):
    """Free overflow slots for a date (YYYY-MM-DD)"""
    current = _require_engine()

    if not validate_date(date):
        raise HTTPException(status_code=400, detail="Invalid date, expected YYYY-MM-DD")

    try:
        available = await current.allocator.get_available_sobreturnos(date)
    except BackendUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return SobreturnoAvailabilityResponse(
        date=date,
        available=[slot.to_dict() for slot in available],
        total=len(available),
    )


@app.post("/admin/cache/clear")
async def clear_cache(request: Optional[ClearCacheRequest] = None):
    """Invalidate cached availability, for one date or entirely"""
    current = _require_engine()
    cache = current.gateway.cache

    if request and request.date:
        if not validate_date(request.date):
            raise HTTPException(status_code=400, detail="Invalid date, expected YYYY-MM-DD")
        cache.delete(current.gateway.cache_key(request.date))
        current.allocator.clear_date_cache(request.date)
        message = f"Cache cleared for {request.date}"
    else:
        cache.clear()
        message = "Cache cleared"

    logger.info(message)
    return {"message": message, "keys_remaining": len(cache)}


@app.post("/admin/clear_sessions", response_model=AdminClearSessionsResponse)
async def clear_sessions():
    """
    Clear all booking sessions (admin endpoint).
    """
    current = _require_engine()

    try:
        deleted = await current.store.clear_all()
    except Exception as e:
        logger.error(f"Failed to clear sessions: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to clear sessions: {str(e)}")

    return AdminClearSessionsResponse(
        sessions_deleted=deleted,
        message=f"Successfully deleted {deleted} sessions"
    )


@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Checks Redis, the scheduling backend and configuration.
    """
    redis_connected = (await check_redis_health(redis_client)).is_healthy()

    backend_online = False
    if engine:
        backend_online = await engine.gateway.check_connectivity()

    config_valid = config is not None

    if not config_valid:
        status = "unhealthy"
    elif not redis_connected or not backend_online:
        status = "degraded"  # Fallback slots and in-memory sessions still work
    else:
        status = "healthy"

    return HealthResponse(
        status=status,
        redis_connected=redis_connected,
        backend_online=backend_online,
        config_valid=config_valid,
        uptime_seconds=time.time() - app_start_time,
    )


@app.get("/metrics", response_model=MetricsResponse)
async def get_metrics():
    """
    Conversation and booking counters.
    """
    active_sessions = await engine.store.count() if engine else 0

    if not redis_client:
        return MetricsResponse(
            messages_received=0,
            sessions_started=0,
            bookings_confirmed=0,
            bookings_failed=0,
            sessions_cancelled=0,
            active_sessions_count=active_sessions,
        )

    try:
        counters = {}
        for name in ("messages_received", *EVENT_METRICS.values()):
            counters[name] = int(await redis_client.get(f"{METRICS_PREFIX}{name}") or 0)

        return MetricsResponse(active_sessions_count=active_sessions, **counters)

    except Exception as e:
        logger.error(f"Failed to retrieve metrics: {e}")
        raise HTTPException(status_code=500, detail="Failed to retrieve metrics")


# ============================================================================
# Helper Functions
# ============================================================================

async def _increment_metric(metric_name: str):
    """Increment a metric counter in Redis"""
    if redis_client:
        try:
            await redis_client.incr(f"{METRICS_PREFIX}{metric_name}")
        except Exception as e:
            logger.warning(f"Failed to increment metric {metric_name}: {e}")


# ============================================================================
# Root Endpoint
# ============================================================================

@app.get("/")
async def root():
    """
    Service information endpoint
    """
    return {
        "service": "Consultorio Booking Service",
        "version": __version__,
        "status": "operational",
        "endpoints": {
            "messages": "POST /v1/messages",
            "get_session": "GET /api/v1/session/{phone}",
            "delete_session": "DELETE /api/v1/session/{phone}",
            "sobreturnos": "GET /api/v1/sobreturnos/{date}",
            "clear_cache": "POST /admin/cache/clear",
            "clear_sessions": "POST /admin/clear_sessions",
            "health": "GET /health",
            "metrics": "GET /metrics"
        }
    }


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", "8006"))

    uvicorn.run(
        "consultorio.app:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
