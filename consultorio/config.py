"""
Configuration for the Consultorio booking engine

Loads backend, cache, retry and session settings from environment variables.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from consultorio.models import SOBRETURNO_TIMES

logger = logging.getLogger(__name__)


@dataclass
class BookingConfig:
    """
    Configuration for the booking engine.

    Attributes:
        api_url: Base URL of the scheduling backend
        redis_url: Redis connection URL for session persistence
        session_ttl: Session TTL in seconds (default: 1800 = 30min)
        request_timeout: Backend request timeout in seconds (default: 30)
        health_timeout: Connectivity probe timeout in seconds (default: 3)
        cache_ttl: Default cache TTL in seconds (default: 300 = 5min)
        reserved_cache_ttl: TTL for overflow reservation lists (default: 60)
        available_cache_ttl: TTL for overflow availability views (default: 60)
        max_retries: Attempts per backend read (default: 3)
        timeout_backoff: First backoff after a timeout, doubled per attempt (default: 5s)
        error_backoff: First backoff after any other error, doubled per attempt (default: 1s)
        timezone: IANA zone used to decide "today" (default: America/Argentina/Buenos_Aires)
        business_day_cutoff: Local time after which regular bookings roll to the next business day
        admin_number: Phone number allowed to run admin chat commands
        log_state_transitions: Log FSM state transitions (default: True)
        sobreturno_times: Overflow number -> wall-clock time table
    """

    api_url: str = "https://micitamedica.me/api"
    redis_url: str = "redis://localhost:6379"
    session_ttl: int = 1800
    request_timeout: float = 30.0
    health_timeout: float = 3.0
    cache_ttl: int = 300
    reserved_cache_ttl: int = 60
    available_cache_ttl: int = 60
    max_retries: int = 3
    timeout_backoff: float = 5.0
    error_backoff: float = 1.0
    timezone: str = "America/Argentina/Buenos_Aires"
    business_day_cutoff: str = "20:30"
    admin_number: Optional[str] = None
    log_state_transitions: bool = True
    sobreturno_times: Dict[int, str] = field(default_factory=lambda: dict(SOBRETURNO_TIMES))

    def __post_init__(self):
        """Validate configuration after initialization"""
        if self.session_ttl <= 0:
            raise ValueError(
                f"session_ttl must be positive, got {self.session_ttl}"
            )

        if self.max_retries < 1:
            raise ValueError(
                f"max_retries must be at least 1, got {self.max_retries}"
            )

        for name in ("cache_ttl", "reserved_cache_ttl", "available_cache_ttl"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")

        if self.request_timeout <= 0 or self.health_timeout <= 0:
            raise ValueError("request_timeout and health_timeout must be positive")

        if not self.api_url.startswith(("http://", "https://")):
            raise ValueError(
                f"api_url must start with http:// or https://, got {self.api_url}"
            )

        if not self.redis_url.startswith(("redis://", "rediss://", "unix://")):
            raise ValueError(
                f"redis_url must start with redis://, rediss://, or unix://, got {self.redis_url}"
            )

        hour, _, minute = self.business_day_cutoff.partition(":")
        if not (hour.isdigit() and minute.isdigit()):
            raise ValueError(
                f"business_day_cutoff must look like HH:MM, got {self.business_day_cutoff}"
            )

        # The allocator owns exactly ten numbered slots.
        if sorted(self.sobreturno_times) != list(range(1, 11)):
            raise ValueError("sobreturno_times must map the numbers 1..10")
        if len(set(self.sobreturno_times.values())) != 10:
            raise ValueError("sobreturno_times must bind each number to a distinct time")

        if not self.admin_number:
            logger.warning("CONSULTORIO_ADMIN_NUMBER not set, admin chat commands are disabled")

        if self.log_state_transitions:
            logger.info(
                f"BookingConfig loaded: api_url={self.api_url}, redis_url={self.redis_url}, "
                f"session_ttl={self.session_ttl}s, cache_ttl={self.cache_ttl}s, "
                f"max_retries={self.max_retries}, timezone={self.timezone}"
            )

    @staticmethod
    def from_env() -> "BookingConfig":
        """
        Load configuration from environment variables.

        Environment Variables:
            CONSULTORIO_API_URL: Backend base URL
            CONSULTORIO_REDIS_URL: Redis URL (overrides host/port/db)
            CONSULTORIO_REDIS_HOST: Redis host (default: localhost)
            CONSULTORIO_REDIS_PORT: Redis port (default: 6379)
            CONSULTORIO_REDIS_DB: Redis database (default: 0)
            CONSULTORIO_SESSION_TTL: Session TTL in seconds (default: 1800)
            CONSULTORIO_REQUEST_TIMEOUT: Backend timeout in seconds (default: 30)
            CONSULTORIO_HEALTH_TIMEOUT: Probe timeout in seconds (default: 3)
            CONSULTORIO_CACHE_TTL: Default cache TTL in seconds (default: 300)
            CONSULTORIO_RESERVED_CACHE_TTL: Overflow reservations TTL (default: 60)
            CONSULTORIO_AVAILABLE_CACHE_TTL: Overflow availability TTL (default: 60)
            CONSULTORIO_MAX_RETRIES: Attempts per backend read (default: 3)
            CONSULTORIO_TIMEOUT_BACKOFF: First backoff after a timeout (default: 5)
            CONSULTORIO_ERROR_BACKOFF: First backoff after other errors (default: 1)
            CONSULTORIO_TIMEZONE: IANA timezone (default: America/Argentina/Buenos_Aires)
            CONSULTORIO_BUSINESS_DAY_CUTOFF: HH:MM rollover for regular bookings (default: 20:30)
            CONSULTORIO_ADMIN_NUMBER: Admin phone number (optional)
            CONSULTORIO_LOG_STATE_TRANSITIONS: Log state transitions (default: true)

        Returns:
            BookingConfig instance loaded from environment
        """
        redis_url = os.getenv("CONSULTORIO_REDIS_URL")
        if not redis_url:
            redis_host = os.getenv("CONSULTORIO_REDIS_HOST", "localhost")
            redis_port = _env_number("CONSULTORIO_REDIS_PORT", 6379, int)
            redis_db = _env_number("CONSULTORIO_REDIS_DB", 0, int)
            redis_url = f"redis://{redis_host}:{redis_port}/{redis_db}"

        log_state_transitions = os.getenv(
            "CONSULTORIO_LOG_STATE_TRANSITIONS", "true"
        ).lower() in ("true", "1", "yes")

        return BookingConfig(
            api_url=os.getenv("CONSULTORIO_API_URL", "https://micitamedica.me/api").rstrip("/"),
            redis_url=redis_url,
            session_ttl=_env_number("CONSULTORIO_SESSION_TTL", 1800, int),
            request_timeout=_env_number("CONSULTORIO_REQUEST_TIMEOUT", 30.0, float),
            health_timeout=_env_number("CONSULTORIO_HEALTH_TIMEOUT", 3.0, float),
            cache_ttl=_env_number("CONSULTORIO_CACHE_TTL", 300, int),
            reserved_cache_ttl=_env_number("CONSULTORIO_RESERVED_CACHE_TTL", 60, int),
            available_cache_ttl=_env_number("CONSULTORIO_AVAILABLE_CACHE_TTL", 60, int),
            max_retries=_env_number("CONSULTORIO_MAX_RETRIES", 3, int),
            timeout_backoff=_env_number("CONSULTORIO_TIMEOUT_BACKOFF", 5.0, float),
            error_backoff=_env_number("CONSULTORIO_ERROR_BACKOFF", 1.0, float),
            timezone=os.getenv("CONSULTORIO_TIMEZONE", "America/Argentina/Buenos_Aires"),
            business_day_cutoff=os.getenv("CONSULTORIO_BUSINESS_DAY_CUTOFF", "20:30"),
            admin_number=os.getenv("CONSULTORIO_ADMIN_NUMBER") or None,
            log_state_transitions=log_state_transitions,
        )


def _env_number(name: str, default, cast):
    """Read a numeric env var, keeping the default when it does not parse"""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        logger.warning(f"Invalid {name}={raw!r}, using default {default}")
        return default
