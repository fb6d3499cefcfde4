"""
Availability gateway for regular appointments

Reads go cache -> connectivity probe -> backend (with retries) -> static
fallback, so a slot list is always returned. Writes are sent once and never
retried, since a retry could submit the same booking twice.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx

from consultorio.cache import TTLCache
from consultorio.config import BookingConfig
from consultorio.fallback import FallbackProvider
from consultorio.models import AppointmentRequest, DEFAULT_SOCIAL_WORK, Slot
from consultorio.retry import RetryPolicy, is_degraded
from consultorio.validation import is_time_past
from shared.health_check import check_service_health

logger = logging.getLogger(__name__)


class AvailabilityGateway:
    """
    Source of regular appointment slots.

    Connectivity is gateway-owned state (`online`), refreshed by every probe.
    Slot reads return their source ("cache", "live" or "fallback") together
    with the slots.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: TTLCache,
        retry_policy: RetryPolicy,
        fallback: FallbackProvider,
        config: BookingConfig,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.client = client
        self.cache = cache
        self.retry_policy = retry_policy
        self.fallback = fallback
        self.config = config
        self.now = now
        self.online = True

    @staticmethod
    def cache_key(date: str) -> str:
        return f"appointments_{date}"

    async def check_connectivity(self) -> bool:
        """Short-timeout probe of the backend health endpoint"""
        result = await check_service_health(
            "scheduling backend", "/health", timeout=self.config.health_timeout, client=self.client
        )
        self.online = result.is_healthy()

        if not self.online:
            logger.warning("Availability gateway in offline mode")
        return self.online

    async def get_available_slots(self, date: str) -> Tuple[List[Slot], str]:
        """
        Available regular slots for a date.

        Args:
            date: Date in YYYY-MM-DD format

        Returns:
            (slots, source) where source is "cache", "live" or "fallback";
            never raises
        """
        cached = self.cache.get(self.cache_key(date))
        if cached is not None:
            logger.debug(f"Using cached slots for {date}")
            return cached, "cache"

        if not await self.check_connectivity():
            return self._fallback_slots(date)

        async def fetch():
            response = await self.client.get(f"/appointments/available/{date}")
            response.raise_for_status()
            return response.json()

        try:
            result = await self.retry_policy.run(fetch)
        except Exception as e:
            logger.error(f"Failed to fetch slots for {date}: {e}")
            self.online = False
            return self._fallback_slots(date)

        if is_degraded(result):
            self.online = False
            return self._fallback_slots(date)

        slots = self._parse_available(result)
        if slots is None:
            logger.error(f"Unexpected availability payload for {date}: {str(result)[:200]}")
            self.online = False
            return self._fallback_slots(date)

        self.cache.set(self.cache_key(date), slots, ttl=self.config.cache_ttl)
        logger.info(f"Fetched {len(slots)} slots for {date}")
        return slots, "live"

    async def get_reserved_slots(self, date: str) -> List[str]:
        """Reserved display-times for a date; empty when offline or on error"""
        if not self.online:
            return []

        try:
            response = await self.client.get(f"/appointments/reserved/{date}")
            response.raise_for_status()
            data = response.json().get("data") or []
            return [str(t) for t in data]
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to fetch reserved slots for {date}: {e}")
            return []

    async def get_bookable_slots(self, date: str, now: datetime) -> Tuple[List[Slot], str]:
        """
        Slots that can be offered right now.

        Drops unavailable and already-reserved slots, and past times when the
        date is today. The source of the underlying list is passed through.
        """
        slots, source = await self.get_available_slots(date)
        reserved = set(await self.get_reserved_slots(date))

        bookable = [
            slot for slot in slots
            if slot.is_available
            and slot.display_time not in reserved
            and not is_time_past(date, slot.time, now)
        ]
        return bookable, source

    async def create_appointment(self, request: AppointmentRequest) -> Dict[str, Any]:
        """
        Submit a regular appointment.

        Returns:
            {"data": backend body} on success, or
            {"error": True, "message": str, "reason": str} on failure
        """
        payload = {
            "isSobreturno": False,
            "status": "pending",
            "socialWork": DEFAULT_SOCIAL_WORK,
            "attended": False,
            **request.to_payload(),
        }
        if not payload.get("clientName"):
            payload["clientName"] = "Sin nombre"
        if not payload.get("phone"):
            payload["phone"] = ""
        if not payload.get("date"):
            payload["date"] = self.now().strftime("%Y-%m-%d")
        if not payload.get("time"):
            payload["time"] = "10:00"

        logger.info(f"Creating appointment: date={payload['date']} time={payload['time']}")

        try:
            response = await self.client.post("/appointments", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Connection error creating appointment: {type(e).__name__}: {e}")
            return {"error": True, "message": "Error de conexión al crear la cita", "reason": "connection"}

        if response.is_error:
            message = _error_message(response) or "Error al crear la cita"
            reason = "conflict" if response.status_code == 409 else "rejected"
            logger.warning(f"Backend rejected appointment ({response.status_code}): {message}")
            return {"error": True, "message": message, "reason": reason}

        try:
            body = response.json()
        except ValueError:
            return {"error": True, "message": "Respuesta inválida del servidor", "reason": "rejected"}

        if not body.get("success"):
            return {
                "error": True,
                "message": body.get("message") or "Error al crear la cita",
                "reason": "rejected",
            }

        self.cache.delete(self.cache_key(payload["date"]))
        logger.info(f"Appointment created: {body.get('data', {}).get('_id')}")
        return {"data": body}

    def _fallback_slots(self, date: str) -> Tuple[List[Slot], str]:
        logger.info(f"Using fallback slots for {date}")
        return self.fallback.get_slots(date), "fallback"

    @staticmethod
    def _parse_available(body: Any) -> Optional[List[Slot]]:
        """Flatten {success, data: {available: {morning, afternoon}}} into slots"""
        if not isinstance(body, dict) or not body.get("success"):
            return None
        available = (body.get("data") or {}).get("available")
        if not isinstance(available, dict):
            return None
        items = list(available.get("morning") or []) + list(available.get("afternoon") or [])
        try:
            return [Slot.from_dict(item) for item in items if item.get("time") or item.get("displayTime")]
        except (KeyError, TypeError, AttributeError):
            return None


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message")
    return None
