"""
Overflow ("sobreturno") allocator

Each day has exactly ten numbered overflow slots, each bound to one
wall-clock time. Availability shown to users is a snapshot; a booking is only
committed after an authoritative re-check, and the backend's own conflict
response settles any remaining race. Nothing here locks or serializes
concurrent attempts.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from consultorio.cache import TTLCache
from consultorio.config import BookingConfig
from consultorio.models import OverflowSlot, SOBRETURNO_STATUSES, SobreturnoRequest
from consultorio.retry import RetryPolicy, is_degraded
from consultorio.validation import is_time_past
from shared.health_check import check_service_health

logger = logging.getLogger(__name__)

NOT_AVAILABLE_MESSAGE = "El sobreturno ya no está disponible"
CONFLICT_MESSAGE = "Este sobreturno ya ha sido reservado por otro paciente."
OFFLINE_MESSAGE = "No hay conexión con el servidor. Por favor, intente más tarde."


class BackendUnavailableError(Exception):
    """The backend could not be reached and no usable cached data exists"""


class OverflowAllocator:
    """
    Allocation of the ten daily overflow slots.

    Args:
        client: httpx client bound to the backend base URL
        cache: Process-wide TTL cache
        retry_policy: Retry policy for backend reads
        config: Booking configuration (holds the number -> time table)
        now: Callable returning the current local datetime
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        cache: TTLCache,
        retry_policy: RetryPolicy,
        config: BookingConfig,
        now: Callable[[], datetime] = datetime.now,
    ):
        self.client = client
        self.cache = cache
        self.retry_policy = retry_policy
        self.config = config
        self.times: Dict[int, str] = dict(config.sobreturno_times)
        self.numbers_by_time: Dict[str, int] = {t: n for n, t in self.times.items()}
        self._now = now
        self.online = True

    # ------------------------------------------------------------------
    # Cache keys
    # ------------------------------------------------------------------

    @staticmethod
    def cache_key(date: str, kind: str = "reserved", number: Optional[int] = None) -> str:
        key = f"sobreturnos_{kind}_{date}"
        return f"{key}_{number}" if number is not None else key

    def clear_date_cache(self, date: str) -> None:
        """Drop every cached view for a date so the next read refetches"""
        keys = [self.cache_key(date), self.cache_key(date, "available")]
        keys += [self.cache_key(date, "validate", n) for n in self.times]
        for key in keys:
            self.cache.delete(key)
        logger.info(f"Cleared overflow caches for {date}")

    def clear_cache(self) -> None:
        for key in self.cache.keys():
            if key.startswith("sobreturnos_"):
                self.cache.delete(key)
        logger.info("Cleared all overflow caches")

    # ------------------------------------------------------------------
    # Number <-> time table
    # ------------------------------------------------------------------

    def resolve_number(self, number: Any, time: Optional[str]) -> Optional[int]:
        """
        Number for a backend record.

        Uses the record's own number when valid, else reverse-looks-up its
        time. Returns None instead of guessing.
        """
        try:
            value = int(number) if number is not None else None
        except (TypeError, ValueError):
            value = None
        if value in self.times:
            return value
        if time in self.numbers_by_time:
            return self.numbers_by_time[time]
        return None

    def _to_reservation(self, record: Any, date: str) -> Optional[OverflowSlot]:
        if not isinstance(record, dict):
            return None
        record_date = str(record.get("date") or date)[:10]
        if record_date != date:
            return None
        if record.get("isSobreturno") is False:
            return None
        status = record.get("status") or "confirmed"
        if status not in SOBRETURNO_STATUSES:
            logger.warning(f"Unknown overflow status {status!r}, treating as confirmed")
            status = "confirmed"
        if status in ("available", "cancelled"):
            return None

        number = self.resolve_number(record.get("sobreturnoNumber"), record.get("time"))
        if number is None:
            logger.warning(f"Dropping overflow record with unknown slot: {record}")
            return None
        return OverflowSlot(number=number, time=self.times[number], status=status)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def check_connectivity(self) -> bool:
        result = await check_service_health(
            "sobreturnos backend", "/sobreturnos/health", timeout=self.config.health_timeout, client=self.client
        )
        self.online = result.is_healthy()
        return self.online

    async def get_reserved_sobreturnos(self, date: str, use_cache: bool = True) -> List[OverflowSlot]:
        """
        Current non-cancelled reservations for a date.

        Args:
            date: Date in YYYY-MM-DD format
            use_cache: Serve a cached list when one is fresh

        Raises:
            BackendUnavailableError: backend unreachable and nothing usable cached
        """
        key = self.cache_key(date)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        async def fetch():
            response = await self.client.get(
                "/sobreturnos", params={"date": date, "isSobreturno": "true"}
            )
            response.raise_for_status()
            return response.json()

        try:
            result = await self.retry_policy.run(fetch)
        except Exception as e:
            logger.error(f"Failed to fetch overflow reservations for {date}: {e}")
            return self._stale_reservations(key, use_cache, e)

        if is_degraded(result):
            return self._stale_reservations(key, use_cache, None)

        records = result.get("data") if isinstance(result, dict) else result
        if not isinstance(records, list):
            logger.error(f"Unexpected overflow reservations payload: {str(result)[:200]}")
            return self._stale_reservations(key, use_cache, None)

        reservations: Dict[int, OverflowSlot] = {}
        for record in records:
            reservation = self._to_reservation(record, date)
            if reservation is not None:
                reservations.setdefault(reservation.number, reservation)

        result_list = [reservations[n] for n in sorted(reservations)]
        self.cache.set(key, result_list, ttl=self.config.reserved_cache_ttl)
        logger.info(f"Overflow reservations for {date}: {[r.number for r in result_list]}")
        return result_list

    def _stale_reservations(self, key: str, use_cache: bool, error: Optional[Exception]) -> List[OverflowSlot]:
        self.online = False
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                logger.info("Using cached overflow reservations")
                return cached
        raise BackendUnavailableError(OFFLINE_MESSAGE) from error

    async def get_available_sobreturnos(self, date: str) -> List[OverflowSlot]:
        """
        Overflow slots still free for a date.

        Complement of the reservations against the ten-slot table; slots whose
        time has passed are excluded when the date is today.

        Raises:
            BackendUnavailableError: availability cannot be computed
        """
        key = self.cache_key(date, "available")
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if await self.check_connectivity():
            reserved = await self.get_reserved_sobreturnos(date)
        else:
            reserved = self.cache.get(self.cache_key(date))
            if reserved is None:
                raise BackendUnavailableError(OFFLINE_MESSAGE)
            logger.info("Offline, computing overflow availability from cached reservations")

        taken = {r.number for r in reserved}
        now = self._now()
        available = [
            OverflowSlot(number=number, time=time, status="available")
            for number, time in sorted(self.times.items())
            if number not in taken and not is_time_past(date, time, now)
        ]

        self.cache.set(key, available, ttl=self.config.available_cache_ttl)
        logger.info(f"Overflow slots available for {date}: {[s.number for s in available]}")
        return available

    async def refresh_available_sobreturnos(self, date: str) -> List[OverflowSlot]:
        self.clear_date_cache(date)
        return await self.get_available_sobreturnos(date)

    async def is_sobreturno_available(self, date: str, number: int, use_cache: bool = False) -> bool:
        """
        Authoritative availability check, made right before a commit.

        Asks the backend's validate endpoint; if that fails, decides from a
        freshly fetched reservation list. Never trusts the availability view.

        Raises:
            BackendUnavailableError: neither source could be reached
        """
        if number not in self.times:
            logger.info(f"Invalid overflow number: {number}")
            return False

        key = self.cache_key(date, "validate", number)
        if use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return cached

        available: Optional[bool] = None
        try:
            response = await self.client.get(
                "/sobreturnos/validate",
                params={"date": date, "sobreturnoNumber": number},
            )
            response.raise_for_status()
            flag = response.json().get("available")
            if isinstance(flag, bool):
                available = flag
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.warning(f"Validate endpoint failed for {date} #{number}: {e}")

        if available is None:
            reserved = await self.get_reserved_sobreturnos(date, use_cache=False)
            available = number not in {r.number for r in reserved}

        self.cache.set(key, available, ttl=self.config.reserved_cache_ttl)
        logger.info(f"Overflow {date} #{number} available={available}")
        return available

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create_sobreturno(self, request: SobreturnoRequest) -> Dict[str, Any]:
        """
        Book an overflow slot.

        Returns:
            {"data": {"success": True, "data": backend body}} on success, or
            {"error": True, "message": str, "reason": str} where reason is one of
            not_available, conflict, connection, rejected
        """
        date, number = request.date, request.sobreturno_number
        logger.info(f"Creating overflow booking: date={date} number={number}")

        try:
            if not await self.is_sobreturno_available(date, number):
                self.clear_date_cache(date)
                return {"error": True, "message": NOT_AVAILABLE_MESSAGE, "reason": "not_available"}
        except BackendUnavailableError:
            return {"error": True, "message": OFFLINE_MESSAGE, "reason": "connection"}

        payload = request.to_payload()
        bound_time = self.times[number]
        if payload["time"] != bound_time:
            logger.warning(f"Overflow #{number} is bound to {bound_time}, ignoring requested {payload['time']}")
            payload["time"] = bound_time

        try:
            response = await self.client.post("/sobreturnos", json=payload)
        except httpx.HTTPError as e:
            logger.error(f"Connection error creating overflow booking: {type(e).__name__}: {e}")
            return {"error": True, "message": OFFLINE_MESSAGE, "reason": "connection"}

        if response.status_code == 409 or "already exists" in response.text.lower():
            logger.info(f"Backend reports overflow {date} #{number} already taken")
            self.clear_date_cache(date)
            return {"error": True, "message": CONFLICT_MESSAGE, "reason": "conflict"}

        if response.is_error:
            message = _error_message(response) or "Error al crear el sobreturno"
            logger.warning(f"Backend rejected overflow booking ({response.status_code}): {message}")
            return {"error": True, "message": message, "reason": "rejected"}

        try:
            body = response.json()
        except ValueError:
            body = None

        if not isinstance(body, dict) or not (body.get("success") or body.get("_id")):
            logger.error(f"Invalid overflow booking response: {str(body)[:200]}")
            return {"error": True, "message": "Respuesta inválida del servidor", "reason": "rejected"}

        self.clear_date_cache(date)
        logger.info(f"Overflow booking created: {date} #{number}")
        return {"data": {"success": True, "data": body}}


def _error_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message")
    return None
