"""
Bounded retries with exponential backoff for backend calls

Timeouts and refused connections are expected (the backend is slow, not
down), so they back off longer and, once retries are exhausted, come back as
a degraded result the caller can fall back from. Any other failure is
re-raised after the last attempt.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

import httpx

logger = logging.getLogger(__name__)

TIMEOUT_ERRORS = (httpx.TimeoutException, httpx.ConnectError, asyncio.TimeoutError)

DEGRADED_MESSAGE = (
    "El servidor está tardando en responder. Por favor, inténtalo de nuevo más tarde."
)


def is_timeout_error(error: BaseException) -> bool:
    """True for connection/timeout failures"""
    return isinstance(error, TIMEOUT_ERRORS)


def degraded_result() -> Dict[str, Any]:
    return {"error": True, "reason": "timeout", "message": DEGRADED_MESSAGE}


def is_degraded(result: Any) -> bool:
    """True when result is the non-throwing timeout signal"""
    return isinstance(result, dict) and result.get("error") is True and result.get("reason") == "timeout"


class RetryPolicy:
    """
    Retry an async operation a bounded number of times.

    Args:
        max_retries: Total attempts (default: 3)
        timeout_backoff: First wait after a timeout-class failure, doubled each attempt
        error_backoff: First wait after any other failure, doubled each attempt
        sleep: Awaitable sleep function, injectable for tests
    """

    def __init__(
        self,
        max_retries: int = 3,
        timeout_backoff: float = 5.0,
        error_backoff: float = 1.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {max_retries}")
        self.max_retries = max_retries
        self.timeout_backoff = timeout_backoff
        self.error_backoff = error_backoff
        self._sleep = sleep

    def backoff_for(self, attempt: int, error: BaseException) -> float:
        """Delay before the attempt following `attempt` (0-based)"""
        base = self.timeout_backoff if is_timeout_error(error) else self.error_backoff
        return base * (2 ** attempt)

    async def run(self, operation: Callable[[], Awaitable[Any]]) -> Any:
        """
        Invoke operation until it succeeds or attempts run out.

        Returns:
            The operation's result, or degraded_result() when the last failure
            was timeout-class

        Raises:
            The last error, when it was not timeout-class
        """
        last_error: BaseException = None

        for attempt in range(self.max_retries):
            try:
                return await operation()
            except Exception as e:
                last_error = e
                reason = type(e).__name__ if is_timeout_error(e) else str(e) or type(e).__name__
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_retries} failed: {reason}"
                )

                if attempt < self.max_retries - 1:
                    delay = self.backoff_for(attempt, e)
                    logger.info(f"Waiting {delay:.1f}s before the next attempt...")
                    await self._sleep(delay)

        if is_timeout_error(last_error):
            logger.error(f"Backend kept timing out after {self.max_retries} attempts")
            return degraded_result()

        raise last_error


async def retry_request(operation: Callable[[], Awaitable[Any]], max_retries: int = 3) -> Any:
    """Run operation under a default RetryPolicy"""
    return await RetryPolicy(max_retries=max_retries).run(operation)
