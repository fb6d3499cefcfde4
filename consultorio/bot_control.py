"""
Bot on/off switch and per-conversation pause

An operator can turn the whole bot off, or silence it for one phone number
while a human takes over. A paused conversation resumes on its own after
48 hours.
"""

import logging
import time
from typing import Callable, List, Tuple

from consultorio.cache import TTLCache

logger = logging.getLogger(__name__)

PAUSE_TTL = 48 * 60 * 60


class BotControl:
    def __init__(self, pause_ttl: float = PAUSE_TTL, clock: Callable[[], float] = time.monotonic):
        self.active = True
        self._paused = TTLCache(default_ttl=pause_ttl, clock=clock)

    def is_active(self) -> bool:
        return self.active

    def toggle_active(self) -> bool:
        """Flip the global switch and return the new state"""
        self.active = not self.active
        logger.info(f"Bot {'activated' if self.active else 'deactivated'}")
        return self.active

    def is_conversation_active(self, phone: str) -> bool:
        return not self._paused.has(phone)

    def toggle_conversation(self, phone: str) -> bool:
        """Pause or resume one conversation; returns True when it is active afterwards"""
        if self._paused.has(phone):
            self._paused.delete(phone)
            logger.info(f"Conversation {phone} resumed")
            return True

        self._paused.set(phone, time.time())
        logger.info(f"Conversation {phone} paused for {self._paused.default_ttl / 3600:.0f}h")
        return False

    def paused_conversations(self) -> List[Tuple[str, float]]:
        """(phone, remaining_seconds) for every paused conversation"""
        result = []
        for phone in self._paused.keys():
            remaining = self._paused.remaining(phone)
            if remaining is not None:
                result.append((phone, remaining))
        return result
