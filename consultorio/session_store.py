"""
Per-phone conversation session persistence

Sessions are stored as JSON under `consultorio:session:<phone>` with a TTL
refreshed on every save. Without Redis the store keeps sessions in a
process-local dict (degraded mode, nothing survives a restart).
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import redis.asyncio as redis

from consultorio.models import ConversationSession

logger = logging.getLogger(__name__)

SESSION_PREFIX = "consultorio:session:"


class SessionStore:
    """
    Session storage keyed by phone number.

    Args:
        redis_client: Async Redis client, or None for in-memory mode
        ttl: Session TTL in seconds
        prefix: Key prefix
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None, ttl: int = 1800, prefix: str = SESSION_PREFIX):
        self.redis_client = redis_client
        self.ttl = ttl
        self.prefix = prefix
        self._local: Dict[str, str] = {}

        if redis_client is None:
            logger.warning("SessionStore running without Redis - sessions are kept in memory only")

    def _key(self, phone: str) -> str:
        return f"{self.prefix}{phone}"

    async def get(self, phone: str) -> Optional[ConversationSession]:
        key = self._key(phone)
        if self.redis_client is not None:
            raw = await self.redis_client.get(key)
        else:
            raw = self._local.get(key)

        if not raw:
            return None

        try:
            return ConversationSession.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Corrupt session for {phone}, discarding: {e}")
            await self.clear(phone)
            return None

    async def save(self, session: ConversationSession) -> None:
        session.updated_at = datetime.now().isoformat()
        key = self._key(session.phone)
        data = json.dumps(session.to_dict())
        if self.redis_client is not None:
            await self.redis_client.setex(key, self.ttl, data)
        else:
            self._local[key] = data

    async def update(self, phone: str, **fields: Any) -> Optional[ConversationSession]:
        """Apply partial changes to a stored session; None when there is none"""
        session = await self.get(phone)
        if session is None:
            return None
        for name, value in fields.items():
            if not hasattr(session, name):
                raise AttributeError(f"ConversationSession has no field '{name}'")
            setattr(session, name, value)
        await self.save(session)
        return session

    async def clear(self, phone: str) -> bool:
        key = self._key(phone)
        if self.redis_client is not None:
            deleted = await self.redis_client.delete(key)
            return bool(deleted)
        return self._local.pop(key, None) is not None

    async def clear_all(self) -> int:
        if self.redis_client is None:
            count = len(self._local)
            self._local.clear()
            return count

        keys_deleted = 0
        cursor = 0
        while True:
            cursor, keys = await self.redis_client.scan(cursor, match=f"{self.prefix}*", count=100)
            if keys:
                keys_deleted += await self.redis_client.delete(*keys)
            if cursor == 0:
                break
        logger.info(f"Sessions cleared: {keys_deleted} sessions deleted")
        return keys_deleted

    async def count(self) -> int:
        if self.redis_client is None:
            return len(self._local)

        active = 0
        cursor = 0
        while True:
            cursor, keys = await self.redis_client.scan(cursor, match=f"{self.prefix}*", count=100)
            active += len(keys)
            if cursor == 0:
                break
        return active
