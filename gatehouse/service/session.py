from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, Optional

from gatehouse.logging import get_logger
from gatehouse.storage.cache import CacheService

logger = get_logger(__name__)

SESSION_TTL_SECONDS = 24 * 60 * 60
OAUTH_STATE_TTL_SECONDS = 10 * 60


class SessionManager:
    """Opaque server-side sessions and single-use OAuth state tokens.

    Sessions live at ``session:<id>`` with a sliding TTL; every successful
    :meth:`get` pushes expiry back to the full TTL.
    """

    def __init__(
        self,
        cache: CacheService,
        *,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        state_ttl_seconds: int = OAUTH_STATE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.state_ttl_seconds = state_ttl_seconds
        self._clock = clock

    @staticmethod
    def _key(session_id: str) -> str:
        return f"session:{session_id}"

    async def create(self, user_id: str | int, data: Optional[Dict[str, Any]] = None) -> str:
        session_id = str(uuid.uuid4())
        payload: Dict[str, Any] = {"userId": str(user_id)}
        payload.update(data or {})
        payload["created"] = int(self._clock() * 1000)
        await self.cache.set(self._key(session_id), payload, ttl=self.ttl_seconds)
        logger.info("session_created", user_id=str(user_id))
        return session_id

    async def get(self, session_id: Optional[str]) -> Optional[Dict[str, Any]]:
        if not session_id:
            return None
        key = self._key(session_id)
        session = await self.cache.get(key)
        if not isinstance(session, dict):
            return None
        try:
            await self.cache.expire(key, self.ttl_seconds)
        except Exception as exc:
            logger.warning("session_refresh_failed", error=str(exc))
        return session

    async def destroy(self, session_id: str) -> None:
        await self.cache.delete(self._key(session_id))

    async def generate_state(self) -> str:
        state = str(uuid.uuid4())
        await self.cache.set(f"oauth_state:{state}", True, ttl=self.state_ttl_seconds)
        return state

    async def verify_state(self, state: Optional[str]) -> bool:
        """Consume ``state``; only the first caller for a given value gets True."""
        if not state:
            return False
        return bool(await self.cache.pop(f"oauth_state:{state}"))
