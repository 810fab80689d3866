import re
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request, Response

from gatehouse.logging import get_logger
from gatehouse.service.errors import RateLimitedError, ServerError
from gatehouse.storage.keyvalue import KeyValueStore

logger = get_logger(__name__)

_DURATION_RE = re.compile(r"^(\d+)([smhd])$")
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

KEY_STRATEGIES = ("ip", "account", "endpoint")


@dataclass(frozen=True)
class RateLimitPreset:
    max_requests: int
    window_seconds: int


RATE_LIMITS: Dict[str, RateLimitPreset] = {
    "DEFAULT": RateLimitPreset(100, 60),
    "API": RateLimitPreset(1000, 3600),
    "AUTH": RateLimitPreset(11, 300),
    "STATIC": RateLimitPreset(1000, 60),
}


def parse_window(value: int | str) -> int:
    """Convert ``3600`` or ``"1h"`` style windows to seconds."""
    if isinstance(value, bool):
        raise ValueError(f"invalid rate-limit window: {value!r}")
    if isinstance(value, int):
        if value <= 0:
            raise ValueError(f"invalid rate-limit window: {value!r}")
        return value
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ValueError(f"invalid rate-limit window: {value!r}")
    seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    if seconds <= 0:
        raise ValueError(f"invalid rate-limit window: {value!r}")
    return seconds


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded
    return request.client.host if request.client else ""


@dataclass
class RateLimitStatus:
    remaining: int
    reset: int
    total: int

    def to_dict(self) -> Dict[str, int]:
        return {"remaining": self.remaining, "reset": self.reset, "total": self.total}


class RateLimiter:
    """Fixed-window counters in the key-value store.

    :meth:`is_allowed` never raises; a store failure lets the request through
    with ``remaining=1``.
    """

    def __init__(self, store: KeyValueStore, *, clock: Callable[[], float] = time.time) -> None:
        self.store = store
        self._clock = clock

    def _now(self) -> int:
        return int(self._clock())

    async def is_allowed(
        self,
        key: str,
        *,
        max_requests: int = RATE_LIMITS["DEFAULT"].max_requests,
        window_seconds: int = RATE_LIMITS["DEFAULT"].window_seconds,
        key_prefix: str = "rate:",
    ) -> RateLimitStatus:
        store_key = f"{key_prefix}{key}"
        try:
            count = await self.store.get(store_key)
            ttl = await self.store.ttl(store_key)

            if not count or ttl == -2:
                await self.store.set(store_key, "1", ex=window_seconds)
                return RateLimitStatus(
                    remaining=max_requests - 1,
                    reset=self._now() + window_seconds,
                    total=max_requests,
                )

            current = int(count)
            reset = self._now() + (ttl if ttl >= 0 else window_seconds)
            if current >= max_requests:
                return RateLimitStatus(remaining=0, reset=reset, total=max_requests)

            await self.store.incr(store_key)
            return RateLimitStatus(
                remaining=max_requests - current - 1, reset=reset, total=max_requests
            )
        except Exception as exc:
            logger.error("rate_limit_check_failed", key=store_key, error=str(exc))
            return RateLimitStatus(
                remaining=1, reset=self._now() + window_seconds, total=max_requests
            )

    async def reset_limit(self, key: str) -> None:
        await self.store.delete(f"rate:{key}")


class RateLimitGuard:
    """FastAPI dependency enforcing a counter keyed by ip, account or endpoint.

    Store errors fail the request with a 500 ``ServerError`` rather than
    bypassing the limit. Without a session the account strategy counts against the
    client address.
    """

    def __init__(
        self,
        *,
        max_requests: int,
        window: int | str,
        key_prefix: Optional[str] = None,
        key_strategy: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if key_strategy is not None and key_strategy not in KEY_STRATEGIES:
            raise ValueError(f"unknown key strategy: {key_strategy!r}")
        self.max_requests = max_requests
        self.window_seconds = parse_window(window)
        self.key_prefix = key_prefix
        self.key_strategy = key_strategy
        self._clock = clock

    async def build_key(self, request: Request) -> str:
        ip = account = endpoint = ""
        if self.key_strategy == "ip":
            ip = client_ip(request)
        elif self.key_strategy == "account":
            account = await _session_user_id(request)
            if not account:
                ip = client_ip(request)
                account = "anon" if ip else ""
        elif self.key_strategy == "endpoint":
            endpoint = request.url.path
        parts = [self.key_prefix or "rl"]
        if account == "anon":
            parts.extend(["anon", ip])
        else:
            parts.extend([ip, account, endpoint])
        return ":".join(part for part in parts if part)

    async def __call__(self, request: Request, response: Response) -> None:
        store: KeyValueStore = request.app.state.runtime.kv
        try:
            key = await self.build_key(request)
            current = await store.get(key)
        except Exception as exc:
            logger.error("rate_limit_store_failed", prefix=self.key_prefix, error=str(exc))
            raise ServerError("Internal server error") from exc

        count = int(current) if current else 0
        if count >= self.max_requests:
            logger.warning("rate_limited", key=key, limit=self.max_requests)
            raise RateLimitedError(
                "Too many requests",
                retry_after=self.window_seconds,
                detail=f"Rate limit exceeded. Try again in {self.window_seconds} seconds",
            )

        try:
            await store.incr(key)
            if not current:
                await store.expire(key, self.window_seconds)
        except Exception as exc:
            logger.error("rate_limit_store_failed", key=key, error=str(exc))
            raise ServerError("Internal server error") from exc

        response.headers["X-RateLimit-Limit"] = str(self.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.max_requests - count - 1))
        response.headers["X-RateLimit-Reset"] = str(int(self._clock()) + self.window_seconds)

    async def reset(self, request: Request) -> None:
        """Drop the caller's bucket for this guard."""
        store: KeyValueStore = request.app.state.runtime.kv
        await store.delete(await self.build_key(request))


async def _session_user_id(request: Request) -> str:
    sid = request.cookies.get("sid")
    if not sid:
        return ""
    session = await request.app.state.runtime.sessions.get(sid)
    return str(session.get("userId") or "") if session else ""
