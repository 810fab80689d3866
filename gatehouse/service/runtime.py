from __future__ import annotations

import asyncio
from typing import Any, Optional
from urllib.parse import urlparse, urlunparse

import httpx
from fastapi import Request

from gatehouse.config import Settings
from gatehouse.logging import get_logger
from gatehouse.service.billing import BillingService
from gatehouse.service.oauth import OAuthService
from gatehouse.service.rate_limiter import RateLimiter
from gatehouse.service.session import SessionManager
from gatehouse.service.subscription import SubscriptionService
from gatehouse.service.users import UserService
from gatehouse.storage.cache import CacheService
from gatehouse.storage.database import Database
from gatehouse.storage.keyvalue import KeyValueStore, MemoryKeyValueStore, connect_with_retry
from gatehouse.storage.users import MemoryUserRepository, PostgresUserRepository

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a connection URL with ``***``."""
    if not url:
        return url
    parsed = urlparse(url)
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(parsed._replace(netloc=netloc))


class Runtime:
    """Holds the service instances for one FastAPI app.

    Built once per app by :func:`gatehouse.app.create_app` (or handed in by
    tests) and reached from handlers through ``Depends(get_runtime)``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        kv: KeyValueStore,
        repository: Any,
        database: Optional[Database] = None,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
        stripe_client: Any = None,
    ) -> None:
        self.settings = settings
        self.kv = kv
        self.database = database
        self.repository = repository
        self.cache = CacheService(kv)
        self.sessions = SessionManager(self.cache)
        self.rate_limiter = RateLimiter(kv)
        self.users = UserService(repository, self.cache)
        self.subscriptions = SubscriptionService(repository)
        self.oauth = OAuthService(settings, transport=oauth_transport)
        self.billing: Optional[BillingService] = (
            BillingService(settings, self.cache, client=stripe_client)
            if settings.billing_enabled
            else None
        )
        if self.billing is None:
            logger.warning("billing_disabled", reason="STRIPE_SECRET_KEY not set")

    @classmethod
    def in_memory(cls, settings: Settings, **kwargs: Any) -> "Runtime":
        return cls(settings, kv=MemoryKeyValueStore(), repository=MemoryUserRepository(), **kwargs)

    @classmethod
    async def connect(cls, settings: Settings) -> "Runtime":
        """Open the key-value store and database named by ``settings``."""
        logger.info(
            "runtime_init_started",
            use_memory_store=settings.use_memory_store,
            test_mode=settings.test_mode,
        )
        if settings.use_memory_store:
            return cls.in_memory(settings)

        kv = await connect_with_retry(
            settings.redis_url,
            password=settings.redis_password,
            max_retries=settings.redis_connect_retries,
            delay=settings.redis_connect_delay_seconds,
        )
        logger.info("kv_ready", url=_mask_url_password(settings.redis_url))
        database = None
        try:
            database = await asyncio.to_thread(
                Database,
                settings.database_url,
                min_size=settings.database_pool_min_size,
                max_size=settings.database_pool_max_size,
            )
            await asyncio.to_thread(database.bootstrap_schema)
            await asyncio.to_thread(database.verify_connection)
        except Exception as exc:
            logger.error(
                "database_init_failed",
                url=_mask_url_password(settings.database_url),
                error=str(exc),
            )
            if database is not None:
                await asyncio.to_thread(database.close)
            await kv.close()
            raise
        return cls(settings, kv=kv, repository=PostgresUserRepository(database), database=database)

    async def close(self) -> None:
        try:
            await self.kv.close()
        except Exception as exc:
            logger.warning("kv_close_failed", error=str(exc))
        if self.database is not None:
            await asyncio.to_thread(self.database.close)
        logger.info("runtime_closed")


def get_runtime(request: Request) -> Runtime:
    """FastAPI dependency returning the app's :class:`Runtime`."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise RuntimeError("runtime not initialised; is the app lifespan running?")
    return runtime
