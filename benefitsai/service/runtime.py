from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlparse, urlunparse

from benefitsai.config import Settings, get_settings
from benefitsai.logging import get_logger, sanitize_error_message
from benefitsai.service.auth import AuthService, UserDirectory
from benefitsai.service.identity import IdentityProvider, build_identity_provider
from benefitsai.service.rate_limit import RateLimiter
from benefitsai.service.refresh_tokens import RefreshTokenStore
from benefitsai.service.session import SessionCodec, SessionIssuer
from benefitsai.service.users import UserAdminService
from benefitsai.service.verifier import TokenVerifier
from benefitsai.storage.memory import MemoryCache, MemoryStore
from benefitsai.storage.postgres import PostgresStore
from benefitsai.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Application context: one instance per process, built at startup.

    Holds every client and service; request handlers receive it through a
    FastAPI dependency instead of reaching for module globals.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Optional[UserDirectory] = None,
        cache: Any = None,
        identity_provider: Optional[IdentityProvider] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
            identity_provider=self.settings.identity_provider.value,
        )
        self.store = store if store is not None else self._build_store()
        self.cache = cache if cache is not None else self._build_cache(clock)
        self.identity_provider = identity_provider or build_identity_provider(self.settings)

        self.codec = SessionCodec.from_settings(self.settings, clock=clock)
        self.verifier = TokenVerifier(
            self.identity_provider,
            self.codec,
            cutoffs=self.cache,
            provider_timeout=self.settings.identity_provider_timeout_seconds,
            store_timeout=self.settings.store_timeout_seconds,
        )
        self.issuer = SessionIssuer(self.codec, self.settings, verifier=self.verifier)
        self.refresh_tokens = RefreshTokenStore(
            self.cache, timeout=self.settings.store_timeout_seconds
        )
        self.rate_limiter = RateLimiter(
            self.cache, timeout=self.settings.store_timeout_seconds, clock=clock
        )
        self.auth = AuthService(
            directory=self.store,
            verifier=self.verifier,
            issuer=self.issuer,
            refresh_tokens=self.refresh_tokens,
            cutoffs=self.cache,
            settings=self.settings,
            clock=clock,
        )
        self.users = UserAdminService(self.store, self.auth)

    def _build_store(self) -> UserDirectory:
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            store = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url, timeout=self.settings.store_timeout_seconds
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=sanitize_error_message(str(exc)),
            )
            raise
        logger.info("runtime_store_initialized", store_type=store_type)
        return store

    def _build_cache(self, clock: Callable[[], float]):
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.store_timeout_seconds,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
            raise RuntimeError(
                "Redis is required for refresh tokens, session revocation and rate limits; "
                "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
            ) from redis_error

        fallback_mode = "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=sanitize_error_message(str(redis_error)) if redis_error else "redis_url_missing",
            message=(
                f"Running without Redis under {fallback_mode}; refresh tokens, session "
                "revocation and rate limits are in-memory, non-durable and not shared "
                "between workers."
            ),
            mode=fallback_mode,
        )
        return MemoryCache(clock=clock)

    async def health(self) -> Dict[str, str]:
        checks: Dict[str, str] = {}
        try:
            checks["store"] = "ok" if self.store.ping() else "degraded"
        except Exception as exc:
            logger.error("health_store_failed", error_type=type(exc).__name__)
            checks["store"] = "unavailable"
        try:
            healthy = await asyncio.wait_for(
                self.cache.ping(), timeout=self.settings.store_timeout_seconds
            )
            checks["cache"] = "ok" if healthy else "degraded"
        except Exception as exc:
            logger.error("health_cache_failed", error_type=type(exc).__name__)
            checks["cache"] = "unavailable"
        return checks

    async def close(self) -> None:
        await self.identity_provider.close()
        await self.cache.close()
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()
