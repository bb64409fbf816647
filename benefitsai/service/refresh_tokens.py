from __future__ import annotations

import asyncio
import hashlib
import secrets
from typing import Any, Awaitable, Optional, Protocol, TypeVar

from benefitsai.logging import get_logger
from benefitsai.service.errors import StoreUnavailable
from benefitsai.storage.errors import DuplicateToken
from benefitsai.storage.models import RefreshTokenRecord, TokenState
from benefitsai.storage.redis_cache import NEW_TOKEN_EXISTS, ROTATED

logger = get_logger(__name__)

T = TypeVar("T")

# 48 random bytes -> 64 url-safe characters
TOKEN_BYTES = 48


class RefreshTokenBackend(Protocol):
    async def store_refresh_token(self, token_hash: str, user_id: str, ttl_seconds: int) -> bool: ...

    async def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]: ...

    async def rotate_refresh_token(
        self, old_hash: str, new_hash: str, user_id: str, ttl_seconds: int
    ) -> int: ...

    async def revoke_refresh_token(self, token_hash: str) -> bool: ...

    async def revoke_user_refresh_tokens(self, user_id: str) -> int: ...


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class RefreshTokenStore:
    """Rotate-on-use refresh tokens with reuse detection.

    Per token: ``issued -> consumed | revoked | expired``; terminal states are
    never valid again. Only SHA-256 digests of token values reach the backend.
    Backend errors and timeouts surface as :class:`StoreUnavailable` so auth
    callers fail closed.
    """

    def __init__(self, backend: RefreshTokenBackend, *, timeout: float = 2.0) -> None:
        self.backend = backend
        self.timeout = timeout

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            logger.error("refresh_store_timeout", operation=operation, timeout=self.timeout)
            raise StoreUnavailable("token store unavailable") from exc
        except DuplicateToken:
            raise
        except Exception as exc:
            logger.error(
                "refresh_store_error",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable("token store unavailable") from exc

    async def store(self, token: str, user_id: str, ttl_seconds: int) -> None:
        created = await self._call(
            "store",
            self.backend.store_refresh_token(hash_token(token), user_id, ttl_seconds),
        )
        if not created:
            raise DuplicateToken({"user_id": user_id})

    async def verify(self, token: Optional[str]) -> Optional[dict[str, Any]]:
        """Return ``{"user_id": ...}`` for an issued, unexpired token, else None."""
        record = await self.lookup(token)
        if record is None or record.effective_state() is not TokenState.ISSUED:
            return None
        return {"user_id": record.user_id}

    async def lookup(self, token: Optional[str]) -> Optional[RefreshTokenRecord]:
        """Fetch the record in any state; used to attribute reuse to its owner."""
        if not token:
            return None
        return await self._call("lookup", self.backend.get_refresh_token(hash_token(token)))

    async def rotate(
        self, old_token: str, new_token: str, user_id: str, ttl_seconds: int
    ) -> bool:
        """Consume ``old_token`` and issue ``new_token`` in one atomic step.

        False means ``old_token`` was not issued to ``user_id`` at the moment of
        the call; callers treat that as reuse.
        """
        result = await self._call(
            "rotate",
            self.backend.rotate_refresh_token(
                hash_token(old_token), hash_token(new_token), user_id, ttl_seconds
            ),
        )
        if result == NEW_TOKEN_EXISTS:
            raise DuplicateToken({"user_id": user_id})
        return result == ROTATED

    async def revoke(self, token: Optional[str]) -> None:
        if not token:
            return
        await self._call("revoke", self.backend.revoke_refresh_token(hash_token(token)))

    async def revoke_all(self, user_id: str) -> int:
        revoked = await self._call(
            "revoke_all", self.backend.revoke_user_refresh_tokens(user_id)
        )
        logger.info("refresh_tokens_revoked", user_id=user_id, revoked=revoked)
        return revoked
