from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import Callable, Optional, Protocol, Tuple

from benefitsai.logging import get_logger

logger = get_logger(__name__)

ANONYMOUS = "anonymous"


class RateWindowBackend(Protocol):
    async def hit_rate_window(self, key: str, window_ms: int) -> Tuple[int, int]: ...


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: int
    limit: int = 0

    @property
    def reset_seconds(self) -> int:
        """Epoch seconds at which the window resets."""
        return math.ceil(self.reset_at / 1000)

    def retry_after(self, now_ms: Optional[int] = None) -> int:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        return max(1, math.ceil((self.reset_at - now_ms) / 1000))

    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_seconds),
        }


def rate_limit_key(endpoint_class: str, client_ip: Optional[str], user_id: Optional[str]) -> str:
    return f"{endpoint_class}:{client_ip or 'unknown'}:{user_id or ANONYMOUS}"


class RateLimiter:
    """Fixed-window request counter over a shared backend.

    The increment and the limit comparison happen in one backend call, so
    concurrent workers cannot both slip past the last slot. When the backend
    fails the request is allowed and the error is logged.
    """

    def __init__(
        self,
        backend: RateWindowBackend,
        *,
        timeout: float = 2.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.backend = backend
        self.timeout = timeout
        self._clock = clock

    async def check(self, key: str, max_requests: int, window_ms: int) -> RateLimitResult:
        now_ms = int(self._clock() * 1000)
        if max_requests <= 0:
            return RateLimitResult(True, 0, now_ms, limit=max_requests)
        if window_ms <= 0:
            logger.warning("rate_limit_invalid_window", key=key, window_ms=window_ms)
            window_ms = 60_000
        try:
            count, reset_at = await asyncio.wait_for(
                self.backend.hit_rate_window(key, window_ms), timeout=self.timeout
            )
        except Exception as exc:
            logger.error(
                "rate_limit_backend_failed",
                key=key,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return RateLimitResult(True, max_requests, now_ms + window_ms, limit=max_requests)
        allowed = count <= max_requests
        if not allowed:
            logger.info("rate_limit_exceeded", key=key, count=count, limit=max_requests)
        return RateLimitResult(
            allowed=allowed,
            remaining=max(0, max_requests - count),
            reset_at=reset_at,
            limit=max_requests,
        )
