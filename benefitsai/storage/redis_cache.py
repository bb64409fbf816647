from __future__ import annotations

import hashlib
import time
from datetime import datetime, timezone
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis

from benefitsai.storage.models import RefreshTokenRecord, TokenState

ROTATED = 1
NOT_ISSUED = 0
NEW_TOKEN_EXISTS = -1


def _ms_to_datetime(value: str | int | float) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000.0, tz=timezone.utc)


class RedisCache:
    """Redis-backed store for refresh tokens, session cutoffs and rate limit counters.

    Every state transition runs inside a Lua script so concurrent workers
    never observe a half-applied rotation.
    """

    REFRESH_PREFIX = "auth:refresh:"
    USER_TOKENS_PREFIX = "auth:refresh_user:"
    SESSION_CUTOFF_PREFIX = "auth:session_cutoff:"

    _STORE_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'user_id', ARGV[1], 'state', 'issued', 'expires_at', ARGV[2], 'created_at', ARGV[3])
redis.call('PEXPIREAT', KEYS[1], ARGV[2])
redis.call('SADD', KEYS[2], ARGV[4])
if redis.call('PTTL', KEYS[2]) < tonumber(ARGV[5]) then
  redis.call('PEXPIRE', KEYS[2], ARGV[5])
end
return 1
"""

    _ROTATE_SCRIPT = """
local current = redis.call('HMGET', KEYS[1], 'state', 'user_id', 'expires_at')
if not current[1] then
  return 0
end
if current[1] ~= 'issued' or current[2] ~= ARGV[1] or tonumber(current[3]) <= tonumber(ARGV[2]) then
  return 0
end
if redis.call('EXISTS', KEYS[2]) == 1 then
  return -1
end
redis.call('HSET', KEYS[1], 'state', 'consumed')
redis.call('HSET', KEYS[2], 'user_id', ARGV[1], 'state', 'issued', 'expires_at', ARGV[3], 'created_at', ARGV[2])
redis.call('PEXPIREAT', KEYS[2], ARGV[3])
redis.call('SADD', KEYS[3], ARGV[4])
if redis.call('PTTL', KEYS[3]) < tonumber(ARGV[5]) then
  redis.call('PEXPIRE', KEYS[3], ARGV[5])
end
return 1
"""

    _REVOKE_SCRIPT = """
if redis.call('HGET', KEYS[1], 'state') == 'issued' then
  redis.call('HSET', KEYS[1], 'state', 'revoked')
  return 1
end
return 0
"""

    _REVOKE_ALL_SCRIPT = """
local members = redis.call('SMEMBERS', KEYS[1])
local revoked = 0
for _, token_hash in ipairs(members) do
  local key = ARGV[1] .. token_hash
  local state = redis.call('HGET', key, 'state')
  if state == 'issued' then
    redis.call('HSET', key, 'state', 'revoked')
    revoked = revoked + 1
  elseif not state then
    redis.call('SREM', KEYS[1], token_hash)
  end
end
return revoked
"""

    # Fixed window: first hit in a window sets the expiry, PTTL gives time to reset
    _FIXED_WINDOW_SCRIPT = """
local count = redis.call('INCR', KEYS[1])
if count == 1 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
end
local ttl = redis.call('PTTL', KEYS[1])
if ttl < 0 then
  redis.call('PEXPIRE', KEYS[1], ARGV[1])
  ttl = tonumber(ARGV[1])
end
return {count, ttl}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._store = self.client.register_script(self._STORE_SCRIPT)
        self._rotate = self.client.register_script(self._ROTATE_SCRIPT)
        self._revoke = self.client.register_script(self._REVOKE_SCRIPT)
        self._revoke_all = self.client.register_script(self._REVOKE_ALL_SCRIPT)
        self._fixed_window = self.client.register_script(self._FIXED_WINDOW_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before the app starts serving."""
        # Short-lived sync client so the async pool is not bound to a startup loop
        sync_client = Redis.from_url(self.redis_url, decode_responses=True)
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def _normalize_rate_key(key: str) -> str:
        """Hash rate keys so client-controlled parts cannot collide via delimiters."""
        digest = hashlib.sha256(key.encode()).hexdigest()
        return f"rate:{digest}"

    def _token_key(self, token_hash: str) -> str:
        return f"{self.REFRESH_PREFIX}{token_hash}"

    def _user_key(self, user_id: str) -> str:
        return f"{self.USER_TOKENS_PREFIX}{user_id}"

    async def store_refresh_token(
        self, token_hash: str, user_id: str, ttl_seconds: int
    ) -> bool:
        now_ms = self._now_ms()
        ttl_ms = max(1, ttl_seconds) * 1000
        created = await self._store(
            keys=[self._token_key(token_hash), self._user_key(user_id)],
            args=[user_id, now_ms + ttl_ms, now_ms, token_hash, ttl_ms],
        )
        return bool(int(created))

    async def get_refresh_token(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        data = await self.client.hgetall(self._token_key(token_hash))
        if not data or "state" not in data:
            return None
        return RefreshTokenRecord(
            token_hash=token_hash,
            user_id=data["user_id"],
            expires_at=_ms_to_datetime(data["expires_at"]),
            state=TokenState(data["state"]),
            created_at=_ms_to_datetime(data.get("created_at") or 0),
        )

    async def rotate_refresh_token(
        self, old_hash: str, new_hash: str, user_id: str, ttl_seconds: int
    ) -> int:
        """Consume ``old_hash`` and issue ``new_hash`` atomically.

        Returns ROTATED, NOT_ISSUED (old token not issued, expired or owned by
        someone else) or NEW_TOKEN_EXISTS.
        """
        now_ms = self._now_ms()
        ttl_ms = max(1, ttl_seconds) * 1000
        result = await self._rotate(
            keys=[
                self._token_key(old_hash),
                self._token_key(new_hash),
                self._user_key(user_id),
            ],
            args=[user_id, now_ms, now_ms + ttl_ms, new_hash, ttl_ms],
        )
        return int(result)

    async def revoke_refresh_token(self, token_hash: str) -> bool:
        return bool(int(await self._revoke(keys=[self._token_key(token_hash)], args=[])))

    async def revoke_user_refresh_tokens(self, user_id: str) -> int:
        revoked = await self._revoke_all(
            keys=[self._user_key(user_id)], args=[self.REFRESH_PREFIX]
        )
        return int(revoked)

    async def set_session_cutoff(
        self, user_id: str, cutoff: float, ttl_seconds: int
    ) -> None:
        await self.client.set(
            f"{self.SESSION_CUTOFF_PREFIX}{user_id}", str(cutoff), ex=max(1, ttl_seconds)
        )

    async def get_session_cutoff(self, user_id: str) -> Optional[float]:
        value = await self.client.get(f"{self.SESSION_CUTOFF_PREFIX}{user_id}")
        return float(value) if value is not None else None

    async def hit_rate_window(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Count one request in the current window.

        Returns ``(count, reset_at_ms)`` where ``count`` includes this request.
        """
        count, ttl_ms = await self._fixed_window(
            keys=[self._normalize_rate_key(key)], args=[max(1, int(window_ms))]
        )
        return int(count), self._now_ms() + int(ttl_ms)

    async def close(self) -> None:
        await self.client.close()
        await self.client.connection_pool.disconnect()
