import hashlib
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from benefitsai.storage.models import TokenState
from benefitsai.storage.redis_cache import NOT_ISSUED, ROTATED, RedisCache


@pytest.fixture
def cache():
    with patch("benefitsai.storage.redis_cache.aioredis.from_url") as from_url:
        client = MagicMock()
        client.register_script.side_effect = lambda _script: AsyncMock()
        from_url.return_value = client
        yield RedisCache("redis://localhost:6379/0", socket_timeout=1.0)


async def test_store_refresh_token_uses_hashed_keys_and_user_index(cache):
    cache._store.return_value = 1

    with patch.object(RedisCache, "_now_ms", return_value=1_000):
        created = await cache.store_refresh_token("digest", "user-1", 60)

    assert created is True
    cache._store.assert_awaited_once_with(
        keys=["auth:refresh:digest", "auth:refresh_user:user-1"],
        args=["user-1", 61_000, 1_000, "digest", 60_000],
    )


async def test_store_reports_existing_token(cache):
    cache._store.return_value = 0

    assert await cache.store_refresh_token("digest", "user-1", 60) is False


async def test_get_refresh_token_parses_record(cache):
    cache.client.hgetall = AsyncMock(
        return_value={
            "user_id": "user-1",
            "state": "consumed",
            "expires_at": "1700000000000",
            "created_at": "1690000000000",
        }
    )

    record = await cache.get_refresh_token("digest")

    cache.client.hgetall.assert_awaited_once_with("auth:refresh:digest")
    assert record.user_id == "user-1"
    assert record.state is TokenState.CONSUMED
    assert record.expires_at.timestamp() == 1_700_000_000


async def test_get_missing_refresh_token(cache):
    cache.client.hgetall = AsyncMock(return_value={})

    assert await cache.get_refresh_token("digest") is None


async def test_rotate_passes_both_tokens_to_one_script(cache):
    cache._rotate.return_value = ROTATED

    with patch.object(RedisCache, "_now_ms", return_value=5_000):
        result = await cache.rotate_refresh_token("old", "new", "user-1", 10)

    assert result == ROTATED
    cache._rotate.assert_awaited_once_with(
        keys=["auth:refresh:old", "auth:refresh:new", "auth:refresh_user:user-1"],
        args=["user-1", 5_000, 15_000, "new", 10_000],
    )


async def test_rotate_of_consumed_token_reports_not_issued(cache):
    cache._rotate.return_value = NOT_ISSUED

    assert await cache.rotate_refresh_token("old", "new", "user-1", 10) == NOT_ISSUED


async def test_revoke_all_walks_the_user_index(cache):
    cache._revoke_all.return_value = 3

    assert await cache.revoke_user_refresh_tokens("user-1") == 3
    cache._revoke_all.assert_awaited_once_with(
        keys=["auth:refresh_user:user-1"], args=["auth:refresh:"]
    )


async def test_session_cutoff_roundtrip(cache):
    cache.client.set = AsyncMock()
    cache.client.get = AsyncMock(return_value="1700000000.25")

    await cache.set_session_cutoff("user-1", 1_700_000_000.25, 604_800)

    cache.client.set.assert_awaited_once_with(
        "auth:session_cutoff:user-1", "1700000000.25", ex=604_800
    )
    assert await cache.get_session_cutoff("user-1") == 1_700_000_000.25


async def test_rate_window_hashes_client_controlled_keys(cache):
    cache._fixed_window.return_value = [3, 40_000]

    with patch.object(RedisCache, "_now_ms", return_value=100_000):
        count, reset_at = await cache.hit_rate_window("auth:1.2.3.4:anonymous", 60_000)

    digest = hashlib.sha256(b"auth:1.2.3.4:anonymous").hexdigest()
    cache._fixed_window.assert_awaited_once_with(keys=[f"rate:{digest}"], args=[60_000])
    assert (count, reset_at) == (3, 140_000)
