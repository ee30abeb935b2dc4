"""Tests for the synchronous Redis cache used under pytest."""

import hashlib
import inspect
from unittest.mock import MagicMock, patch

import pytest

from streamline.storage import redis_cache as redis_cache_module
from streamline.storage.redis_cache import RedisCache, SyncRedisCache


@pytest.fixture
def sync_client():
    client = MagicMock()
    client.register_script.return_value = MagicMock(return_value=[3, 59000])
    return client


@pytest.fixture
def cache(sync_client):
    with patch.object(redis_cache_module.Redis, "from_url", return_value=sync_client):
        return SyncRedisCache("redis://localhost:6379/0")


def _async_methods(cls):
    return {
        name
        for name, member in inspect.getmembers(cls, inspect.iscoroutinefunction)
        if not name.startswith("_")
    }


def test_sync_cache_mirrors_async_surface(cache):
    assert _async_methods(RedisCache) <= _async_methods(SyncRedisCache)
    # Everything goes through the sync client, there is no async-looking facade
    assert not hasattr(cache, "client")


async def test_fixed_window_uses_hashed_key(cache, sync_client):
    assert await cache.incr_fixed_window("login:1.2.3.4:a@example.com", 60000) == (3, 59000)
    script = sync_client.register_script.return_value
    digest = hashlib.sha256(b"login:1.2.3.4:a@example.com").hexdigest()
    assert script.call_args.kwargs == {"keys": [f"rate:{digest}"], "args": [60000]}


async def test_password_reset_tokens(cache, sync_client):
    sync_client.getdel.return_value = "user-1"
    await cache.set_password_reset("abc", "user-1", 0)
    sync_client.set.assert_called_once_with("auth:password_reset:abc", "user-1", ex=1)
    assert await cache.pop_password_reset("abc") == "user-1"
    sync_client.getdel.assert_called_once_with("auth:password_reset:abc")
