"""Tests for the fixed-window rate limiter and its store fallbacks."""

from unittest.mock import MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from streamline.config import Settings
from streamline.service import rate_limit as rate_limit_module
from streamline.service.errors import RateLimitedError
from streamline.service.rate_limit import (
    STORE_UNAVAILABLE_MESSAGE,
    MemoryRateLimitStore,
    RateLimitConfig,
    RateLimiter,
    general_key,
    get_client_ip,
    limits_from_settings,
    login_key,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class FailingStore:
    """Shared store whose backend is always unreachable."""

    def __init__(self):
        self.calls = 0

    async def hit(self, key, window_ms):
        self.calls += 1
        raise RedisConnectionError("connection refused")

    async def reset(self, key):
        raise RedisConnectionError("connection refused")

    async def clear(self):
        return None


class FlakyStore(MemoryRateLimitStore):
    """Fails once, then behaves."""

    def __init__(self):
        super().__init__()
        self.failures = 1

    async def hit(self, key, window_ms):
        if self.failures:
            self.failures -= 1
            raise TimeoutError("slow")
        return await super().hit(key, window_ms)


LOGIN = RateLimitConfig(limit=5, window_seconds=60)


class TestFixedWindow:
    async def test_allows_up_to_limit_then_rejects(self):
        limiter = RateLimiter()
        for expected_remaining in (4, 3, 2, 1, 0):
            result = await limiter.check("login:a", LOGIN)
            assert result.remaining == expected_remaining
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check("login:a", LOGIN)
        err = exc_info.value
        assert err.status_code == 429
        assert 1 <= err.retry_after <= 60
        assert err.message == f"Too many attempts. Please try again in {err.retry_after} seconds."
        assert err.detail["limit"] == 5

    async def test_keys_are_independent(self):
        limiter = RateLimiter()
        for _ in range(5):
            await limiter.check("login:a", LOGIN)
        result = await limiter.check("login:b", LOGIN)
        assert result.remaining == 4

    def test_injected_empty_store_is_kept(self):
        store = MemoryRateLimitStore(clock=FakeClock())
        assert len(store) == 0
        assert RateLimiter(memory_store=store).memory_store is store

    async def test_window_resets_after_expiry(self):
        clock = FakeClock()
        limiter = RateLimiter(memory_store=MemoryRateLimitStore(clock=clock))
        for _ in range(5):
            await limiter.check("k", LOGIN)
        with pytest.raises(RateLimitedError):
            await limiter.check("k", LOGIN)
        clock.now += 61
        result = await limiter.check("k", LOGIN)
        assert result.remaining == 4

    async def test_reset_clears_key(self):
        limiter = RateLimiter()
        for _ in range(5):
            await limiter.check("k", LOGIN)
        await limiter.reset("k")
        assert (await limiter.check("k", LOGIN)).remaining == 4

    async def test_sweep_drops_expired_windows(self):
        clock = FakeClock()
        store = MemoryRateLimitStore(clock=clock)
        limiter = RateLimiter(memory_store=store)
        await limiter.check("a", LOGIN)
        await limiter.check("b", RateLimitConfig(limit=5, window_seconds=600))
        clock.now += 120
        assert limiter.sweep() == 1
        assert len(store) == 1


class TestSharedStoreFailures:
    async def test_fail_open_degrades_to_memory(self):
        store = FailingStore()
        limiter = RateLimiter(shared_store=store, store_retries=2)
        with patch.object(rate_limit_module, "logger", MagicMock()) as logger:
            result = await limiter.check("k", LOGIN)
        assert result.remaining == 4
        assert store.calls == 2
        assert logger.warning.call_args.args[0] == "rate_limit_store_unavailable"

    async def test_fail_open_still_enforces_limit_locally(self):
        limiter = RateLimiter(shared_store=FailingStore(), store_retries=1)
        for _ in range(5):
            await limiter.check("k", LOGIN)
        with pytest.raises(RateLimitedError):
            await limiter.check("k", LOGIN)

    async def test_fail_closed_rejects(self):
        limiter = RateLimiter(shared_store=FailingStore(), fail_closed=True, store_retries=3)
        with pytest.raises(RateLimitedError) as exc_info:
            await limiter.check("k", LOGIN)
        assert exc_info.value.message == STORE_UNAVAILABLE_MESSAGE
        assert exc_info.value.retry_after == 60

    async def test_retry_recovers_from_transient_error(self):
        store = FlakyStore()
        limiter = RateLimiter(shared_store=store, fail_closed=True, store_retries=2)
        result = await limiter.check("k", LOGIN)
        assert result.remaining == 4
        # The fallback counters were never touched
        assert len(limiter.memory_store) == 0

    async def test_reset_tolerates_store_errors(self):
        limiter = RateLimiter(shared_store=FailingStore())
        await limiter.reset("k")


class TestKeysAndConfig:
    def test_login_key_normalizes_email(self):
        assert login_key("1.2.3.4", " Foo@Example.COM ") == "login:1.2.3.4:foo@example.com"

    def test_general_key(self):
        assert general_key("user-1") == "api:user-1"

    def test_limits_follow_settings(self):
        settings = Settings(login_rate_limit=7, login_rate_window_seconds=30)
        limits = limits_from_settings(settings)
        assert limits["login"] == RateLimitConfig(7, 30)
        assert set(limits) == {"login", "registration", "password_reset", "general"}

    def test_from_settings_without_cache_has_no_shared_store(self):
        limiter = RateLimiter.from_settings(Settings(rate_limit_fail_closed=True))
        assert limiter.shared_store is None
        assert limiter.fail_closed


class TestClientIp:
    def test_untrusted_proxy_ignores_headers(self):
        headers = {"x-forwarded-for": "9.9.9.9", "x-real-ip": "8.8.8.8"}
        assert get_client_ip(headers, trusted_proxy=False) == "unknown"

    def test_trusted_proxy_uses_first_forwarded_address(self):
        headers = {"x-forwarded-for": "9.9.9.9, 10.0.0.1"}
        assert get_client_ip(headers, trusted_proxy=True) == "9.9.9.9"

    def test_trusted_proxy_falls_back_to_real_ip(self):
        assert get_client_ip({"x-real-ip": "8.8.8.8"}, trusted_proxy=True) == "8.8.8.8"
        assert get_client_ip({}, trusted_proxy=True) == "unknown"
