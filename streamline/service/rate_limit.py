from __future__ import annotations

import asyncio
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Protocol, Tuple

from redis.exceptions import RedisError

from streamline.config import Settings
from streamline.logging import get_logger
from streamline.service.errors import RateLimitedError

logger = get_logger(__name__)

UNKNOWN_CLIENT_IP = "unknown"
RATE_LIMIT_MESSAGE = "Too many attempts. Please try again in {seconds} seconds."
STORE_UNAVAILABLE_MESSAGE = "Rate limiting is temporarily unavailable. Please try again later."

# Errors that mean "the shared store is unreachable", as opposed to bugs
_STORE_ERRORS = (RedisError, ConnectionError, TimeoutError, OSError)


@dataclass(frozen=True)
class RateLimitConfig:
    limit: int
    window_seconds: float

    @property
    def window_ms(self) -> int:
        return int(self.window_seconds * 1000)


@dataclass
class RateLimitResult:
    """Outcome of an allowed hit, used for X-RateLimit-* headers."""

    limit: int
    remaining: int
    reset_seconds: int


DEFAULT_LIMITS: Dict[str, RateLimitConfig] = {
    "login": RateLimitConfig(limit=5, window_seconds=60),
    "registration": RateLimitConfig(limit=3, window_seconds=3600),
    "password_reset": RateLimitConfig(limit=3, window_seconds=3600),
    "general": RateLimitConfig(limit=100, window_seconds=60),
}


def limits_from_settings(settings: Settings) -> Dict[str, RateLimitConfig]:
    return {
        "login": RateLimitConfig(settings.login_rate_limit, settings.login_rate_window_seconds),
        "registration": RateLimitConfig(
            settings.registration_rate_limit, settings.registration_rate_window_seconds
        ),
        "password_reset": RateLimitConfig(
            settings.password_reset_rate_limit, settings.password_reset_rate_window_seconds
        ),
        "general": RateLimitConfig(settings.general_rate_limit, settings.general_rate_window_seconds),
    }


def login_key(ip: str, email: str) -> str:
    return f"login:{ip}:{email.strip().lower()}"


def registration_key(ip: str) -> str:
    return f"registration:{ip}"


def password_reset_key(email: str) -> str:
    return f"password-reset:{email.strip().lower()}"


def general_key(subject: str) -> str:
    return f"api:{subject}"


def get_client_ip(headers: Mapping[str, str], *, trusted_proxy: bool) -> str:
    """Client address for rate-limit keys.

    Forwarding headers are client-controlled unless a proxy we operate
    rewrites them, so they are only read when ``trusted_proxy`` is set.
    """
    if not trusted_proxy:
        return UNKNOWN_CLIENT_IP
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (headers.get("x-real-ip") or "").strip()
    return real_ip or UNKNOWN_CLIENT_IP


class RateLimitStore(Protocol):
    async def hit(self, key: str, window_ms: int) -> Tuple[int, int]:
        """Count one hit and return ``(count, ms until reset)``."""

    async def reset(self, key: str) -> None: ...

    async def clear(self) -> None: ...


class MemoryRateLimitStore:
    """Process-local fixed-window counters; lost on restart, not shared."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (count, reset_at in clock seconds)
        self._windows: Dict[str, Tuple[int, float]] = {}

    async def hit(self, key: str, window_ms: int) -> Tuple[int, int]:
        now = self._clock()
        with self._lock:
            count, reset_at = self._windows.get(key, (0, 0.0))
            if now >= reset_at:
                count, reset_at = 0, now + window_ms / 1000.0
            count += 1
            self._windows[key] = (count, reset_at)
        return count, max(0, int((reset_at - now) * 1000))

    async def reset(self, key: str) -> None:
        with self._lock:
            self._windows.pop(key, None)

    async def clear(self) -> None:
        with self._lock:
            self._windows.clear()

    def sweep(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, reset_at) in self._windows.items() if now >= reset_at]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


class RedisRateLimitStore:
    """Shared counters via an atomic INCR + PEXPIRE script."""

    def __init__(self, cache) -> None:
        self.cache = cache

    async def hit(self, key: str, window_ms: int) -> Tuple[int, int]:
        return await self.cache.incr_fixed_window(key, window_ms)

    async def reset(self, key: str) -> None:
        await self.cache.reset_rate_limit(key)

    async def clear(self) -> None:
        await self.cache.clear_rate_limits()


class RateLimiter:
    """Fixed-window limiter with an optional shared store.

    When the shared store keeps failing after ``store_retries`` attempts,
    ``fail_closed`` decides the outcome: reject the request, or fall back
    to the in-process counters so an outage never locks everyone out.
    """

    def __init__(
        self,
        *,
        shared_store: Optional[RateLimitStore] = None,
        memory_store: Optional[MemoryRateLimitStore] = None,
        fail_closed: bool = False,
        store_retries: int = 2,
        limits: Optional[Dict[str, RateLimitConfig]] = None,
    ) -> None:
        self.shared_store = shared_store
        self.memory_store = memory_store if memory_store is not None else MemoryRateLimitStore()
        self.fail_closed = fail_closed
        self.store_retries = max(1, store_retries)
        self.limits = dict(limits or DEFAULT_LIMITS)

    @classmethod
    def from_settings(cls, settings: Settings, cache=None) -> "RateLimiter":
        return cls(
            shared_store=RedisRateLimitStore(cache) if cache is not None else None,
            fail_closed=settings.rate_limit_fail_closed,
            store_retries=settings.rate_limit_store_retries,
            limits=limits_from_settings(settings),
        )

    async def _hit_shared(self, key: str, config: RateLimitConfig) -> Tuple[int, int]:
        last_exc: Optional[BaseException] = None
        for attempt in range(1, self.store_retries + 1):
            try:
                return await self.shared_store.hit(key, config.window_ms)
            except _STORE_ERRORS as exc:
                last_exc = exc
                logger.warning(
                    "rate_limit_store_error",
                    attempt=attempt,
                    max_attempts=self.store_retries,
                    error_type=type(exc).__name__,
                )
        if self.fail_closed:
            logger.error("rate_limit_store_unavailable", mode="fail_closed")
            raise RateLimitedError(
                STORE_UNAVAILABLE_MESSAGE, retry_after=max(1, math.ceil(config.window_seconds))
            ) from last_exc
        logger.warning("rate_limit_store_unavailable", mode="fail_open")
        return await self.memory_store.hit(key, config.window_ms)

    async def check(self, key: str, config: RateLimitConfig) -> RateLimitResult:
        """Count a hit for ``key``; raise RateLimitedError past the limit."""
        if self.shared_store is not None:
            count, reset_ms = await self._hit_shared(key, config)
        else:
            count, reset_ms = await self.memory_store.hit(key, config.window_ms)
        reset_seconds = max(1, math.ceil(reset_ms / 1000))
        if count > config.limit:
            logger.info(
                "rate_limit_exceeded",
                bucket=key.split(":", 1)[0],
                retry_after=reset_seconds,
            )
            raise RateLimitedError(
                RATE_LIMIT_MESSAGE.format(seconds=reset_seconds),
                retry_after=reset_seconds,
                detail={"limit": config.limit, "remaining": 0, "reset": reset_seconds},
            )
        return RateLimitResult(
            limit=config.limit,
            remaining=max(0, config.limit - count),
            reset_seconds=reset_seconds,
        )

    async def check_named(self, name: str, key: str) -> RateLimitResult:
        return await self.check(key, self.limits[name])

    async def reset(self, key: str) -> None:
        if self.shared_store is not None:
            try:
                await self.shared_store.reset(key)
            except _STORE_ERRORS as exc:
                logger.warning("rate_limit_reset_failed", error_type=type(exc).__name__)
        await self.memory_store.reset(key)

    async def clear_all(self) -> None:
        if self.shared_store is not None:
            await self.shared_store.clear()
        await self.memory_store.clear()

    def sweep(self) -> int:
        removed = self.memory_store.sweep()
        if removed:
            logger.debug("rate_limit_sweep", removed=removed)
        return removed


async def run_sweep_loop(limiter: RateLimiter, interval_seconds: float) -> None:
    """Purge expired in-memory windows every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            limiter.sweep()
        except Exception as exc:
            logger.error("rate_limit_sweep_failed", error=str(exc))
