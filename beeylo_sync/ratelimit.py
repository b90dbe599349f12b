"""Keyed token-bucket rate limiter.

One bucket per key (a tenant store, a courier, or the global fallback),
created lazily on first use. Calls sharing a key are serialized: a slot
holds the key's lock for the whole call, so two calls on the same key never
overlap. Calls on different keys proceed in parallel.

Buckets idle longer than ``idle_seconds`` are evicted by ``evict_idle``.
A bucket with an active or waiting slot is never evicted.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable

from beeylo_sync.config import Settings
from beeylo_sync.errors import RateLimitedError, TransientUpstreamError

logger = logging.getLogger(__name__)

GLOBAL_KEY = "global"

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[Any]]


def store_key(tenant_id: str) -> str:
    return f"store:{tenant_id}"


def courier_key(courier: str) -> str:
    return f"courier:{courier}"


@dataclass(frozen=True)
class LimitSpec:
    """Bucket parameters.

    capacity: burst size in tokens.
    refill_rate: tokens added per second.
    min_interval: minimum spacing in seconds between two call starts.
    """

    capacity: float
    refill_rate: float
    min_interval: float = 0.0

    @classmethod
    def per_second(cls, rate: float) -> LimitSpec:
        return cls(capacity=rate, refill_rate=rate, min_interval=1.0 / rate if rate > 0 else 0.0)


class TokenBucket:
    """Token bucket with an optional minimum spacing between takes."""

    __slots__ = ("spec", "tokens", "last_refill", "next_start")

    def __init__(self, spec: LimitSpec, now: float):
        self.spec = spec
        self.tokens = float(spec.capacity)
        self.last_refill = now
        self.next_start = now

    def _refill(self, now: float) -> None:
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.spec.capacity, self.tokens + elapsed * self.spec.refill_rate)
            self.last_refill = now

    def delay(self, now: float) -> float:
        """Seconds until a token may be taken (0 when one is available now)."""
        self._refill(now)
        wait = 0.0
        if self.tokens < 1.0:
            if self.spec.refill_rate <= 0:
                raise ValueError("bucket cannot refill")
            wait = (1.0 - self.tokens) / self.spec.refill_rate
        return max(wait, self.next_start - now)

    def take(self, now: float) -> None:
        self._refill(now)
        self.tokens -= 1.0
        self.next_start = now + self.spec.min_interval

    def penalize(self, now: float, seconds: float) -> None:
        """Empty the bucket and hold further takes for ``seconds``."""
        self._refill(now)
        self.tokens = 0.0
        self.last_refill = now
        self.next_start = max(self.next_start, now + seconds)


async def wait_for_token(bucket: TokenBucket, clock: Clock, sleep: Sleep) -> None:
    """Suspend until ``bucket`` has a token, then take it."""
    while True:
        now = clock()
        wait = bucket.delay(now)
        if wait <= 0:
            bucket.take(now)
            return
        await sleep(wait)


class _Entry:
    __slots__ = ("bucket", "lock", "active", "last_used")

    def __init__(self, spec: LimitSpec, now: float):
        self.bucket = TokenBucket(spec, now)
        self.lock = asyncio.Lock()
        self.active = 0
        self.last_used = now


class KeyedRateLimiter:
    """Registry of per-key buckets with per-key serialization."""

    def __init__(
        self,
        resolve_spec: Callable[[str], LimitSpec],
        *,
        idle_seconds: float = 3600.0,
        max_rate_limit_retries: int = 3,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ):
        self._resolve_spec = resolve_spec
        self._idle_seconds = idle_seconds
        self._max_rate_limit_retries = max_rate_limit_retries
        self._clock = clock
        self._sleep = sleep
        self._entries: dict[str, _Entry] = {}

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def _entry(self, key: str) -> _Entry:
        entry = self._entries.get(key)
        if entry is None:
            entry = _Entry(self._resolve_spec(key), self._clock())
            self._entries[key] = entry
        return entry

    @asynccontextmanager
    async def slot(self, key: str) -> AsyncIterator[None]:
        """Hold the key exclusively for the duration of the block."""
        entry = self._entry(key)
        # Counted before the first await so eviction never sees it idle.
        entry.active += 1
        try:
            async with entry.lock:
                await wait_for_token(entry.bucket, self._clock, self._sleep)
                try:
                    yield
                finally:
                    entry.last_used = self._clock()
        finally:
            entry.active -= 1

    async def acquire(self, key: str) -> None:
        """Wait until a call on ``key`` is allowed to start."""
        async with self.slot(key):
            pass

    async def schedule(self, key: str, fn: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Run ``fn`` inside a slot for ``key``.

        An upstream 429 (RateLimitedError) empties the bucket for the
        advertised Retry-After and the call is re-queued on the same key.
        After ``max_rate_limit_retries`` it escalates to TransientUpstreamError.
        """
        for attempt in range(self._max_rate_limit_retries + 1):
            async with self.slot(key):
                try:
                    return await fn(*args, **kwargs)
                except RateLimitedError as exc:
                    if attempt == self._max_rate_limit_retries:
                        raise TransientUpstreamError(
                            f"rate limited by {exc.service or key} after {attempt + 1} attempts",
                            service=exc.service,
                            status_code=exc.status_code,
                        ) from exc
                    entry = self._entries[key]
                    penalty = exc.retry_after if exc.retry_after is not None else 2.0 ** attempt
                    entry.bucket.penalize(self._clock(), penalty)
                    logger.warning(
                        "Rate limited on %s, backing off %.1fs (%d/%d)",
                        key,
                        penalty,
                        attempt + 1,
                        self._max_rate_limit_retries,
                    )
        raise AssertionError("unreachable")

    def evict_idle(self) -> int:
        """Drop buckets unused for longer than the idle threshold."""
        now = self._clock()
        evicted = 0
        for key, entry in list(self._entries.items()):
            if entry.active or entry.lock.locked():
                continue
            if now - entry.last_used >= self._idle_seconds:
                del self._entries[key]
                evicted += 1
        if evicted:
            logger.debug("Evicted %d idle rate limiter buckets", evicted)
        return evicted

    async def run_eviction(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.evict_idle()


def spec_resolver(settings: Settings) -> Callable[[str], LimitSpec]:
    """Map limiter keys to bucket parameters from settings."""
    store_spec = LimitSpec(
        capacity=settings.store_limit_capacity,
        refill_rate=settings.store_limit_refill_per_second,
        min_interval=settings.store_limit_min_interval_seconds,
    )
    global_spec = LimitSpec.per_second(settings.global_limit_per_second)
    rates = settings.courier_rates

    def resolve(key: str) -> LimitSpec:
        kind, _, name = key.partition(":")
        if kind == "store":
            return store_spec
        if kind == "courier":
            return LimitSpec.per_second(rates.get(name, rates.get("default", 2.0)))
        return global_spec

    return resolve


def build_limiter(settings: Settings, **kwargs: Any) -> KeyedRateLimiter:
    return KeyedRateLimiter(
        spec_resolver(settings),
        idle_seconds=settings.limiter_idle_seconds,
        max_rate_limit_retries=settings.limiter_max_rate_limit_retries,
        **kwargs,
    )
