"""
Rate limiting algorithms.

Provides multiple rate limiting strategies:
- Token Bucket: Burst-friendly limiting with continuous token replenishment
- Sliding Window: Strict limiting over a trailing time window
- Fixed Window: Counter per aligned window, for stores without compare-and-swap

Every check is one atomic read-modify-write against the state store, so
concurrent callers sharing a key can never both take the last unit.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Any

from gatekeeper.clock import Clock, default_clock
from gatekeeper.ratelimit.models import Algorithm, RateLimitResult, RateLimitState
from gatekeeper.store.base import StateStore

logger = logging.getLogger(__name__)


class RateLimitAlgorithm(ABC):
    """Abstract base class for rate limiting algorithms."""

    def __init__(
        self,
        store: StateStore,
        clock: Clock | None = None,
        key_prefix: str = "ratelimit:",
    ) -> None:
        self._store = store
        self._clock = clock or default_clock
        self._key_prefix = key_prefix

    @property
    @abstractmethod
    def name(self) -> str:
        """Limiter algorithm name."""
        ...

    def _get_store_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    @abstractmethod
    async def acquire(self, key: str, cost: float = 1.0) -> RateLimitResult:
        """
        Consume `cost` units for a request if capacity allows.

        Args:
            key: Limiter key (scope:identifier[:provider])
            cost: Units to consume, fractional costs allowed

        Returns:
            RateLimitResult; denied results carry `retry_after`
        """
        ...

    @abstractmethod
    async def peek(self, key: str) -> RateLimitResult:
        """Report the current state without consuming."""
        ...

    async def reset(self, key: str) -> bool:
        """Forget all state for a key, restoring full capacity."""
        await self._store.delete(self._get_store_key(key))
        return True


class TokenBucketLimiter(RateLimitAlgorithm):
    """
    Token bucket rate limiter.

    Allows bursts up to bucket capacity while maintaining the average rate.
    Refill is computed from elapsed time on every check, so state is correct
    after arbitrarily long idle periods without any timer.
    """

    def __init__(
        self,
        capacity: float,
        refill_rate: float,
        store: StateStore,
        clock: Clock | None = None,
        key_prefix: str = "ratelimit:tb:",
    ) -> None:
        """
        Initialize token bucket limiter.

        Args:
            capacity: Maximum tokens in bucket (burst capacity)
            refill_rate: Tokens added per second
            store: State store holding bucket state
            clock: Time source
            key_prefix: Prefix for store keys
        """
        if capacity <= 0 or refill_rate <= 0:
            raise ValueError("Token bucket capacity and refill rate must be positive")
        super().__init__(store, clock, key_prefix)
        self._capacity = float(capacity)
        self._refill_rate = float(refill_rate)
        # Long enough for an empty bucket to refill; an expired bucket is a full one
        self._ttl = int(math.ceil(self._capacity / self._refill_rate)) + 60

    @property
    def name(self) -> str:
        return Algorithm.TOKEN_BUCKET.value

    def _load(self, data: Any | None, now: float) -> RateLimitState:
        """Build bucket state from stored data, initializing a full bucket."""
        if not data:
            return RateLimitState(
                tokens_available=self._capacity,
                tokens_capacity=self._capacity,
                last_refill_time=now,
                refill_rate=self._refill_rate,
            )

        state = RateLimitState.from_dict(data)
        # Configuration is authoritative for size and rate
        state.tokens_capacity = self._capacity
        state.refill_rate = self._refill_rate
        state.tokens_available = max(0.0, min(state.tokens_available, self._capacity))
        return state

    def _result(self, state: RateLimitState, now: float, key: str, retry_after: int | None = None) -> RateLimitResult:
        time_to_full = (state.tokens_capacity - state.tokens_available) / state.refill_rate
        return RateLimitResult(
            allowed=retry_after is None,
            remaining=state.tokens_available,
            limit=state.tokens_capacity,
            reset_at=now + time_to_full,
            retry_after=retry_after,
            current_usage=state.tokens_capacity - state.tokens_available,
            key=key,
        )

    async def acquire(self, key: str, cost: float = 1.0) -> RateLimitResult:
        now = self._clock.now()

        def take(data: Any | None) -> tuple[dict | None, RateLimitResult]:
            state = self._load(data, now).refilled(now)

            if state.tokens_available >= cost:
                state.tokens_available = max(0.0, state.tokens_available - cost)
                return state.to_dict(), self._result(state, now, key)

            tokens_needed = cost - state.tokens_available
            retry_after = max(1, math.ceil(tokens_needed / state.refill_rate))
            return None, self._result(state, now, key, retry_after=retry_after)

        return await self._store.atomic_update(self._get_store_key(key), take, self._ttl)

    async def peek(self, key: str) -> RateLimitResult:
        now = self._clock.now()
        data = await self._store.get(self._get_store_key(key))
        state = self._load(data, now).refilled(now)
        return self._result(state, now, key)


class SlidingWindowLimiter(RateLimitAlgorithm):
    """
    Sliding window rate limiter.

    Counts admissions in the trailing window, with no burst allowance at
    window edges. Stored entries are [timestamp, cost] pairs; entries at or
    before `now - window` are pruned on every check.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        store: StateStore,
        clock: Clock | None = None,
        key_prefix: str = "ratelimit:sw:",
    ) -> None:
        """
        Initialize sliding window limiter.

        Args:
            limit: Maximum requests (total cost) per window
            window_seconds: Window size in seconds
            store: State store holding admission timestamps
            clock: Time source
            key_prefix: Prefix for store keys
        """
        super().__init__(store, clock, key_prefix)
        self._limit = limit
        self._window_seconds = window_seconds
        self._ttl = window_seconds + 60

    @property
    def name(self) -> str:
        return Algorithm.SLIDING_WINDOW.value

    def _prune(self, data: Any | None, now: float) -> list[list[float]]:
        """Remove entries outside the current window."""
        cutoff = now - self._window_seconds
        return [[float(ts), float(c)] for ts, c in (data or []) if ts > cutoff]

    def _retry_after(self, entries: list[list[float]], used: float, cost: float, now: float) -> int:
        """Seconds until enough of the oldest entries expire to admit `cost`."""
        excess = used + cost - self._limit
        freed = 0.0
        for ts, weight in sorted(entries):
            freed += weight
            if freed >= excess:
                return max(1, math.ceil(self._window_seconds - (now - ts)) + 1)
        return self._window_seconds + 1

    def _result(self, entries: list[list[float]], now: float, key: str, retry_after: int | None = None) -> RateLimitResult:
        used = sum(c for _, c in entries)
        oldest = min((ts for ts, _ in entries), default=now)
        return RateLimitResult(
            allowed=retry_after is None,
            remaining=max(0.0, self._limit - used),
            limit=float(self._limit),
            reset_at=oldest + self._window_seconds,
            retry_after=retry_after,
            current_usage=used,
            key=key,
        )

    async def acquire(self, key: str, cost: float = 1.0) -> RateLimitResult:
        now = self._clock.now()

        def admit(data: Any | None) -> tuple[list | None, RateLimitResult]:
            entries = self._prune(data, now)
            used = sum(c for _, c in entries)

            if used + cost > self._limit:
                retry_after = self._retry_after(entries, used, cost, now)
                # Persist the prune so stored entries stay inside the window
                pruned = entries if data is not None and len(entries) != len(data) else None
                return pruned, self._result(entries, now, key, retry_after=retry_after)

            entries.append([now, float(cost)])
            return entries, self._result(entries, now, key)

        return await self._store.atomic_update(self._get_store_key(key), admit, self._ttl)

    async def peek(self, key: str) -> RateLimitResult:
        now = self._clock.now()
        entries = self._prune(await self._store.get(self._get_store_key(key)), now)
        return self._result(entries, now, key)


class FixedWindowLimiter(RateLimitAlgorithm):
    """
    Fixed window rate limiter.

    Buckets requests into windows aligned to `now - (now mod window)` and
    counts them with the store's native atomic increment. Bursts of up to
    twice the limit are possible across a window boundary; that is the
    accepted price of not needing compare-and-swap.
    """

    def __init__(
        self,
        limit: int,
        window_seconds: int,
        store: StateStore,
        clock: Clock | None = None,
        key_prefix: str = "ratelimit:fw:",
    ) -> None:
        super().__init__(store, clock, key_prefix)
        self._limit = limit
        self._window_seconds = window_seconds
        self._ttl = window_seconds + 60

    @property
    def name(self) -> str:
        return Algorithm.FIXED_WINDOW.value

    def _window_start(self, now: float) -> int:
        return int(now - (now % self._window_seconds))

    def _counter_key(self, key: str, now: float) -> str:
        return f"{self._get_store_key(key)}:{self._window_start(now)}"

    def _result(self, count: float, now: float, key: str, retry_after: int | None = None) -> RateLimitResult:
        return RateLimitResult(
            allowed=retry_after is None,
            remaining=max(0.0, self._limit - count),
            limit=float(self._limit),
            reset_at=float(self._window_start(now) + self._window_seconds),
            retry_after=retry_after,
            current_usage=count,
            key=key,
        )

    async def acquire(self, key: str, cost: float = 1.0) -> RateLimitResult:
        now = self._clock.now()
        counter_key = self._counter_key(key, now)

        count = await self._store.increment(counter_key, cost, self._ttl)
        if count > self._limit:
            # Give the slot back so the counter reflects admitted requests only
            count = await self._store.increment(counter_key, -cost, self._ttl)
            retry_after = max(1, math.ceil(self._window_seconds - (now % self._window_seconds)))
            return self._result(count, now, key, retry_after=retry_after)

        return self._result(count, now, key)

    async def peek(self, key: str) -> RateLimitResult:
        now = self._clock.now()
        count = float(await self._store.get(self._counter_key(key, now)) or 0)
        return self._result(count, now, key)

    async def reset(self, key: str) -> bool:
        await self._store.clear(f"{self._get_store_key(key)}:*")
        return True
