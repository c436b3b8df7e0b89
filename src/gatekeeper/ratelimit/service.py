"""
Rate limiting service.

Resolves the rule for a limiter key, picks the algorithm the store can
support and turns denials into `RateLimitExceeded`.
"""

import logging

from gatekeeper.clock import Clock, default_clock
from gatekeeper.config import settings
from gatekeeper.exceptions import RateLimitExceeded
from gatekeeper.ratelimit.limiter import (
    FixedWindowLimiter,
    RateLimitAlgorithm,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)
from gatekeeper.ratelimit.models import Algorithm, LimitRule, RateLimitConfig, RateLimitResult
from gatekeeper.store.base import StateStore

logger = logging.getLogger(__name__)


def build_key(scope: str, identifier: str, provider: str | None = None) -> str:
    """Build a limiter key of the form scope:identifier[:provider]."""
    key = f"{scope}:{identifier}"
    if provider:
        key = f"{key}:{provider}"
    return key


def default_rule() -> LimitRule:
    """Rule applied to scopes the configuration does not mention."""
    return LimitRule(
        limit=settings.default_rate_limit,
        window_seconds=settings.default_rate_window_seconds,
        algorithm=Algorithm(settings.default_rate_algorithm),
    )


class RateLimiter:
    """
    Per-key admission checks for global, provider, user and feature limits.

    Each key is an independent counter. Rules come from a `RateLimitConfig`
    that is read once at construction and never mutated.
    """

    def __init__(
        self,
        store: StateStore,
        config: RateLimitConfig | None = None,
        clock: Clock | None = None,
    ) -> None:
        """
        Initialize the rate limiter.

        Args:
            store: Shared state store
            config: Limit rules, loaded from `settings.rate_limit_config_path` if omitted
            clock: Time source
        """
        self._store = store
        self._clock = clock or default_clock
        self._config = config or RateLimitConfig.from_file(
            settings.rate_limit_config_path, default=default_rule()
        )
        self._limiters: dict[tuple, RateLimitAlgorithm] = {}

    @property
    def config(self) -> RateLimitConfig:
        return self._config

    def _algorithm_for(self, rule: LimitRule, override: Algorithm | None) -> Algorithm:
        algorithm = override or rule.algorithm
        if algorithm != Algorithm.FIXED_WINDOW and not self._store.supports_cas:
            logger.debug(f"{self._store.name} store lacks compare-and-swap, using fixed window")
            return Algorithm.FIXED_WINDOW
        return algorithm

    def _limiter_for(self, rule: LimitRule, algorithm: Algorithm) -> RateLimitAlgorithm:
        cache_key = (algorithm, rule.limit, rule.window_seconds, rule.bucket_capacity)
        limiter = self._limiters.get(cache_key)
        if limiter is not None:
            return limiter

        if algorithm == Algorithm.TOKEN_BUCKET:
            limiter = TokenBucketLimiter(
                capacity=rule.bucket_capacity,
                refill_rate=rule.refill_rate,
                store=self._store,
                clock=self._clock,
            )
        elif algorithm == Algorithm.SLIDING_WINDOW:
            limiter = SlidingWindowLimiter(
                limit=rule.limit,
                window_seconds=rule.window_seconds,
                store=self._store,
                clock=self._clock,
            )
        else:
            limiter = FixedWindowLimiter(
                limit=rule.limit,
                window_seconds=rule.window_seconds,
                store=self._store,
                clock=self._clock,
            )

        self._limiters[cache_key] = limiter
        return limiter

    def _unlimited_result(self, key: str) -> RateLimitResult:
        return RateLimitResult(
            allowed=True,
            remaining=float("inf"),
            limit=0.0,
            reset_at=self._clock.now(),
            key=key,
        )

    async def check_limit(
        self,
        scope: str,
        identifier: str,
        provider: str | None = None,
        cost: float = 1.0,
        algorithm: Algorithm | None = None,
    ) -> RateLimitResult:
        """
        Consume `cost` from the limiter for scope:identifier[:provider].

        Args:
            scope: Limit scope ("global", "provider", "user", "feature", ...)
            identifier: Caller, provider or feature name within the scope
            provider: Optional provider suffix for per-provider counters
            cost: Units to consume, fractional costs allowed
            algorithm: Override the configured algorithm

        Returns:
            RateLimitResult for the admitted request

        Raises:
            RateLimitExceeded: If the limiter denies the request
            ValueError: If cost is negative
        """
        if cost < 0:
            raise ValueError(f"Rate limit cost must be non-negative, got {cost}")

        key = build_key(scope, identifier, provider)
        rule = self._config.rule_for(scope, identifier, provider)
        if rule.unlimited:
            return self._unlimited_result(key)

        limiter = self._limiter_for(rule, self._algorithm_for(rule, algorithm))
        result = await limiter.acquire(key, cost)

        if not result.allowed:
            logger.info(
                f"Rate limit denied {key} ({limiter.name}): "
                f"{result.current_usage:g}/{result.limit:g}, retry after {result.retry_after}s"
            )
            raise RateLimitExceeded(
                current_usage=result.current_usage,
                limit=result.limit,
                retry_after=result.retry_after or 1,
                scope=key,
            )

        return result

    async def get_current_usage(
        self,
        scope: str,
        identifier: str,
        provider: str | None = None,
        algorithm: Algorithm | None = None,
    ) -> RateLimitResult:
        """Report limiter state for a key without consuming capacity."""
        key = build_key(scope, identifier, provider)
        rule = self._config.rule_for(scope, identifier, provider)
        if rule.unlimited:
            return self._unlimited_result(key)

        limiter = self._limiter_for(rule, self._algorithm_for(rule, algorithm))
        return await limiter.peek(key)

    async def reset(
        self,
        scope: str,
        identifier: str,
        provider: str | None = None,
        algorithm: Algorithm | None = None,
    ) -> bool:
        """Restore full capacity for a key."""
        key = build_key(scope, identifier, provider)
        rule = self._config.rule_for(scope, identifier, provider)
        if rule.unlimited:
            return True

        limiter = self._limiter_for(rule, self._algorithm_for(rule, algorithm))
        await limiter.reset(key)
        logger.info(f"Reset rate limit for {key}")
        return True
