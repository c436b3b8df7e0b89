"""Rate limiting: token bucket, sliding window and fixed window algorithms."""

from gatekeeper.ratelimit.limiter import (
    FixedWindowLimiter,
    RateLimitAlgorithm,
    SlidingWindowLimiter,
    TokenBucketLimiter,
)
from gatekeeper.ratelimit.models import (
    Algorithm,
    LimitRule,
    RateLimitConfig,
    RateLimitResult,
    RateLimitState,
)
from gatekeeper.ratelimit.service import RateLimiter, build_key

__all__ = [
    "Algorithm",
    "FixedWindowLimiter",
    "LimitRule",
    "RateLimitAlgorithm",
    "RateLimitConfig",
    "RateLimitResult",
    "RateLimitState",
    "RateLimiter",
    "SlidingWindowLimiter",
    "TokenBucketLimiter",
    "build_key",
]
