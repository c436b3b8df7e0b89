"""Data models for rate limiting."""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from gatekeeper.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Algorithm(str, Enum):
    """Rate limiting algorithms."""

    TOKEN_BUCKET = "token_bucket"  # Burst-tolerant, user-facing limits
    SLIDING_WINDOW = "sliding_window"  # Strict, provider-imposed limits
    FIXED_WINDOW = "fixed_window"  # Fallback for stores without CAS


@dataclass
class LimitRule:
    """
    Limit configuration for one scope, provider or feature.

    Set `limit` to 0 to leave the scope unlimited.
    """

    limit: int = 100
    window_seconds: int = 3600
    capacity: float | None = None  # Token bucket size, defaults to `limit`
    algorithm: Algorithm = Algorithm.TOKEN_BUCKET

    @property
    def unlimited(self) -> bool:
        return self.limit == 0

    @property
    def bucket_capacity(self) -> float:
        return float(self.capacity if self.capacity is not None else self.limit)

    @property
    def refill_rate(self) -> float:
        """Tokens added per second."""
        return self.bucket_capacity / self.window_seconds

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["algorithm"] = self.algorithm.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LimitRule:
        try:
            rule = cls(
                limit=int(data.get("limit", 100)),
                window_seconds=int(data.get("window_seconds", data.get("window_size", 3600))),
                capacity=data.get("capacity"),
                algorithm=Algorithm(data.get("algorithm", Algorithm.TOKEN_BUCKET.value)),
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid rate limit rule {data!r}: {e}") from e

        if rule.limit < 0 or rule.window_seconds <= 0:
            raise ConfigurationError(f"Invalid rate limit rule {data!r}: limit must be >= 0 and window > 0")
        return rule


@dataclass
class RateLimitConfig:
    """
    Rate limit rules by scope, with per-provider and per-feature overrides.

    Scopes without a rule use `default`.
    """

    limits: dict[str, LimitRule] = field(default_factory=dict)
    providers: dict[str, LimitRule] = field(default_factory=dict)
    features: dict[str, LimitRule] = field(default_factory=dict)
    default: LimitRule = field(default_factory=LimitRule)

    def rule_for(self, scope: str, identifier: str, provider: str | None = None) -> LimitRule:
        """Resolve the rule governing a limiter key."""
        if scope == "provider":
            for name in (identifier, provider):
                if name and name in self.providers:
                    return self.providers[name]
        elif scope == "feature" and identifier in self.features:
            return self.features[identifier]

        return self.limits.get(scope, self.default)

    def to_dict(self) -> dict[str, Any]:
        return {
            "limits": {k: v.to_dict() for k, v in self.limits.items()},
            "providers": {k: v.to_dict() for k, v in self.providers.items()},
            "features": {k: v.to_dict() for k, v in self.features.items()},
            "default": self.default.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], default: LimitRule | None = None) -> RateLimitConfig:
        def rules(section: str) -> dict[str, LimitRule]:
            return {k: LimitRule.from_dict(v) for k, v in data.get(section, {}).items()}

        default_rule = default or LimitRule()
        if "default" in data:
            default_rule = LimitRule.from_dict(data["default"])

        return cls(
            limits=rules("limits"),
            providers=rules("providers"),
            features=rules("features"),
            default=default_rule,
        )

    @classmethod
    def from_file(cls, path: str | Path, default: LimitRule | None = None) -> RateLimitConfig:
        """
        Load configuration from a JSON file.

        A missing file yields an empty configuration (every scope uses the
        default rule). An unreadable file is a configuration error.
        """
        config_path = Path(path)
        if not config_path.exists():
            logger.info(f"No rate limit config at {config_path}, using default rule")
            return cls(default=default or LimitRule())

        try:
            with open(config_path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Failed to load rate limit config {config_path}: {e}") from e

        logger.info(f"Loaded rate limit config from {config_path}")
        return cls.from_dict(data, default=default)


@dataclass
class RateLimitState:
    """Token bucket state for one limiter key."""

    tokens_available: float
    tokens_capacity: float
    last_refill_time: float
    refill_rate: float

    def refilled(self, now: float) -> RateLimitState:
        """Return the state after continuous refill up to `now`."""
        elapsed = max(0.0, now - self.last_refill_time)
        tokens = min(self.tokens_capacity, self.tokens_available + elapsed * self.refill_rate)
        return RateLimitState(
            tokens_available=tokens,
            tokens_capacity=self.tokens_capacity,
            last_refill_time=max(now, self.last_refill_time),
            refill_rate=self.refill_rate,
        )

    def to_dict(self) -> dict[str, float]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RateLimitState:
        return cls(
            tokens_available=float(data["tokens_available"]),
            tokens_capacity=float(data["tokens_capacity"]),
            last_refill_time=float(data["last_refill_time"]),
            refill_rate=float(data["refill_rate"]),
        )


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""

    allowed: bool
    """Whether the request is allowed."""

    remaining: float
    """Capacity left after this check."""

    limit: float
    """Maximum requests (or tokens) allowed in the window."""

    reset_at: float
    """Epoch seconds when the limiter is fully replenished."""

    retry_after: int | None = None
    """Seconds to wait before retrying (if not allowed)."""

    current_usage: float = 0.0
    """Capacity in use at the time of the check."""

    key: str = ""
    """Limiter key the result applies to."""

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "limit": self.limit,
            "reset_at": self.reset_time.isoformat(),
            "retry_after": self.retry_after,
            "current_usage": self.current_usage,
            "key": self.key,
        }
