"""Error taxonomy for admission control."""

from datetime import datetime, timezone
from typing import Any


class GatekeeperError(Exception):
    """Base class for all gatekeeper errors."""


class RateLimitExceeded(GatekeeperError):
    """A rate limiter denied the request. Retryable after `retry_after` seconds."""

    def __init__(
        self,
        current_usage: float,
        limit: float,
        retry_after: int,
        scope: str,
    ) -> None:
        self.current_usage = current_usage
        self.limit = limit
        self.retry_after = retry_after
        self.scope = scope
        super().__init__(
            f"Rate limit exceeded for {scope}. Used {current_usage:g}/{limit:g}. "
            f"Retry after {retry_after} seconds."
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "rate_limit_exceeded",
            "message": str(self),
            "current_usage": self.current_usage,
            "limit": self.limit,
            "retry_after": self.retry_after,
            "scope": self.scope,
        }


class QuotaExceeded(GatekeeperError):
    """A quota in the scope chain lacks headroom. Retryable after `reset_at`."""

    def __init__(
        self,
        quota_type: str,
        used: float,
        limit: float,
        reset_at: float,
        scope: str = "",
        scope_id: str = "",
        period: str = "",
        reserved: float = 0.0,
    ) -> None:
        self.quota_type = quota_type
        self.used = used
        self.limit = limit
        self.reset_at = reset_at
        self.scope = scope
        self.scope_id = scope_id
        self.period = period
        self.reserved = reserved
        super().__init__(
            f"Quota exceeded for {quota_type} ({scope}:{scope_id} {period}). "
            f"Used {used:g}/{limit:g}. Resets at {self.reset_time.isoformat()}"
        )

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.reset_at, tz=timezone.utc)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": "quota_exceeded",
            "message": str(self),
            "quota_type": self.quota_type,
            "scope": self.scope,
            "scope_id": self.scope_id,
            "period": self.period,
            "used": self.used,
            "reserved": self.reserved,
            "limit": self.limit,
            "reset_at": self.reset_at,
            "reset_time": self.reset_time.isoformat(),
        }


class ConfigurationError(GatekeeperError):
    """Limit configuration is missing or invalid. Not retryable."""


class StateStoreUnavailable(GatekeeperError):
    """The backing state store could not be reached or could not commit."""


class TicketStateError(GatekeeperError):
    """An admission ticket was settled or cancelled more than once."""
