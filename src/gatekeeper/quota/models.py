"""Data models for hierarchical quotas."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class QuotaScope(str, Enum):
    """Hierarchy level a quota applies to."""

    USER = "user"
    GROUP = "group"
    SITE = "site"
    GLOBAL = "global"


class QuotaType(str, Enum):
    """Metric a quota meters."""

    REQUESTS = "requests"
    TOKENS = "tokens"
    COST = "cost"


class QuotaPeriod(str, Enum):
    """Tracking period for a quota."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class QuotaStatus(str, Enum):
    """Usage level relative to the quota's thresholds."""

    NORMAL = "normal"
    WARNING = "warning"  # At or past the warn threshold
    CRITICAL = "critical"  # At or past the alert threshold
    EXCEEDED = "exceeded"


GLOBAL_SCOPE_ID = "global"


def quota_key(scope: QuotaScope, scope_id: str, quota_type: QuotaType, period: QuotaPeriod) -> str:
    """Store key shared by the cache and durable tiers."""
    return f"quota:{scope.value}:{scope_id}:{quota_type.value}:{period.value}"


@dataclass
class Quota:
    """
    Budget for one scope, metric and period.

    `used + reserved <= limit` is the admission condition. It is checked, not
    stored: usage may land past the limit when actual costs exceed estimates.
    """

    scope: QuotaScope
    scope_id: str
    quota_type: QuotaType
    period: QuotaPeriod
    limit: float
    period_start: float
    period_end: float
    used: float = 0.0
    reserved: float = 0.0
    warn_threshold: float = 80.0
    alert_threshold: float = 90.0
    last_warning_sent: float = 0.0
    warning_count: int = 0
    is_exceeded: bool = False
    exceeded_at: float = 0.0

    @property
    def key(self) -> str:
        return quota_key(self.scope, self.scope_id, self.quota_type, self.period)

    @property
    def available(self) -> float:
        return self.limit - self.used - self.reserved

    @property
    def percent_used(self) -> float:
        if self.limit <= 0:
            return 0.0
        return self.used / self.limit * 100

    @property
    def status(self) -> QuotaStatus:
        percent = self.percent_used
        if percent >= 100:
            return QuotaStatus.EXCEEDED
        if percent >= self.alert_threshold:
            return QuotaStatus.CRITICAL
        if percent >= self.warn_threshold:
            return QuotaStatus.WARNING
        return QuotaStatus.NORMAL

    @property
    def warned_this_period(self) -> bool:
        return self.last_warning_sent >= self.period_start

    @property
    def reset_time(self) -> datetime:
        return datetime.fromtimestamp(self.period_end, tz=timezone.utc)

    def rolled_over(self, period_start: float, period_end: float) -> Quota:
        """Return a copy with usage cleared for a new period."""
        return Quota(
            scope=self.scope,
            scope_id=self.scope_id,
            quota_type=self.quota_type,
            period=self.period,
            limit=self.limit,
            period_start=period_start,
            period_end=period_end,
            warn_threshold=self.warn_threshold,
            alert_threshold=self.alert_threshold,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["scope"] = self.scope.value
        data["quota_type"] = self.quota_type.value
        data["period"] = self.period.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Quota:
        return cls(
            scope=QuotaScope(data["scope"]),
            scope_id=str(data["scope_id"]),
            quota_type=QuotaType(data["quota_type"]),
            period=QuotaPeriod(data["period"]),
            limit=float(data["limit"]),
            period_start=float(data["period_start"]),
            period_end=float(data["period_end"]),
            used=float(data.get("used", 0.0)),
            reserved=float(data.get("reserved", 0.0)),
            warn_threshold=float(data.get("warn_threshold", 80.0)),
            alert_threshold=float(data.get("alert_threshold", 90.0)),
            last_warning_sent=float(data.get("last_warning_sent", 0.0)),
            warning_count=int(data.get("warning_count", 0)),
            is_exceeded=bool(data.get("is_exceeded", False)),
            exceeded_at=float(data.get("exceeded_at", 0.0)),
        )

    def status_dict(self) -> dict[str, Any]:
        """Summary for status displays."""
        return {
            "scope": self.scope.value,
            "scope_id": self.scope_id,
            "type": self.quota_type.value,
            "period": self.period.value,
            "used": self.used,
            "reserved": self.reserved,
            "limit": self.limit,
            "available": self.available,
            "percent_used": round(self.percent_used, 2),
            "is_exceeded": self.is_exceeded,
            "reset_at": self.period_end,
            "reset_time": self.reset_time.isoformat(),
            "status": self.status.value,
        }
