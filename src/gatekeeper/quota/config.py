"""
Quota limit configuration.

Limits are looked up per scope. A scope with no configuration is an error:
quotas fail closed rather than defaulting to unlimited.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from gatekeeper.config import settings
from gatekeeper.exceptions import ConfigurationError
from gatekeeper.quota.hierarchy import ScopeHierarchy
from gatekeeper.quota.models import QuotaPeriod, QuotaScope, QuotaType

logger = logging.getLogger(__name__)


@dataclass
class QuotaLimits:
    """
    Limits for one scope, by metric and period.

    A period with limit 0 (or absent) is not tracked for that metric.
    """

    limits: dict[QuotaType, dict[QuotaPeriod, float]] = field(default_factory=dict)
    warn_threshold: float = 80.0
    alert_threshold: float = 90.0

    def limit_for(self, quota_type: QuotaType, period: QuotaPeriod) -> float:
        return self.limits.get(quota_type, {}).get(period, 0.0)

    def tracked_periods(self, quota_type: QuotaType) -> list[tuple[QuotaPeriod, float]]:
        """Periods with a positive limit, shortest first."""
        return [
            (period, self.limit_for(quota_type, period))
            for period in QuotaPeriod
            if self.limit_for(quota_type, period) > 0
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "limits": {
                t.value: {p.value: v for p, v in periods.items()}
                for t, periods in self.limits.items()
            },
            "warn_threshold": self.warn_threshold,
            "alert_threshold": self.alert_threshold,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QuotaLimits:
        """
        Parse limits from a nested or flat mapping.

        Nested: {"limits": {"requests": {"daily": 1000}}}
        Flat:   {"daily_request_limit": 1000, "monthly_cost_limit": 200.0}
        """
        limits: dict[QuotaType, dict[QuotaPeriod, float]] = {}

        try:
            for type_name, periods in data.get("limits", {}).items():
                quota_type = QuotaType(type_name)
                for period_name, value in periods.items():
                    limits.setdefault(quota_type, {})[QuotaPeriod(period_name)] = float(value)

            for quota_type in QuotaType:
                singular = quota_type.value.rstrip("s")
                for period in QuotaPeriod:
                    for name in (quota_type.value, singular):
                        flat_key = f"{period.value}_{name}_limit"
                        if flat_key in data:
                            limits.setdefault(quota_type, {})[period] = float(data[flat_key])

            warn = float(data.get("warn_threshold", settings.default_warn_threshold))
            alert = float(data.get("alert_threshold", settings.default_alert_threshold))
        except (ValueError, TypeError, AttributeError) as e:
            raise ConfigurationError(f"Invalid quota limits {data!r}: {e}") from e

        if any(v < 0 for periods in limits.values() for v in periods.values()):
            raise ConfigurationError(f"Quota limits must be non-negative: {data!r}")

        return cls(limits=limits, warn_threshold=warn, alert_threshold=alert)


class QuotaConfigProvider(ABC):
    """Source of quota limits for a scope."""

    @abstractmethod
    def get_limits(self, scope: QuotaScope, scope_id: str) -> QuotaLimits:
        """
        Get the limits for a scope.

        Raises:
            ConfigurationError: If no limits are configured for the scope
        """
        ...


class StaticQuotaConfigProvider(QuotaConfigProvider):
    """
    Limits held in memory, keyed by "scope:scope_id", "scope" or "default".

    The most specific entry wins.
    """

    def __init__(self, configs: dict[str, QuotaLimits]) -> None:
        self._configs = dict(configs)

    def get_limits(self, scope: QuotaScope, scope_id: str) -> QuotaLimits:
        for name in (f"{scope.value}:{scope_id}", scope.value, "default"):
            if name in self._configs:
                return self._configs[name]

        raise ConfigurationError(f"No quota configuration for {scope.value}:{scope_id}")

    def to_dict(self) -> dict[str, Any]:
        return {name: limits.to_dict() for name, limits in self._configs.items()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StaticQuotaConfigProvider:
        return cls({str(name): QuotaLimits.from_dict(v) for name, v in data.items()})


def load_quota_config(path: str | Path | None = None) -> tuple[StaticQuotaConfigProvider, ScopeHierarchy]:
    """
    Load quota limits and scope membership from a JSON file.

    Expected layout::

        {
          "quotas": {"default": {...}, "user:alice": {...}},
          "hierarchy": {"user_groups": {"alice": ["eng"]}, "group_sites": {"eng": "main"}}
        }

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    config_path = Path(path or settings.quota_config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Quota config not found: {config_path}")

    try:
        with open(config_path) as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Failed to load quota config {config_path}: {e}") from e

    provider = StaticQuotaConfigProvider.from_dict(data.get("quotas", {}))
    hierarchy = ScopeHierarchy.from_dict(data.get("hierarchy", {}))

    logger.info(f"Loaded quota config from {config_path}")
    return provider, hierarchy
