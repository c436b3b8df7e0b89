"""
Hierarchical quota tracking.

Budgets per user, group, site and global scope across hourly, daily,
weekly and monthly periods, with reserve/consume/release semantics.
"""

from gatekeeper.quota.config import (
    QuotaConfigProvider,
    QuotaLimits,
    StaticQuotaConfigProvider,
    load_quota_config,
)
from gatekeeper.quota.hierarchy import ScopeHierarchy
from gatekeeper.quota.manager import QuotaManager
from gatekeeper.quota.models import (
    GLOBAL_SCOPE_ID,
    Quota,
    QuotaPeriod,
    QuotaScope,
    QuotaStatus,
    QuotaType,
    quota_key,
)
from gatekeeper.quota.notifications import LoggingNotificationSink, NotificationSink
from gatekeeper.quota.periods import get_timezone, period_bounds

__all__ = [
    "GLOBAL_SCOPE_ID",
    "LoggingNotificationSink",
    "NotificationSink",
    "Quota",
    "QuotaConfigProvider",
    "QuotaLimits",
    "QuotaManager",
    "QuotaPeriod",
    "QuotaScope",
    "QuotaStatus",
    "QuotaType",
    "ScopeHierarchy",
    "StaticQuotaConfigProvider",
    "get_timezone",
    "load_quota_config",
    "period_bounds",
    "quota_key",
]
