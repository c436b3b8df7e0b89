"""Quota threshold notifications."""

import logging
from abc import ABC, abstractmethod

from gatekeeper.quota.models import Quota, QuotaType

logger = logging.getLogger(__name__)


def format_quota_value(value: float, quota_type: QuotaType) -> str:
    if quota_type == QuotaType.COST:
        return f"${value:,.2f}"
    return f"{value:,.0f}"


def quota_message(quota: Quota) -> str:
    used = format_quota_value(quota.used, quota.quota_type)
    limit = format_quota_value(quota.limit, quota.quota_type)
    return (
        f"{quota.period.value} {quota.quota_type.value} quota for "
        f"{quota.scope.value}:{quota.scope_id} at {quota.percent_used:.1f}% ({used} of {limit})"
    )


class NotificationSink(ABC):
    """
    Receiver for quota threshold events.

    Calls are fire-and-forget: the quota manager logs and discards any
    exception a sink raises.
    """

    @abstractmethod
    def notify_quota_warning(self, quota: Quota, level: str) -> None:
        """
        Report that a quota crossed a threshold.

        Args:
            quota: Quota state at the time of the check
            level: "warning" (once per period) or "alert" (every check)
        """
        ...

    @abstractmethod
    def notify_quota_exceeded(self, quota: Quota) -> None:
        """Report that a quota reached its limit."""
        ...


class LoggingNotificationSink(NotificationSink):
    """Writes quota events to the log."""

    def notify_quota_warning(self, quota: Quota, level: str) -> None:
        if level == "alert":
            logger.warning(f"Quota alert: {quota_message(quota)}")
        else:
            logger.info(f"Quota warning: {quota_message(quota)}")

    def notify_quota_exceeded(self, quota: Quota) -> None:
        logger.error(f"Quota exceeded: {quota_message(quota)}")
