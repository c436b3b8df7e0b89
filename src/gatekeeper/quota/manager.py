"""
Quota management service.

Tracks usage against hierarchical quotas (user, group, site, global) over
hourly, daily, weekly and monthly periods, with a reserve/consume/release
protocol for operations whose real cost is only known afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any

from gatekeeper.clock import Clock, default_clock
from gatekeeper.config import settings
from gatekeeper.exceptions import QuotaExceeded
from gatekeeper.quota.config import QuotaConfigProvider, QuotaLimits
from gatekeeper.quota.hierarchy import ScopeHierarchy
from gatekeeper.quota.models import Quota, QuotaPeriod, QuotaScope, QuotaType, quota_key
from gatekeeper.quota.notifications import LoggingNotificationSink, NotificationSink
from gatekeeper.quota.periods import get_timezone, period_bounds
from gatekeeper.store.base import StateStore

logger = logging.getLogger(__name__)


@dataclass
class _QuotaRef:
    """One quota in a scope chain, with its configured limit."""

    scope: QuotaScope
    scope_id: str
    quota_type: QuotaType
    period: QuotaPeriod
    limit: float
    limits: QuotaLimits

    @property
    def key(self) -> str:
        return quota_key(self.scope, self.scope_id, self.quota_type, self.period)


@dataclass
class _CheckOutcome:
    quota: Quota
    allowed: bool
    warn: bool = False
    alert: bool = False


class QuotaManager:
    """
    Manages hierarchical quotas.

    Every mutation of a quota (rollover, reserve, consume, release) is one
    atomic update of its store key. Side effects such as notifications run
    only after the update has committed.
    """

    def __init__(
        self,
        store: StateStore,
        config_provider: QuotaConfigProvider,
        hierarchy: ScopeHierarchy | None = None,
        notifier: NotificationSink | None = None,
        clock: Clock | None = None,
        timezone: tzinfo | None = None,
    ) -> None:
        """
        Initialize quota manager.

        Args:
            store: Shared state store
            config_provider: Source of per-scope limits
            hierarchy: Scope membership, defaults to no groups or sites
            notifier: Receiver for threshold events, defaults to logging
            clock: Time source
            timezone: Timezone period boundaries align to, defaults to settings
        """
        self._store = store
        self._config = config_provider
        self._hierarchy = hierarchy or ScopeHierarchy()
        self._notifier = notifier or LoggingNotificationSink()
        self._clock = clock or default_clock
        self._tz = timezone or get_timezone(settings.quota_timezone)

    @property
    def hierarchy(self) -> ScopeHierarchy:
        return self._hierarchy

    def _chain(self, scope: QuotaScope, scope_id: str, quota_type: QuotaType) -> list[_QuotaRef]:
        """Resolve every tracked quota governing scope:scope_id, nearest scope first."""
        refs = []
        for chain_scope, chain_id in self._hierarchy.chain(scope, scope_id):
            limits = self._config.get_limits(chain_scope, chain_id)
            for period, limit in limits.tracked_periods(quota_type):
                refs.append(_QuotaRef(chain_scope, chain_id, quota_type, period, limit, limits))
        return refs

    def _current(self, ref: _QuotaRef, data: Any | None, now: float) -> Quota:
        """Load a quota, creating it or rolling it into the current period as needed."""
        if data:
            quota = Quota.from_dict(data)
            if now >= quota.period_end:
                start, end = period_bounds(ref.period, now, self._tz)
                logger.debug(f"Rolling over {ref.key} to period starting {start}")
                quota = quota.rolled_over(start, end)
        else:
            start, end = period_bounds(ref.period, now, self._tz)
            quota = Quota(
                scope=ref.scope,
                scope_id=ref.scope_id,
                quota_type=ref.quota_type,
                period=ref.period,
                limit=ref.limit,
                period_start=start,
                period_end=end,
            )

        # Configuration is authoritative for limits and thresholds
        quota.limit = ref.limit
        quota.warn_threshold = ref.limits.warn_threshold
        quota.alert_threshold = ref.limits.alert_threshold
        return quota

    def _notify(self, quota: Quota, level: str) -> None:
        try:
            self._notifier.notify_quota_warning(quota, level)
        except Exception:
            logger.exception(f"Quota {level} notification failed for {quota.key}")

    def _notify_exceeded(self, quota: Quota) -> None:
        try:
            self._notifier.notify_quota_exceeded(quota)
        except Exception:
            logger.exception(f"Quota exceeded notification failed for {quota.key}")

    @staticmethod
    def _coerce(scope: QuotaScope | str, quota_type: QuotaType | str) -> tuple[QuotaScope, QuotaType]:
        return QuotaScope(scope), QuotaType(quota_type)

    async def check_quota(
        self,
        scope: QuotaScope | str,
        scope_id: str,
        quota_type: QuotaType | str,
        cost: float = 1.0,
        reserve: bool = False,
    ) -> bool:
        """
        Check that every quota in the scope chain has room for `cost`.

        Args:
            scope: Scope the request is charged to
            scope_id: Identifier within the scope
            quota_type: Metric being checked
            cost: Amount the operation needs
            reserve: Hold `cost` on every quota in the chain until consumed or released

        Returns:
            True when every quota has headroom

        Raises:
            QuotaExceeded: For the first quota in the chain lacking headroom
            ConfigurationError: If a scope in the chain has no configuration
        """
        if cost < 0:
            raise ValueError(f"Quota cost must be non-negative, got {cost}")

        scope, quota_type = self._coerce(scope, quota_type)
        refs = self._chain(scope, scope_id, quota_type)
        now = self._clock.now()
        reserved: list[_QuotaRef] = []

        try:
            for ref in refs:

                def check(data: Any | None, ref: _QuotaRef = ref) -> tuple[dict, _CheckOutcome]:
                    quota = self._current(ref, data, now)

                    if quota.available < cost:
                        return quota.to_dict(), _CheckOutcome(quota, allowed=False)

                    outcome = _CheckOutcome(quota, allowed=True)
                    percent = quota.percent_used
                    if percent >= quota.warn_threshold and not quota.warned_this_period:
                        quota.last_warning_sent = now
                        quota.warning_count += 1
                        outcome.warn = True
                    if percent >= quota.alert_threshold:
                        outcome.alert = True

                    if reserve:
                        quota.reserved += cost
                    return quota.to_dict(), outcome

                outcome = await self._store.atomic_update(ref.key, check)
                quota = outcome.quota

                if not outcome.allowed:
                    logger.info(
                        f"Quota denied {quota.key}: used {quota.used:g} + reserved "
                        f"{quota.reserved:g} + cost {cost:g} > limit {quota.limit:g}"
                    )
                    raise QuotaExceeded(
                        quota_type=quota_type.value,
                        used=quota.used,
                        limit=quota.limit,
                        reset_at=quota.period_end,
                        scope=quota.scope.value,
                        scope_id=quota.scope_id,
                        period=quota.period.value,
                        reserved=quota.reserved,
                    )

                if reserve:
                    reserved.append(ref)
                if outcome.warn:
                    self._notify(quota, "warning")
                if outcome.alert:
                    self._notify(quota, "alert")
        except BaseException:
            if reserved:
                await self._release_refs(reserved, cost)
            raise

        return True

    async def _release_refs(self, refs: list[_QuotaRef], amount: float) -> None:
        """Give back reservations taken earlier in a chain that was then denied."""
        now = self._clock.now()
        for ref in refs:

            def release(data: Any | None, ref: _QuotaRef = ref) -> tuple[dict, None]:
                quota = self._current(ref, data, now)
                quota.reserved = max(0.0, quota.reserved - amount)
                return quota.to_dict(), None

            try:
                await self._store.atomic_update(ref.key, release)
            except Exception:
                logger.exception(f"Failed to roll back reservation of {amount:g} on {ref.key}")

    async def consume_quota(
        self,
        scope: QuotaScope | str,
        scope_id: str,
        quota_type: QuotaType | str,
        actual_cost: float,
        reserved_cost: float = 0.0,
        completed: set[str] | None = None,
    ) -> None:
        """
        Book actual usage and release the matching reservation.

        Args:
            scope: Scope the request was charged to
            scope_id: Identifier within the scope
            quota_type: Metric being consumed
            actual_cost: Real cost of the completed operation
            reserved_cost: Amount reserved by the earlier check, if any
            completed: Keys already booked by an earlier attempt; updated in place
                as each key commits, so a retry skips them
        """
        if actual_cost < 0 or reserved_cost < 0:
            raise ValueError("Quota costs must be non-negative")

        scope, quota_type = self._coerce(scope, quota_type)
        now = self._clock.now()

        done = completed if completed is not None else set()
        for ref in self._chain(scope, scope_id, quota_type):
            if ref.key in done:
                continue

            def consume(data: Any | None, ref: _QuotaRef = ref) -> tuple[dict, tuple[Quota, bool]]:
                quota = self._current(ref, data, now)
                quota.used += actual_cost
                quota.reserved = max(0.0, quota.reserved - reserved_cost)

                newly_exceeded = quota.used >= quota.limit and not quota.is_exceeded
                if newly_exceeded:
                    quota.is_exceeded = True
                    quota.exceeded_at = now
                return quota.to_dict(), (quota, newly_exceeded)

            quota, newly_exceeded = await self._store.atomic_update(ref.key, consume)
            done.add(ref.key)
            if newly_exceeded:
                logger.warning(f"Quota {quota.key} exceeded: {quota.used:g}/{quota.limit:g}")
                self._notify_exceeded(quota)

    async def release_quota(
        self,
        scope: QuotaScope | str,
        scope_id: str,
        quota_type: QuotaType | str,
        reserved_cost: float,
        completed: set[str] | None = None,
    ) -> None:
        """
        Roll back a reservation after the operation failed.

        Keys in `completed` are skipped; keys released here are added to it.
        """
        if reserved_cost < 0:
            raise ValueError("Quota costs must be non-negative")

        scope, quota_type = self._coerce(scope, quota_type)
        now = self._clock.now()

        done = completed if completed is not None else set()
        for ref in self._chain(scope, scope_id, quota_type):
            if ref.key in done:
                continue

            def release(data: Any | None, ref: _QuotaRef = ref) -> tuple[dict, None]:
                quota = self._current(ref, data, now)
                quota.reserved = max(0.0, quota.reserved - reserved_cost)
                return quota.to_dict(), None

            await self._store.atomic_update(ref.key, release)
            done.add(ref.key)

    async def get_quotas(
        self,
        scope: QuotaScope | str,
        scope_id: str,
        quota_type: QuotaType | str,
    ) -> list[Quota]:
        """Current state of every quota in the chain, rolled into the current period."""
        scope, quota_type = self._coerce(scope, quota_type)
        now = self._clock.now()
        quotas = []

        for ref in self._chain(scope, scope_id, quota_type):

            def refresh(data: Any | None, ref: _QuotaRef = ref) -> tuple[dict | None, Quota]:
                quota = self._current(ref, data, now)
                # Only persist rollovers; unseen quotas are created by their first check
                return (quota.to_dict() if data else None), quota

            quotas.append(await self._store.atomic_update(ref.key, refresh))

        return quotas

    async def get_quota_status(self, scope: QuotaScope | str, scope_id: str) -> list[dict[str, Any]]:
        """
        Get usage of every quota governing a scope, for display.

        Returns:
            One entry per (metric, scope in chain, period)
        """
        status = []
        for quota_type in QuotaType:
            for quota in await self.get_quotas(scope, scope_id, quota_type):
                status.append(quota.status_dict())
        return status

    async def reset_quota(
        self,
        scope: QuotaScope | str,
        scope_id: str,
        quota_type: QuotaType | str | None = None,
    ) -> int:
        """
        Administratively clear usage and reservations for one scope.

        Ancestor scopes are untouched. This is the recovery path for
        reservations leaked by callers that never settled or cancelled.

        Returns:
            Number of quotas reset
        """
        scope = QuotaScope(scope)
        types = [QuotaType(quota_type)] if quota_type else list(QuotaType)
        limits = self._config.get_limits(scope, scope_id)
        now = self._clock.now()
        count = 0

        for qtype in types:
            for period, limit in limits.tracked_periods(qtype):
                ref = _QuotaRef(scope, scope_id, qtype, period, limit, limits)

                def reset(data: Any | None, ref: _QuotaRef = ref) -> tuple[dict, None]:
                    quota = self._current(ref, data, now)
                    fresh = quota.rolled_over(quota.period_start, quota.period_end)
                    return fresh.to_dict(), None

                await self._store.atomic_update(ref.key, reset)
                count += 1

        logger.info(f"Reset {count} quotas for {scope.value}:{scope_id}")
        return count
