"""Tests for hierarchical quota management."""

import asyncio
import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from conftest import START, limits
from gatekeeper.clock import ManualClock
from gatekeeper.exceptions import ConfigurationError, QuotaExceeded
from gatekeeper.quota.config import QuotaLimits, StaticQuotaConfigProvider, load_quota_config
from gatekeeper.quota.hierarchy import ScopeHierarchy
from gatekeeper.quota.manager import QuotaManager
from gatekeeper.quota.models import (
    Quota,
    QuotaPeriod,
    QuotaScope,
    QuotaStatus,
    QuotaType,
)
from gatekeeper.quota.notifications import LoggingNotificationSink, NotificationSink
from gatekeeper.quota.periods import get_timezone, period_bounds
from gatekeeper.store.memory import InMemoryStore

UTC = get_timezone("UTC")


def ts(*args: int) -> float:
    return datetime(*args, tzinfo=timezone.utc).timestamp()


class TestPeriodBounds:
    """Tests for period boundary calculation."""

    def test_hourly(self) -> None:
        assert period_bounds(QuotaPeriod.HOURLY, START, UTC) == (ts(2025, 1, 15, 10), ts(2025, 1, 15, 11))

    def test_daily(self) -> None:
        assert period_bounds(QuotaPeriod.DAILY, START, UTC) == (ts(2025, 1, 15), ts(2025, 1, 16))

    def test_weekly_starts_monday(self) -> None:
        assert period_bounds(QuotaPeriod.WEEKLY, START, UTC) == (ts(2025, 1, 13), ts(2025, 1, 20))

    def test_monthly(self) -> None:
        assert period_bounds(QuotaPeriod.MONTHLY, START, UTC) == (ts(2025, 1, 1), ts(2025, 2, 1))

    def test_monthly_december(self) -> None:
        now = ts(2024, 12, 31, 23, 59)
        assert period_bounds(QuotaPeriod.MONTHLY, now, UTC) == (ts(2024, 12, 1), ts(2025, 1, 1))

    def test_boundary_belongs_to_next_period(self) -> None:
        start, end = period_bounds(QuotaPeriod.DAILY, ts(2025, 1, 16), UTC)
        assert start == ts(2025, 1, 16)

    def test_timezone_alignment(self) -> None:
        berlin = get_timezone("Europe/Berlin")
        start, end = period_bounds(QuotaPeriod.DAILY, START, berlin)

        assert start == ts(2025, 1, 14, 23)
        assert end - start == 86400

    def test_unknown_timezone(self) -> None:
        with pytest.raises(ConfigurationError):
            get_timezone("Mars/Olympus_Mons")


class TestQuotaModel:
    """Tests for the Quota dataclass."""

    @pytest.fixture
    def quota(self) -> Quota:
        return Quota(
            scope=QuotaScope.USER,
            scope_id="alice",
            quota_type=QuotaType.REQUESTS,
            period=QuotaPeriod.DAILY,
            limit=100,
            period_start=ts(2025, 1, 15),
            period_end=ts(2025, 1, 16),
            used=40,
            reserved=10,
        )

    def test_key(self, quota: Quota) -> None:
        assert quota.key == "quota:user:alice:requests:daily"

    def test_available(self, quota: Quota) -> None:
        assert quota.available == 50

    @pytest.mark.parametrize(
        "used,expected",
        [
            (10, QuotaStatus.NORMAL),
            (80, QuotaStatus.WARNING),
            (95, QuotaStatus.CRITICAL),
            (100, QuotaStatus.EXCEEDED),
        ],
    )
    def test_status(self, quota: Quota, used: float, expected: QuotaStatus) -> None:
        quota.used = used
        assert quota.status == expected

    def test_round_trip(self, quota: Quota) -> None:
        assert Quota.from_dict(quota.to_dict()) == quota

    def test_rolled_over_clears_usage(self, quota: Quota) -> None:
        quota.is_exceeded = True
        quota.warning_count = 2
        fresh = quota.rolled_over(ts(2025, 1, 16), ts(2025, 1, 17))

        assert fresh.used == 0
        assert fresh.reserved == 0
        assert fresh.is_exceeded is False
        assert fresh.warning_count == 0
        assert fresh.limit == 100


class TestQuotaLimits:
    """Tests for quota limit configuration."""

    def test_nested_format(self) -> None:
        parsed = QuotaLimits.from_dict(
            {"limits": {"requests": {"daily": 1000, "hourly": 100}}, "warn_threshold": 70}
        )
        assert parsed.limit_for(QuotaType.REQUESTS, QuotaPeriod.DAILY) == 1000
        assert parsed.warn_threshold == 70

    def test_flat_format(self) -> None:
        parsed = QuotaLimits.from_dict(
            {
                "hourly_request_limit": 100,
                "daily_request_limit": 1000,
                "monthly_cost_limit": 200.0,
                "daily_token_limit": 100000,
            }
        )
        assert parsed.limit_for(QuotaType.REQUESTS, QuotaPeriod.HOURLY) == 100
        assert parsed.limit_for(QuotaType.COST, QuotaPeriod.MONTHLY) == 200.0
        assert parsed.limit_for(QuotaType.TOKENS, QuotaPeriod.DAILY) == 100000

    def test_tracked_periods_skip_zero(self) -> None:
        parsed = limits(requests={QuotaPeriod.HOURLY: 0, QuotaPeriod.DAILY: 5, QuotaPeriod.MONTHLY: 50})
        assert parsed.tracked_periods(QuotaType.REQUESTS) == [
            (QuotaPeriod.DAILY, 5),
            (QuotaPeriod.MONTHLY, 50),
        ]
        assert parsed.tracked_periods(QuotaType.COST) == []

    def test_negative_limit(self) -> None:
        with pytest.raises(ConfigurationError):
            QuotaLimits.from_dict({"daily_request_limit": -1})

    def test_unknown_type(self) -> None:
        with pytest.raises(ConfigurationError):
            QuotaLimits.from_dict({"limits": {"bananas": {"daily": 1}}})


class TestStaticQuotaConfigProvider:
    """Tests for scope configuration lookup."""

    @pytest.fixture
    def provider(self) -> StaticQuotaConfigProvider:
        return StaticQuotaConfigProvider(
            {
                "default": limits(requests={QuotaPeriod.DAILY: 1}),
                "user": limits(requests={QuotaPeriod.DAILY: 2}),
                "user:admin": limits(requests={QuotaPeriod.DAILY: 3}),
            }
        )

    def test_specific_scope_id_wins(self, provider: StaticQuotaConfigProvider) -> None:
        config = provider.get_limits(QuotaScope.USER, "admin")
        assert config.limit_for(QuotaType.REQUESTS, QuotaPeriod.DAILY) == 3

    def test_scope_entry(self, provider: StaticQuotaConfigProvider) -> None:
        config = provider.get_limits(QuotaScope.USER, "alice")
        assert config.limit_for(QuotaType.REQUESTS, QuotaPeriod.DAILY) == 2

    def test_default_entry(self, provider: StaticQuotaConfigProvider) -> None:
        config = provider.get_limits(QuotaScope.SITE, "main")
        assert config.limit_for(QuotaType.REQUESTS, QuotaPeriod.DAILY) == 1

    def test_missing_configuration_fails_closed(self) -> None:
        provider = StaticQuotaConfigProvider({"user": limits(requests={QuotaPeriod.DAILY: 2})})
        with pytest.raises(ConfigurationError):
            provider.get_limits(QuotaScope.GLOBAL, "global")


class TestLoadQuotaConfig:
    """Tests for loading quota configuration files."""

    def test_missing_file(self) -> None:
        with pytest.raises(ConfigurationError):
            load_quota_config("/nonexistent/quota_config.json")

    def test_load(self) -> None:
        data = {
            "quotas": {"default": {"daily_request_limit": 1000}},
            "hierarchy": {"user_groups": {"alice": ["eng"]}, "group_sites": {"eng": "main"}},
        }
        with tempfile.NamedTemporaryFile(mode="w", suffix=".json", delete=False) as f:
            json.dump(data, f)
            path = f.name
        try:
            provider, hierarchy = load_quota_config(path)
        finally:
            os.unlink(path)

        config = provider.get_limits(QuotaScope.USER, "alice")
        assert config.limit_for(QuotaType.REQUESTS, QuotaPeriod.DAILY) == 1000
        assert hierarchy.user_groups == {"alice": ["eng"]}

    def test_example_config(self) -> None:
        provider, hierarchy = load_quota_config(Path(__file__).parent.parent / "quota_config.json")

        admin = provider.get_limits(QuotaScope.USER, "admin")
        assert admin.limit_for(QuotaType.COST, QuotaPeriod.MONTHLY) == 2000.0
        default = provider.get_limits(QuotaScope.SITE, "main")
        assert default.tracked_periods(QuotaType.REQUESTS) == [
            (QuotaPeriod.HOURLY, 100),
            (QuotaPeriod.DAILY, 1000),
            (QuotaPeriod.MONTHLY, 10000),
        ]
        assert hierarchy.default_site is None


class TestScopeHierarchy:
    """Tests for scope chain resolution."""

    @pytest.fixture
    def hierarchy(self) -> ScopeHierarchy:
        return ScopeHierarchy(
            user_groups={"alice": ["eng", "ops"]},
            group_sites={"eng": "main", "ops": "main"},
            user_sites={"bob": "branch"},
            default_site="main",
        )

    def test_user_chain(self, hierarchy: ScopeHierarchy) -> None:
        assert hierarchy.chain(QuotaScope.USER, "alice") == [
            (QuotaScope.USER, "alice"),
            (QuotaScope.GROUP, "eng"),
            (QuotaScope.GROUP, "ops"),
            (QuotaScope.SITE, "main"),
            (QuotaScope.GLOBAL, "global"),
        ]

    def test_user_site_membership(self, hierarchy: ScopeHierarchy) -> None:
        assert hierarchy.chain(QuotaScope.USER, "bob") == [
            (QuotaScope.USER, "bob"),
            (QuotaScope.SITE, "branch"),
            (QuotaScope.GLOBAL, "global"),
        ]

    def test_default_site(self, hierarchy: ScopeHierarchy) -> None:
        assert (QuotaScope.SITE, "main") in hierarchy.chain(QuotaScope.USER, "carol")

    def test_group_chain(self, hierarchy: ScopeHierarchy) -> None:
        assert hierarchy.chain(QuotaScope.GROUP, "eng") == [
            (QuotaScope.GROUP, "eng"),
            (QuotaScope.SITE, "main"),
            (QuotaScope.GLOBAL, "global"),
        ]

    def test_global_chain(self, hierarchy: ScopeHierarchy) -> None:
        assert hierarchy.chain(QuotaScope.GLOBAL, "global") == [(QuotaScope.GLOBAL, "global")]

    def test_empty_hierarchy(self) -> None:
        assert ScopeHierarchy().chain(QuotaScope.USER, "x") == [
            (QuotaScope.USER, "x"),
            (QuotaScope.GLOBAL, "global"),
        ]


class TestQuotaManager:
    """Tests for QuotaManager check/consume/release."""

    @pytest.fixture
    def notifier(self) -> MagicMock:
        return MagicMock(spec=NotificationSink)

    @pytest.fixture
    def manager(
        self,
        store: InMemoryStore,
        quota_provider: StaticQuotaConfigProvider,
        notifier: MagicMock,
        clock: ManualClock,
    ) -> QuotaManager:
        return QuotaManager(store, quota_provider, notifier=notifier, clock=clock, timezone=UTC)

    async def _quota(self, manager: QuotaManager, scope: str, scope_id: str, quota_type: str = "requests") -> Quota:
        for quota in await manager.get_quotas("user", "alice", quota_type):
            if quota.scope.value == scope and quota.scope_id == scope_id:
                return quota
        raise AssertionError(f"No quota for {scope}:{scope_id}")

    @pytest.mark.asyncio
    async def test_check_within_headroom(self, manager: QuotaManager) -> None:
        assert await manager.check_quota("user", "alice", "requests", cost=10) is True

    @pytest.mark.asyncio
    async def test_check_exceeds(self, manager: QuotaManager) -> None:
        with pytest.raises(QuotaExceeded) as exc_info:
            await manager.check_quota("user", "alice", "requests", cost=11)

        error = exc_info.value
        assert error.scope == "user"
        assert error.scope_id == "alice"
        assert error.limit == 10
        assert error.reset_at == ts(2025, 1, 16)
        assert error.to_dict()["error"] == "quota_exceeded"

    @pytest.mark.asyncio
    async def test_headroom_counts_reservations(self, manager: QuotaManager) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=4)
        await manager.check_quota("user", "alice", "requests", cost=5, reserve=True)

        assert await manager.check_quota("user", "alice", "requests", cost=1) is True
        with pytest.raises(QuotaExceeded):
            await manager.check_quota("user", "alice", "requests", cost=2)

    @pytest.mark.asyncio
    async def test_first_insufficient_quota_reported(self, store: InMemoryStore, clock: ManualClock) -> None:
        provider = StaticQuotaConfigProvider(
            {
                "user": limits(requests={QuotaPeriod.DAILY: 10}),
                "global": limits(requests={QuotaPeriod.DAILY: 5}),
            }
        )
        manager = QuotaManager(store, provider, clock=clock, timezone=UTC)

        with pytest.raises(QuotaExceeded) as exc_info:
            await manager.check_quota("user", "alice", "requests", cost=6)

        assert exc_info.value.scope == "global"
        assert exc_info.value.limit == 5

    @pytest.mark.asyncio
    async def test_reserve_applies_to_whole_chain(self, manager: QuotaManager) -> None:
        await manager.check_quota("user", "alice", "tokens", cost=300, reserve=True)

        assert (await self._quota(manager, "user", "alice", "tokens")).reserved == 300
        assert (await self._quota(manager, "global", "global", "tokens")).reserved == 300

    @pytest.mark.asyncio
    async def test_reservation_round_trip(self, manager: QuotaManager) -> None:
        """Reserve an estimate, consume the actual: used += actual, reserved back to 0."""
        await manager.check_quota("user", "alice", "tokens", cost=300, reserve=True)
        await manager.consume_quota("user", "alice", "tokens", actual_cost=450, reserved_cost=300)

        for scope, scope_id in (("user", "alice"), ("global", "global")):
            quota = await self._quota(manager, scope, scope_id, "tokens")
            assert quota.used == 450
            assert quota.reserved == 0

    @pytest.mark.asyncio
    async def test_release(self, manager: QuotaManager) -> None:
        await manager.check_quota("user", "alice", "tokens", cost=300, reserve=True)
        await manager.release_quota("user", "alice", "tokens", reserved_cost=300)

        quota = await self._quota(manager, "user", "alice", "tokens")
        assert quota.reserved == 0
        assert quota.used == 0

    @pytest.mark.asyncio
    async def test_release_never_negative(self, manager: QuotaManager) -> None:
        await manager.release_quota("user", "alice", "tokens", reserved_cost=50)
        assert (await self._quota(manager, "user", "alice", "tokens")).reserved == 0

    @pytest.mark.asyncio
    async def test_consume_skips_completed_keys(self, manager: QuotaManager) -> None:
        await manager.check_quota("user", "alice", "tokens", cost=300, reserve=True)
        completed = {"quota:user:alice:tokens:daily"}

        await manager.consume_quota("user", "alice", "tokens", actual_cost=300, reserved_cost=300, completed=completed)

        user = await self._quota(manager, "user", "alice", "tokens")
        assert (user.used, user.reserved) == (0, 300)
        glob = await self._quota(manager, "global", "global", "tokens")
        assert (glob.used, glob.reserved) == (300, 0)
        assert completed == {"quota:user:alice:tokens:daily", "quota:global:global:tokens:daily"}

    @pytest.mark.asyncio
    async def test_release_records_completed_keys(self, manager: QuotaManager) -> None:
        await manager.check_quota("user", "alice", "tokens", cost=300, reserve=True)
        await manager.check_quota("user", "alice", "tokens", cost=300, reserve=True)
        completed: set[str] = set()

        await manager.release_quota("user", "alice", "tokens", reserved_cost=300, completed=completed)
        await manager.release_quota("user", "alice", "tokens", reserved_cost=300, completed=completed)

        assert len(completed) == 2
        assert (await self._quota(manager, "user", "alice", "tokens")).reserved == 300
        assert (await self._quota(manager, "global", "global", "tokens")).reserved == 300

    @pytest.mark.asyncio
    async def test_denial_rolls_back_earlier_reservations(self, store: InMemoryStore, clock: ManualClock) -> None:
        provider = StaticQuotaConfigProvider(
            {
                "user": limits(requests={QuotaPeriod.DAILY: 10}),
                "global": limits(requests={QuotaPeriod.DAILY: 5}),
            }
        )
        manager = QuotaManager(store, provider, clock=clock, timezone=UTC)

        with pytest.raises(QuotaExceeded):
            await manager.check_quota("user", "alice", "requests", cost=6, reserve=True)

        quotas = await manager.get_quotas("user", "alice", "requests")
        assert all(q.reserved == 0 for q in quotas)

    @pytest.mark.asyncio
    async def test_concurrent_reservations_never_oversubscribe(self, manager: QuotaManager) -> None:
        results = await asyncio.gather(
            *(manager.check_quota("user", "alice", "requests", cost=1, reserve=True) for _ in range(15)),
            return_exceptions=True,
        )

        assert sum(r is True for r in results) == 10
        assert all(isinstance(r, QuotaExceeded) for r in results if r is not True)
        assert (await self._quota(manager, "user", "alice")).reserved == 10

    @pytest.mark.asyncio
    async def test_rollover_after_idle_periods(self, manager: QuotaManager, clock: ManualClock) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=10)
        with pytest.raises(QuotaExceeded):
            await manager.check_quota("user", "alice", "requests")

        clock.advance(3 * 86400 + 5)
        assert await manager.check_quota("user", "alice", "requests") is True

        quota = await self._quota(manager, "user", "alice")
        assert quota.used == 0
        assert quota.is_exceeded is False
        assert quota.period_end > clock.now()
        assert quota.period_start == ts(2025, 1, 18)

    @pytest.mark.asyncio
    async def test_rollover_at_period_end(self, manager: QuotaManager, clock: ManualClock) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=10)

        clock.set(ts(2025, 1, 16))
        assert await manager.check_quota("user", "alice", "requests", cost=10) is True

    @pytest.mark.asyncio
    async def test_limit_follows_configuration(self, store: InMemoryStore, manager: QuotaManager, clock: ManualClock) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=10)

        raised = StaticQuotaConfigProvider(
            {
                "user": limits(requests={QuotaPeriod.DAILY: 20}),
                "global": limits(requests={QuotaPeriod.DAILY: 100}),
            }
        )
        resized = QuotaManager(store, raised, clock=clock, timezone=UTC)
        assert await resized.check_quota("user", "alice", "requests", cost=10) is True

    @pytest.mark.asyncio
    async def test_missing_configuration_fails_closed(self, store: InMemoryStore, clock: ManualClock) -> None:
        provider = StaticQuotaConfigProvider({"user": limits(requests={QuotaPeriod.DAILY: 10})})
        manager = QuotaManager(store, provider, clock=clock, timezone=UTC)

        with pytest.raises(ConfigurationError):
            await manager.check_quota("user", "alice", "requests")

    @pytest.mark.asyncio
    async def test_untracked_type_is_admitted(self, manager: QuotaManager, store: InMemoryStore) -> None:
        assert await manager.check_quota("user", "alice", "cost", cost=1000) is True
        assert await store.keys("quota:*:cost:*") == []

    @pytest.mark.asyncio
    async def test_negative_cost(self, manager: QuotaManager) -> None:
        with pytest.raises(ValueError):
            await manager.check_quota("user", "alice", "requests", cost=-1)

    @pytest.mark.asyncio
    async def test_warning_sent_once_per_period(
        self,
        manager: QuotaManager,
        notifier: MagicMock,
        clock: ManualClock,
    ) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=8)

        await manager.check_quota("user", "alice", "requests")
        await manager.check_quota("user", "alice", "requests")

        notifier.notify_quota_warning.assert_called_once()
        quota, level = notifier.notify_quota_warning.call_args.args
        assert level == "warning"
        assert quota.scope_id == "alice"
        assert quota.warning_count == 1

        clock.advance(86400)
        await manager.consume_quota("user", "alice", "requests", actual_cost=8)
        await manager.check_quota("user", "alice", "requests")
        assert notifier.notify_quota_warning.call_count == 2

    @pytest.mark.asyncio
    async def test_alert_sent_on_every_check(self, manager: QuotaManager, notifier: MagicMock) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=9)

        await manager.check_quota("user", "alice", "requests")
        await manager.check_quota("user", "alice", "requests")

        levels = [c.args[1] for c in notifier.notify_quota_warning.call_args_list]
        assert levels.count("alert") == 2
        assert levels.count("warning") == 1

    @pytest.mark.asyncio
    async def test_notification_failure_is_isolated(self, manager: QuotaManager, notifier: MagicMock) -> None:
        notifier.notify_quota_warning.side_effect = RuntimeError("smtp down")
        await manager.consume_quota("user", "alice", "requests", actual_cost=9)

        assert await manager.check_quota("user", "alice", "requests") is True

    @pytest.mark.asyncio
    async def test_exceeded_notified_once(self, manager: QuotaManager, notifier: MagicMock) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=10)
        await manager.consume_quota("user", "alice", "requests", actual_cost=1)

        notifier.notify_quota_exceeded.assert_called_once()
        quota = await self._quota(manager, "user", "alice")
        assert quota.is_exceeded is True
        assert quota.used == 11

    @pytest.mark.asyncio
    async def test_get_quota_status(self, manager: QuotaManager) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=8)

        status = await manager.get_quota_status("user", "alice")
        user_requests = next(s for s in status if s["scope"] == "user" and s["type"] == "requests")

        assert user_requests["used"] == 8
        assert user_requests["available"] == 2
        assert user_requests["percent_used"] == 80.0
        assert user_requests["status"] == "warning"
        assert {s["type"] for s in status} == {"requests", "tokens"}

    @pytest.mark.asyncio
    async def test_reset_clears_leaked_reservation(self, manager: QuotaManager) -> None:
        await manager.check_quota("user", "alice", "requests", cost=10, reserve=True)
        with pytest.raises(QuotaExceeded):
            await manager.check_quota("user", "alice", "requests")

        assert await manager.reset_quota("user", "alice", "requests") == 1
        assert await manager.check_quota("user", "alice", "requests") is True

    @pytest.mark.asyncio
    async def test_reset_leaves_ancestors(self, manager: QuotaManager) -> None:
        await manager.consume_quota("user", "alice", "requests", actual_cost=5)
        await manager.reset_quota("user", "alice")

        assert (await self._quota(manager, "user", "alice")).used == 0
        assert (await self._quota(manager, "global", "global")).used == 5


class TestLoggingNotificationSink:
    """Tests for the default notification sink."""

    def test_logs_levels(self, caplog: pytest.LogCaptureFixture) -> None:
        quota = Quota(
            scope=QuotaScope.USER,
            scope_id="alice",
            quota_type=QuotaType.COST,
            period=QuotaPeriod.MONTHLY,
            limit=200.0,
            period_start=0,
            period_end=1,
            used=190.0,
        )
        sink = LoggingNotificationSink()

        with caplog.at_level("INFO", logger="gatekeeper.quota.notifications"):
            sink.notify_quota_warning(quota, "alert")
            sink.notify_quota_exceeded(quota)

        assert "Quota alert" in caplog.text
        assert "$190.00 of $200.00" in caplog.text
        assert "Quota exceeded" in caplog.text
