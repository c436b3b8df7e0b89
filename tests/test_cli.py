"""Tests for the gatekeeper CLI."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from conftest import limits
from gatekeeper.cli import cli
from gatekeeper.exceptions import ConfigurationError
from gatekeeper.quota.config import StaticQuotaConfigProvider
from gatekeeper.quota.hierarchy import ScopeHierarchy
from gatekeeper.quota.models import QuotaPeriod
from gatekeeper.ratelimit.models import LimitRule, RateLimitConfig
from gatekeeper.ratelimit.service import RateLimiter
from gatekeeper.store.memory import InMemoryStore


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def cli_env():
    """Point the CLI at in-memory stores and static configuration."""
    provider = StaticQuotaConfigProvider(
        {
            "user": limits(requests={QuotaPeriod.DAILY: 10}, tokens={QuotaPeriod.MONTHLY: 5000}),
            "global": limits(requests={QuotaPeriod.DAILY: 100}),
        }
    )
    rate_config = RateLimitConfig(limits={"user": LimitRule(limit=5, window_seconds=60)}, default=LimitRule(limit=0))

    with patch("gatekeeper.cli.create_store", side_effect=lambda: InMemoryStore()), patch(
        "gatekeeper.cli.load_quota_config", return_value=(provider, ScopeHierarchy())
    ), patch("gatekeeper.cli.RateLimiter", side_effect=lambda store: RateLimiter(store, config=rate_config)):
        yield


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_table(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["status", "user", "alice"])

        assert result.exit_code == 0
        assert "Quotas for user:alice" in result.output
        assert "requests" in result.output

    def test_status_json(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["status", "user", "alice", "--json"])

        assert result.exit_code == 0
        rows = json.loads(result.output)
        assert {(r["scope"], r["type"], r["period"]) for r in rows} == {
            ("user", "requests", "daily"),
            ("user", "tokens", "monthly"),
            ("global", "requests", "daily"),
        }
        assert all(r["used"] == 0 for r in rows)

    def test_status_invalid_scope(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["status", "planet", "earth"])

        assert result.exit_code == 1
        assert "Error" in result.output

    def test_status_missing_config(self, runner: CliRunner) -> None:
        with patch("gatekeeper.cli.create_store", side_effect=lambda: InMemoryStore()), patch(
            "gatekeeper.cli.load_quota_config", side_effect=ConfigurationError("Quota config not found: x.json")
        ):
            result = runner.invoke(cli, ["status", "user", "alice"])

        assert result.exit_code == 1
        assert "Quota config not found" in result.output


class TestUsageCommand:
    """Tests for the usage command."""

    def test_usage_json(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["usage", "user", "alice", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["key"] == "user:alice"
        assert data["limit"] == 5
        assert data["current_usage"] == 0

    def test_usage_unlimited(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["usage", "feature", "search"])

        assert result.exit_code == 0
        assert "unlimited" in result.output


class TestResetCommand:
    """Tests for the reset command."""

    def test_reset_with_yes(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["reset", "user", "alice", "--yes"])

        assert result.exit_code == 0
        assert "Reset 2 quotas for user:alice" in result.output

    def test_reset_single_type(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["reset", "user", "alice", "--type", "tokens", "--yes"])

        assert result.exit_code == 0
        assert "Reset 1 quotas" in result.output

    def test_reset_aborted(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["reset", "user", "alice"], input="n\n")

        assert result.exit_code == 1
        assert "Reset 2 quotas" not in result.output


class TestHealthCommand:
    """Tests for the health command."""

    def test_health(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["health"])

        assert result.exit_code == 0
        assert "State store is healthy" in result.output

    def test_health_json(self, runner: CliRunner, cli_env) -> None:
        result = runner.invoke(cli, ["health", "--json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["connected"] is True
