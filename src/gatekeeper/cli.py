"""
Gatekeeper CLI Tool
Command-line interface for inspecting and administering limits and quotas.
"""

import asyncio
import json
import logging
import sys
from typing import Any, Awaitable, Callable, Optional

import click
from rich.console import Console
from rich.table import Table

from gatekeeper.config import settings
from gatekeeper.exceptions import GatekeeperError
from gatekeeper.quota.config import load_quota_config
from gatekeeper.quota.manager import QuotaManager
from gatekeeper.ratelimit.service import RateLimiter
from gatekeeper.store.base import StateStore
from gatekeeper.store.factory import create_store

console = Console()


def run_with_store(fn: Callable[[StateStore], Awaitable[Any]]) -> Any:
    """Run a coroutine against a freshly created store, closing it afterwards."""

    async def _run() -> Any:
        store = create_store()
        try:
            return await fn(store)
        finally:
            await store.close()

    return asyncio.run(_run())


def fail(message: str) -> None:
    console.print(f"❌ [red]{message}[/red]")
    sys.exit(1)


@click.group()
@click.option("--log-level", default=None, help="Logging level (defaults to GATEKEEPER_LOG_LEVEL)")
@click.pass_context
def cli(ctx, log_level: Optional[str]):
    """Gatekeeper CLI - Rate limits and quotas for LLM provider calls."""
    logging.basicConfig(
        level=getattr(logging, (log_level or settings.log_level).upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    ctx.ensure_object(dict)


@cli.command()
@click.argument("scope")
@click.argument("scope_id")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def status(scope: str, scope_id: str, as_json: bool):
    """Show quota usage for SCOPE SCOPE_ID and every scope above it."""

    async def _status(store: StateStore) -> list[dict[str, Any]]:
        provider, hierarchy = load_quota_config()
        manager = QuotaManager(store, provider, hierarchy=hierarchy)
        return await manager.get_quota_status(scope, scope_id)

    try:
        rows = run_with_store(_status)
    except (GatekeeperError, ValueError) as e:
        fail(f"Error: {e}")
        return

    if as_json:
        console.print(json.dumps(rows, indent=2))
        return

    if not rows:
        console.print(f"[dim]No quotas tracked for {scope}:{scope_id}[/dim]")
        return

    table = Table(title=f"Quotas for {scope}:{scope_id}")
    table.add_column("Scope", style="cyan")
    table.add_column("Type")
    table.add_column("Period")
    table.add_column("Used", justify="right")
    table.add_column("Reserved", justify="right")
    table.add_column("Limit", justify="right")
    table.add_column("Status")
    table.add_column("Resets")

    colors = {"normal": "green", "warning": "yellow", "critical": "red", "exceeded": "bold red"}
    for row in rows:
        color = colors[row["status"]]
        table.add_row(
            f"{row['scope']}:{row['scope_id']}",
            row["type"],
            row["period"],
            f"{row['used']:,.2f}",
            f"{row['reserved']:,.2f}",
            f"{row['limit']:,.2f}",
            f"[{color}]{row['status']} ({row['percent_used']:.0f}%)[/{color}]",
            row["reset_time"],
        )

    console.print(table)


@cli.command()
@click.argument("scope")
@click.argument("identifier")
@click.option("--provider", "-p", default=None, help="Provider suffix of the limiter key")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def usage(scope: str, identifier: str, provider: Optional[str], as_json: bool):
    """Show rate limiter usage for SCOPE IDENTIFIER."""

    async def _usage(store: StateStore) -> dict[str, Any]:
        limiter = RateLimiter(store)
        result = await limiter.get_current_usage(scope, identifier, provider)
        return result.to_dict()

    try:
        data = run_with_store(_usage)
    except (GatekeeperError, ValueError) as e:
        fail(f"Error: {e}")
        return

    if as_json:
        console.print(json.dumps(data, indent=2))
        return

    if data["limit"] == 0:
        console.print(f"✅ [green]{data['key']} is unlimited[/green]")
        return

    console.print(f"[cyan]{data['key']}[/cyan]")
    console.print(f"   Used:      {data['current_usage']:,.2f} / {data['limit']:,.0f}")
    console.print(f"   Remaining: {data['remaining']:,.2f}")
    console.print(f"   Resets:    {data['reset_at']}")


@cli.command()
@click.argument("scope")
@click.argument("scope_id")
@click.option("--type", "quota_type", default=None, help="Only reset this quota type")
@click.option("--yes", is_flag=True, help="Skip confirmation")
def reset(scope: str, scope_id: str, quota_type: Optional[str], yes: bool):
    """Clear usage and reservations for SCOPE SCOPE_ID."""
    if not yes:
        click.confirm(f"Reset quotas for {scope}:{scope_id}?", abort=True)

    async def _reset(store: StateStore) -> int:
        provider, hierarchy = load_quota_config()
        manager = QuotaManager(store, provider, hierarchy=hierarchy)
        return await manager.reset_quota(scope, scope_id, quota_type)

    try:
        count = run_with_store(_reset)
    except (GatekeeperError, ValueError) as e:
        fail(f"Error: {e}")
        return

    console.print(f"✅ [green]Reset {count} quotas for {scope}:{scope_id}[/green]")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def health(as_json: bool):
    """Check state store health."""
    try:
        status = run_with_store(lambda store: store.health_check())
    except GatekeeperError as e:
        fail(f"Health check failed: {e}")
        return

    if as_json:
        console.print(json.dumps(status, indent=2))
        return

    if status.get("connected"):
        console.print("✅ [green]State store is healthy[/green]")
    else:
        console.print("⚠️ [yellow]State store is not connected[/yellow]")
    console.print(f"   Backend: {status.get('backend', 'unknown')}")
    for tier in ("cache", "durable"):
        if tier in status:
            tier_status = status[tier]
            state = "connected" if tier_status.get("connected") else "disconnected"
            console.print(f"   {tier.title()}: {tier_status.get('backend')} ({state})")

    if not status.get("connected"):
        sys.exit(1)


if __name__ == "__main__":
    cli()
