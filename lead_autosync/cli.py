"""Command-line interface for lead-autosync.

Usage:
    lead-autosync sweep                    # run one scheduled pass
    lead-autosync sync <tenant> --period 7 # manual sync with a longer lookback
    lead-autosync tenants list
    lead-autosync tenants add <tenant> --email user@example.com --refresh-credential TOKEN --auto-sync
    lead-autosync tenants enable <tenant>
    lead-autosync serve --port 8000

The external scheduler is expected to run ``lead-autosync sweep`` (or call
``POST /commands/sweep``) every five minutes.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import sys
from typing import Any, Optional

import click
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .core import SyncOrchestrator
from .errors import ConfigurationError
from .fetcher import MANUAL_LOOKBACK_DAYS
from .models import SweepSummary

console = Console()
err_console = Console(stderr=True)

CONFIG_ERROR_EXIT = 2


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def _orchestrator(ctx: click.Context, validate: bool = False) -> SyncOrchestrator:
    settings: Settings = ctx.obj
    if validate:
        try:
            settings.validate()
        except ConfigurationError as exc:
            print_error(str(exc))
            sys.exit(CONFIG_ERROR_EXIT)
    return SyncOrchestrator.from_settings(settings)


def _print_summary(summary: SweepSummary) -> None:
    if summary.outcomes:
        table = Table(title="Sweep")
        table.add_column("Tenant", style="cyan")
        table.add_column("Result", justify="center")
        table.add_column("New leads", justify="right")
        table.add_column("Replies", justify="right")
        table.add_column("Error")
        for outcome in summary.outcomes:
            result = "[green]✓[/green]" if outcome.success else "[red]✗[/red]"
            replies = f"{outcome.replies.sent}/{len(outcome.replies.results)}" if outcome.replies else "-"
            table.add_row(outcome.tenant_id, result, str(outcome.new_lead_count), replies, outcome.error or "")
        console.print(table)
    console.print(f"{summary.message} [dim]({summary.execution_time_ms} ms)[/dim]")


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.ini.")
@click.option("--db-path", help="Override the tenant store path.")
@click.pass_context
def main(ctx: click.Context, config_path: Optional[str], db_path: Optional[str]) -> None:
    """Scheduled mailbox sync and auto-reply for lead tenants."""
    settings = load_settings(config_path)
    if db_path:
        settings = dataclasses.replace(settings, db_path=db_path)
    ctx.obj = settings


@main.command("sweep")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def sweep(ctx: click.Context, as_json: bool) -> None:
    """Run one sweep over every tenant due for a sync."""
    orchestrator = _orchestrator(ctx, validate=True)

    async def _sweep():
        await orchestrator.init()
        return await orchestrator.sweep()

    summary = run_async(_sweep())
    if as_json:
        print_json(summary.as_dict())
    else:
        _print_summary(summary)


@main.command("sync")
@click.argument("tenant_id")
@click.option(
    "--period",
    type=click.Choice([str(days) for days in MANUAL_LOOKBACK_DAYS]),
    default="1",
    show_default=True,
    help="Lookback in days.",
)
@click.pass_context
def sync(ctx: click.Context, tenant_id: str, period: str) -> None:
    """Sync a single tenant now."""
    orchestrator = _orchestrator(ctx, validate=True)

    async def _sync():
        await orchestrator.init()
        return await orchestrator.manual_sync(tenant_id, int(period))

    try:
        outcome = run_async(_sync())
    except LookupError as exc:
        print_error(str(exc))
        sys.exit(1)
    if not outcome.success:
        print_error(outcome.error or "sync failed")
        sys.exit(1)
    print_success(f"{tenant_id}: {outcome.new_lead_count} new leads")


@main.group("tenants", invoke_without_command=True)
@click.pass_context
def tenants(ctx: click.Context) -> None:
    """Manage tenant sync profiles."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@tenants.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tenants_list(ctx: click.Context, as_json: bool) -> None:
    """List all tenants."""
    orchestrator = _orchestrator(ctx)

    async def _list():
        await orchestrator.init()
        return await orchestrator.handle_command("listTenants")

    tenant_list = run_async(_list())["tenants"]
    if as_json:
        print_json(tenant_list)
        return
    if not tenant_list:
        console.print("[dim]No tenants found.[/dim]")
        return

    table = Table(title="Tenants")
    table.add_column("ID", style="cyan")
    table.add_column("Email")
    table.add_column("Auto-sync", justify="center")
    table.add_column("Last sync")
    for t in tenant_list:
        enabled = "[green]✓[/green]" if t["auto_sync_enabled"] else "[red]✗[/red]"
        table.add_row(t["id"], t.get("email") or "-", enabled, t.get("last_auto_sync") or "never")
    console.print(table)


@tenants.command("add")
@click.argument("tenant_id")
@click.option("--email", help="Mailbox address, used in logs.")
@click.option("--refresh-credential", help="OAuth refresh token obtained at sign-in.")
@click.option("--auto-sync", is_flag=True, help="Enable the scheduled sweep for this tenant.")
@click.pass_context
def tenants_add(
    ctx: click.Context,
    tenant_id: str,
    email: Optional[str],
    refresh_credential: Optional[str],
    auto_sync: bool,
) -> None:
    """Register or re-authenticate a tenant."""
    orchestrator = _orchestrator(ctx)
    payload = {
        "id": tenant_id,
        "email": email,
        "refresh_credential": refresh_credential,
        "auto_sync_enabled": auto_sync,
    }

    async def _add():
        await orchestrator.init()
        return await orchestrator.handle_command("addTenant", payload)

    result = run_async(_add())
    if not result["ok"]:
        print_error(result["error"])
        sys.exit(1)
    print_success(f"Tenant '{tenant_id}' saved.")


def _toggle(ctx: click.Context, tenant_id: str, enabled: bool) -> None:
    orchestrator = _orchestrator(ctx)

    async def _set():
        await orchestrator.init()
        return await orchestrator.handle_command("setAutoSync", {"id": tenant_id, "enabled": enabled})

    result = run_async(_set())
    if not result["ok"]:
        print_error(result["error"])
        sys.exit(1)
    print_success(f"Auto-sync {'enabled' if enabled else 'disabled'} for '{tenant_id}'.")


@tenants.command("enable")
@click.argument("tenant_id")
@click.pass_context
def tenants_enable(ctx: click.Context, tenant_id: str) -> None:
    """Enable the scheduled sweep for a tenant."""
    _toggle(ctx, tenant_id, True)


@tenants.command("disable")
@click.argument("tenant_id")
@click.pass_context
def tenants_disable(ctx: click.Context, tenant_id: str) -> None:
    """Disable the scheduled sweep for a tenant."""
    _toggle(ctx, tenant_id, False)


@main.command("serve")
@click.option("--host", help="Bind address (default from settings).")
@click.option("--port", type=int, help="Bind port (default from settings).")
@click.pass_context
def serve(ctx: click.Context, host: Optional[str], port: Optional[int]) -> None:
    """Serve the HTTP API with uvicorn."""
    import uvicorn

    from .api import build_app

    settings: Settings = ctx.obj
    try:
        settings.validate()
    except ConfigurationError as exc:
        print_error(str(exc))
        sys.exit(CONFIG_ERROR_EXIT)
    uvicorn.run(build_app(settings), host=host or settings.http_host, port=port or settings.http_port)


if __name__ == "__main__":
    main()
