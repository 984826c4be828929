"""
Switchyard CLI — payment router administration.

Commands:
    switchyard serve           Run the HTTP router
    switchyard facilitator     Register, list, import and deactivate facilitators
    switchyard policy          Set or show a tenant's spend policy
    switchyard route           Publish a payable route
    switchyard events          Show recent routing events
    switchyard verify-chain    Check the event log hash chain
    switchyard replay-cleanup  Prune expired replay records
    switchyard poll-health     Probe facilitator endpoints once
    switchyard spend           Spend summary for a tenant
"""

from __future__ import annotations

import dataclasses
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click

from . import __version__
from .analytics import outcome_breakdown, spend_summary
from .config import RouterConfig
from .errors import SwitchyardError
from .events import EventStore
from .health import HealthPoller
from .models import AcceptedPayment
from .policy_store import PolicyStore
from .registry import FacilitatorRegistry
from .replay import ReplayGuard
from .routes import RouteStore
from .storage import database_path


# ── Wiring ────────────────────────────────────────────────────────


def _config(ctx: click.Context) -> RouterConfig:
    return ctx.obj["config"]


def _db(ctx: click.Context) -> Path:
    return database_path(_config(ctx).data_dir)


def _registry(ctx: click.Context) -> FacilitatorRegistry:
    config = _config(ctx)
    return FacilitatorRegistry(
        _db(ctx),
        latency_normalizer=config.latency_normalizer_ms,
        refresh_seconds=config.registry_refresh_seconds,
    )


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _parse_accept(value: str) -> AcceptedPayment:
    parts = value.split(",")
    if len(parts) != 4:
        raise click.BadParameter(f"expected scheme,network,asset,amount; got {value!r}")
    scheme, network, asset, amount = (p.strip() for p in parts)
    return AcceptedPayment(scheme=scheme, network=network, asset=asset, amount=amount)


# ── CLI ───────────────────────────────────────────────────────────


@click.group()
@click.version_option(version=__version__)
@click.option("--data-dir", type=click.Path(path_type=Path), default=None,
              help="Data directory (default: $SWITCHYARD_DATA_DIR or ~/.switchyard)")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[Path]):
    """Switchyard — payment-aware API router for x402 services."""
    try:
        config = RouterConfig.from_env()
    except ValueError as e:
        _fail(f"Invalid configuration: {e}")
    if data_dir is not None:
        config = dataclasses.replace(config, data_dir=data_dir)
    ctx.obj = {"config": config}


@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", type=int, default=8402, help="Bind port")
@click.option("--log-level", default="INFO", help="Python logging level")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, log_level: str):
    """Run the router HTTP API."""
    import uvicorn

    from .api import create_app

    logging.basicConfig(
        level=getattr(logging, log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = _config(ctx)
    click.echo(f"🚦 Switchyard {__version__} on http://{host}:{port} ({config.settlement_backend} settlement)")
    uvicorn.run(create_app(config), host=host, port=port)


# ── Facilitators ──────────────────────────────────────────────────


@main.group("facilitator")
def facilitator_group():
    """Manage facilitators."""
    pass


@facilitator_group.command("add")
@click.option("--name", required=True)
@click.option("--endpoint", required=True, help="Facilitator base URL")
@click.option("--network", "networks", multiple=True, required=True, help="CAIP-2 network (repeatable)")
@click.option("--scheme", "schemes", multiple=True, help="Supported scheme (repeatable, default any)")
@click.option("--asset", "assets", multiple=True, help="Supported asset (repeatable, default any)")
@click.option("--tenant", default=None, help="Owning tenant; omit to register a Global facilitator")
@click.pass_context
def facilitator_add(ctx, name, endpoint, networks, schemes, assets, tenant):
    try:
        fac = _registry(ctx).register(
            name=name,
            endpoint=endpoint,
            networks=networks,
            schemes=schemes,
            assets=assets,
            tenant_id=tenant,
        )
    except SwitchyardError as e:
        _fail(f"Failed to register facilitator: {e.message}")
    click.echo(f"✅ Facilitator registered: {fac.facilitator_id}")
    click.echo(f"   Type:     {fac.type}")
    click.echo(f"   Endpoint: {fac.endpoint}")
    click.echo(f"   Networks: {', '.join(sorted(fac.networks))}")


@facilitator_group.command("list")
@click.option("--tenant", default=None, help="Show facilitators visible to this tenant")
@click.option("--all", "include_inactive", is_flag=True, help="Include inactive facilitators")
@click.pass_context
def facilitator_list(ctx, tenant, include_inactive):
    facilitators = _registry(ctx).list_visible(tenant, include_inactive=include_inactive)
    if not facilitators:
        click.echo("No facilitators found")
        return
    for fac in facilitators:
        health = fac.health
        rate = "-" if health.success_rate is None else f"{health.success_rate:.2%}"
        p95 = "-" if health.p95_latency_ms is None else f"{health.p95_latency_ms:.0f}ms"
        click.echo(f"{fac.facilitator_id}  {fac.type:<7} {fac.status:<8} {fac.name}")
        click.echo(f"   health={health.status} success={rate} p95={p95}")


@facilitator_group.command("import")
@click.argument("facilitator_id")
@click.option("--tenant", required=True)
@click.pass_context
def facilitator_import(ctx, facilitator_id, tenant):
    """Copy a Global facilitator into a tenant's private set."""
    try:
        fac = _registry(ctx).import_global(facilitator_id, tenant)
    except SwitchyardError as e:
        _fail(f"Import failed: {e.message}")
    click.echo(f"✅ Imported as {fac.facilitator_id} for tenant {tenant}")


@facilitator_group.command("deactivate")
@click.argument("facilitator_id")
@click.option("--tenant", default=None, help="Owning tenant (required for private facilitators)")
@click.pass_context
def facilitator_deactivate(ctx, facilitator_id, tenant):
    try:
        _registry(ctx).deactivate(facilitator_id, tenant)
    except SwitchyardError as e:
        _fail(e.message)
    click.echo(f"✓ Facilitator deactivated: {facilitator_id}")


# ── Policies ──────────────────────────────────────────────────────


@main.group("policy")
def policy_group():
    """Manage tenant spend policies."""
    pass


@policy_group.command("set")
@click.argument("policy_id")
@click.option("--tenant", required=True)
@click.option("--name", default=None)
@click.option("--rules-file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              required=True, help="JSON file with denyIf/routeScopes/budgets/rpmLimits")
@click.pass_context
def policy_set(ctx, policy_id, tenant, name, rules_file):
    """Create or update a policy and make it the tenant's active one."""
    try:
        rules = json.loads(rules_file.read_text())
    except json.JSONDecodeError as e:
        _fail(f"Rules file is not valid JSON: {e}")
    try:
        policy = PolicyStore(_db(ctx)).upsert_policy(policy_id, tenant, name or policy_id, rules)
    except SwitchyardError as e:
        _fail(f"Policy rejected: {e.message}")
    click.echo(f"✅ Policy {policy.policy_id} v{policy.version} active for {tenant}")


@policy_group.command("show")
@click.option("--tenant", required=True)
@click.pass_context
def policy_show(ctx, tenant):
    policy = PolicyStore(_db(ctx)).get_active_policy(tenant)
    if policy is None:
        click.echo(f"No active policy for {tenant}")
        return
    click.echo(json.dumps(policy.to_dict(), indent=2))


# ── Routes ────────────────────────────────────────────────────────


@main.group("route")
def route_group():
    """Manage payable routes."""
    pass


@route_group.command("publish")
@click.argument("route_id")
@click.option("--tenant", required=True)
@click.option("--path", required=True)
@click.option("--method", default="POST")
@click.option("--accept", "accepts", multiple=True, required=True,
              help="scheme,network,asset,amount (repeatable)")
@click.pass_context
def route_publish(ctx, route_id, tenant, path, method, accepts):
    options = [_parse_accept(a) for a in accepts]
    try:
        route = RouteStore(_db(ctx)).publish(tenant, route_id, path, options, method=method)
    except SwitchyardError as e:
        _fail(f"Failed to publish route: {e.message}")
    click.echo(f"✅ Route published: {route.method} {route.path} ({route.route_id})")
    for option in route.accepts:
        click.echo(f"   {option.scheme} {option.amount} {option.asset} on {option.network}")


# ── Events & analytics ────────────────────────────────────────────


@main.command()
@click.option("--tenant", required=True)
@click.option("--route", "route_id", default=None)
@click.option("--limit", type=click.IntRange(1, 100), default=20)
@click.pass_context
def events(ctx, tenant, route_id, limit):
    """Show recent routing events, newest first."""
    rows = EventStore(_db(ctx)).list_events(tenant, route_id=route_id, limit=limit)
    if not rows:
        click.echo("No events found")
        return
    for event in rows:
        ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(event.created_at))
        status = "✅" if event.outcome in {"plan", "paid", "settled"} else "❌"
        deny = f" [{event.deny_code}]" if event.deny_code else ""
        click.echo(
            f"{ts} {status} {event.outcome:<8} {event.route_id} "
            f"{event.amount or '-'} {event.asset or ''} via {event.facilitator_id or '-'}{deny}"
        )


@main.command("verify-chain")
@click.pass_context
def verify_chain(ctx):
    """Check the event log's HMAC hash chain."""
    try:
        count = EventStore(_db(ctx)).verify_chain()
    except RuntimeError as e:
        _fail(str(e))
    click.echo(f"✅ Event chain intact ({count} events)")


@main.command("replay-cleanup")
@click.option("--days", type=click.IntRange(min=0), default=None,
              help="Retention window in days (default from config)")
@click.pass_context
def replay_cleanup(ctx, days):
    config = _config(ctx)
    guard = ReplayGuard(_db(ctx), retention_days=config.replay_retention_days)
    deleted = guard.cleanup(days)
    click.echo(f"🧹 Removed {deleted} replay records")


@main.command("poll-health")
@click.pass_context
def poll_health(ctx):
    """Probe every active facilitator once and record health."""
    config = _config(ctx)
    poller = HealthPoller(_registry(ctx), timeout_seconds=min(config.facilitator_timeout_seconds, 5.0))
    results = poller.poll_once()
    if not results:
        click.echo("No active facilitators")
        return
    for row in results:
        icon = {"healthy": "🟢", "degraded": "🟡", "down": "🔴"}.get(row["status"], "⚪")
        click.echo(f"{icon} {row['facilitator_id']} {row['status']}")


@main.command()
@click.option("--tenant", required=True)
@click.option("--days", type=click.IntRange(min=1), default=30)
@click.pass_context
def spend(ctx, tenant, days):
    """Spend and outcome summary for a tenant."""
    store = EventStore(_db(ctx))
    summary = spend_summary(store, tenant, days=days)
    outcomes = outcome_breakdown(store, tenant, days=days)
    click.echo(f"💰 Spend for {tenant} (last {days} days)")
    click.echo(f"   Total: ${summary['summary']['total']:.6f}")
    click.echo(f"   Today: ${summary['summary']['today']:.6f}")
    for row in summary["by_facilitator"]:
        click.echo(f"   {row['facilitator_id']}: ${row['amount']:.6f} ({row['count']} payments)")
    click.echo(f"   Outcomes: {json.dumps(outcomes['by_outcome'])}")
    if outcomes["by_deny_code"]:
        click.echo(f"   Denials:  {json.dumps(outcomes['by_deny_code'])}")


if __name__ == "__main__":
    main()
