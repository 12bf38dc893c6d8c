"""CLI entrypoint for quake-consensus."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.table import Table

from quake_consensus.config import Settings
from quake_consensus.dashboard import build_consensus_table
from quake_consensus.engine import VerificationEngine
from quake_consensus.models import Event
from quake_consensus.parsers import ValidationError

console = Console()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


@click.group()
@click.option("--proxy", default=None, help="Proxy base URL (overrides QUAKE_PROXY_BASE_URL).")
@click.pass_context
def cli(ctx: click.Context, proxy: str | None):
    """Quake Consensus — multi-source earthquake verification."""
    settings = Settings.from_env()
    if proxy:
        settings.proxy_base_url = proxy
    _configure_logging(settings.log_level)
    ctx.obj = settings


@cli.command()
@click.pass_obj
def sources(settings: Settings):
    """Probe every configured source and show its status."""

    async def _probe():
        async with VerificationEngine(settings) as engine:
            await engine.initialize()
            return engine.registry.sources(), engine.registry.health_snapshot()

    configs, health = asyncio.run(_probe())

    table = Table(title="Data sources")
    table.add_column("ID", style="bold")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Region")
    table.add_column("Base reliability", justify="right")
    table.add_column("Status")

    for s in configs:
        status = health[s.id].status
        color = "green" if status == "active" else "red"
        table.add_row(s.id, s.name, s.category, s.region, f"{s.reliability:.2f}", f"[{color}]{status}[/]")

    console.print(table)


@cli.command()
@click.option("--limit", default=25, help="Max consensus events to display.")
@click.pass_obj
def verify(settings: Settings, limit: int):
    """Run one verification cycle and print the consensus."""

    async def _verify():
        async with VerificationEngine(settings) as engine:
            await engine.initialize()
            return await engine.perform_verification_cycle()

    result = asyncio.run(_verify())

    if result.source_count == 0:
        click.echo("No data sources available, verification skipped.")
        return

    click.echo(
        f"Sources: {result.source_count}  Agreement: {result.agreement * 100:.1f}%  "
        f"Overall reliability: {result.overall_reliability:.2f}"
    )
    for d in result.discrepancies:
        click.echo(f"  Discrepancy {d.source_a} ↔ {d.source_b}: {d.cause} (agreement {d.agreement:.2f})")
    for rec in result.recommendations:
        click.echo(f"  Recommendation: {rec}")

    events = result.consensus.events if result.consensus else []
    console.print(build_consensus_table(events, limit, settings.min_confidence_threshold))


@cli.command()
@click.option("--interval", default=None, type=float, help="Verification interval in seconds.")
@click.option("--limit", default=25, help="Max consensus events to display.")
@click.option("--refresh", default=5.0, help="Dashboard refresh interval in seconds.")
@click.pass_obj
def run(settings: Settings, interval: float | None, limit: int, refresh: float):
    """Run periodic verification with a live dashboard (Ctrl+C to stop)."""
    from quake_consensus.dashboard import run_dashboard

    if interval is not None:
        settings.verification_interval_seconds = interval
    engine = VerificationEngine(settings)
    try:
        asyncio.run(run_dashboard(engine, limit=limit, refresh=refresh))
    except KeyboardInterrupt:
        click.echo(f"\nStopped after {engine.get_system_status().verification_cycle_count} cycle(s)")


@cli.command("check-event")
@click.option("--lat", required=True, type=float, help="Latitude (decimal degrees).")
@click.option("--lon", required=True, type=float, help="Longitude (decimal degrees).")
@click.option("--time", "time_", default=None, help="Origin time, ISO 8601 (default: now, UTC).")
@click.option("--mag", default=None, type=float, help="Magnitude.")
@click.option("--depth", default=None, type=float, help="Depth in km.")
@click.option("--source", default="manual", help="Source id to report the event as.")
@click.pass_obj
def check_event(settings: Settings, lat: float, lon: float, time_: str | None,
                mag: float | None, depth: float | None, source: str):
    """Verify a single event through the real-time path."""
    if time_:
        origin = datetime.fromisoformat(time_.replace("Z", "+00:00"))
        if origin.tzinfo is None:
            origin = origin.replace(tzinfo=timezone.utc)
    else:
        origin = datetime.now(timezone.utc)

    event = Event(
        event_id=f"{source}:{int(origin.timestamp())}",
        source_id=source,
        origin_time_utc=origin,
        latitude=lat,
        longitude=lon,
        depth_km=depth,
        magnitude=mag,
        category="live",
    )

    async def _check():
        async with VerificationEngine(settings) as engine:
            await engine.initialize()
            return await engine.verify_realtime(event)

    try:
        verification = asyncio.run(_check())
    except ValidationError as exc:
        raise click.BadParameter("; ".join(exc.errors)) from exc

    if verification is None:
        click.echo("Real-time verification failed, see log for details.")
        return

    verdict = "DISCREPANCY" if verification.has_discrepancy else "confirmed"
    click.echo(f"Agreement: {verification.agreement * 100:.1f}% ({verdict})")
    for pair in verification.pairs:
        line = f"  {pair.source_b}: agreement {pair.agreement:.2f}, {pair.match_count} match(es)"
        if pair.agreement < settings.required_agreement:
            line += f", {pair.cause}"
        click.echo(line)
