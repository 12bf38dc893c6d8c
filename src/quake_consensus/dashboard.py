"""Live terminal dashboard for the verification engine."""

from __future__ import annotations

import asyncio
from typing import Optional

from rich.console import Console
from rich.layout import Layout
from rich.live import Live
from rich.panel import Panel
from rich.table import Table

from quake_consensus.engine import VerificationEngine
from quake_consensus.models import ConsensusEvent, SystemStatus, VerificationResult

console = Console()


def _mag_color(mag: Optional[float]) -> str:
    if mag is None:
        return "white"
    if mag >= 5.0:
        return "red"
    if mag >= 3.0:
        return "yellow"
    return "green"


def _confidence_color(confidence: float, threshold: float) -> str:
    if confidence >= threshold:
        return "green"
    if confidence >= threshold / 2:
        return "yellow"
    return "red"


def build_consensus_table(
    events: list[ConsensusEvent], limit: int = 25, threshold: float = 0.7,
) -> Table:
    table = Table(title="Consensus events", expand=True)
    table.add_column("Mag", style="bold", width=6, justify="center")
    table.add_column("Region")
    table.add_column("Depth (km)", justify="right", width=12)
    table.add_column("Time (UTC)", width=18)
    table.add_column("Coords", width=22)
    table.add_column("Sources", justify="right", width=8)
    table.add_column("Confidence", justify="right", width=11)

    for e in events[:limit]:
        mag = f"[{_mag_color(e.magnitude)}]{e.magnitude:.1f}[/]" if e.magnitude is not None else "-"
        depth = f"{e.depth_km:.1f}" if e.depth_km is not None else "-"
        conf_color = _confidence_color(e.confidence, threshold)
        table.add_row(
            mag,
            e.place,
            depth,
            f"{e.origin_time_utc:%Y-%m-%d %H:%M}",
            f"{e.latitude:.2f}, {e.longitude:.2f}",
            str(e.source_count),
            f"[{conf_color}]{e.confidence:.2f}[/]",
        )

    return table


def build_status_panel(status: SystemStatus, result: Optional[VerificationResult]) -> Panel:
    lines = [
        f"State: [bold]{status.state}[/]  Status: [bold]{status.status}[/]",
        f"Active sources: [bold]{status.active_source_count}[/]  "
        f"Cycles: {status.verification_cycle_count}  Cache entries: {status.cache_size}",
        f"Overall reliability: [bold]{status.overall_reliability:.2f}[/]",
    ]
    if result is not None:
        lines.append(
            f"Last agreement: [bold]{result.agreement * 100:.1f}%[/]  "
            f"Discrepancies: [red]{len(result.discrepancies)}[/]"
        )
    return Panel("\n".join(lines), title="Verification", border_style="blue")


async def run_dashboard(engine: VerificationEngine, limit: int = 25, refresh: float = 5.0) -> None:
    """Start the engine and render its state until cancelled."""
    layout = Layout()
    layout.split_column(
        Layout(name="stats", size=6),
        Layout(name="table"),
    )
    threshold = engine.settings.min_confidence_threshold

    await engine.start_verification()
    try:
        with Live(layout, console=console, refresh_per_second=1, screen=True):
            while True:
                result = engine.history[-1] if engine.history else None
                layout["stats"].update(build_status_panel(engine.get_system_status(), result))
                events = result.consensus.events if result and result.consensus else []
                layout["table"].update(build_consensus_table(events, limit, threshold))
                await asyncio.sleep(refresh)
    finally:
        await engine.stop_verification()
