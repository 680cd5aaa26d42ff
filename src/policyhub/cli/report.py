"""CLI command: policyhub report: policy coverage over a time window."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone

import click
from rich.console import Console
from rich.table import Table

from policyhub.cli._shared import window, with_store
from policyhub.simulation.export import to_json

console = Console(stderr=True)


@click.command()
@click.option("--cluster", required=True, help="Cluster id.")
@click.option(
    "--hours", type=click.IntRange(1, 720), default=None, help="Report window."
)
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
def report(ctx: click.Context, cluster: str, hours: int | None, as_json: bool) -> None:
    """Summarize allowed, blocked and ungoverned traffic for a cluster."""
    start, end = window(hours or ctx.obj["config"].default_hours)
    result = asyncio.run(
        with_store(
            ctx.obj["db_path"],
            lambda store: store.validation_report(cluster, start, end),
        )
    )

    if as_json:
        click.echo(to_json(result.to_dict()))
        return

    totals = result.totals
    console.print(f"[bold]Policy Hub[/bold] report for [cyan]{cluster}[/cyan]")
    console.print(
        f"  {result.total_flows:,} flows: {totals.allowed:,} allowed, "
        f"{totals.blocked:,} blocked, {totals.no_policy:,} without a policy"
    )
    color = "green" if result.coverage_percentage >= 90 else "yellow"
    console.print(f"  Coverage: [{color}]{result.coverage_percentage:.1f}%[/{color}]")
    console.print(f"  Trend: {result.trend:+.1f}%\n")

    if not result.hourly_breakdown:
        return

    table = Table(title="Hourly breakdown")
    table.add_column("Hour (UTC)", style="cyan")
    table.add_column("Allowed", justify="right")
    table.add_column("Blocked", justify="right")
    table.add_column("No policy", justify="right")
    for summary in result.hourly_breakdown:
        hour = datetime.fromtimestamp(summary.hour, tz=timezone.utc)
        table.add_row(
            hour.strftime("%Y-%m-%d %H:%M"),
            f"{summary.allowed_count:,}",
            f"{summary.blocked_count:,}",
            f"{summary.no_policy_count:,}",
        )
    console.print(table)
