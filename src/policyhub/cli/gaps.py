"""CLI command: policyhub gaps: traffic no policy governed."""

from __future__ import annotations

import asyncio

import click
from rich.console import Console
from rich.table import Table

from policyhub.cli._shared import SEVERITY_COLORS, window, with_store
from policyhub.policy.generator import GapPolicyGenerator
from policyhub.recommend.gaps import cluster_coverage_gaps
from policyhub.recommend.models import gap_severity
from policyhub.simulation.export import to_json
from policyhub.storage.service import HubStore

console = Console(stderr=True)


@click.command()
@click.option("--cluster", required=True, help="Cluster id.")
@click.option(
    "--hours", type=click.IntRange(1, 168), default=None, help="Look-back window."
)
@click.option(
    "--limit", type=click.IntRange(1, 1000), default=20, help="Max gaps to list."
)
@click.option(
    "--generate",
    is_flag=True,
    help="Print draft CiliumNetworkPolicies that would close the listed gaps.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def gaps(
    ctx: click.Context,
    cluster: str,
    hours: int | None,
    limit: int,
    generate: bool,
    as_json: bool,
) -> None:
    """List the busiest coverage gaps in a cluster."""
    hours = hours or ctx.obj["config"].default_hours
    start, end = window(hours)

    async def _load(store: HubStore):
        return await store.summaries.list_since([cluster], start, end)

    summaries = asyncio.run(with_store(ctx.obj["db_path"], _load))
    report = cluster_coverage_gaps((s.coverage_gaps for s in summaries), limit=limit)

    if generate:
        generator = GapPolicyGenerator()
        for gap in report.gaps:
            generator.observe(gap)
        if generator.namespace_count == 0:
            console.print("[green]No coverage gaps, nothing to generate.[/green]")
            return
        click.echo(generator.export_yaml(), nl=False)
        return

    if as_json:
        click.echo(to_json(report.to_dict()))
        return

    if not report.gaps:
        console.print(f"[green]No coverage gaps in the last {hours} hours.[/green]")
        return

    table = Table(title=f"Coverage gaps ({report.total_gaps} distinct)")
    table.add_column("Severity", style="bold", width=10)
    table.add_column("Source", style="cyan")
    table.add_column("Destination", style="cyan")
    table.add_column("Port", justify="right")
    table.add_column("Flows", justify="right")
    for gap in report.gaps:
        severity = gap_severity(gap.count)
        color = SEVERITY_COLORS[severity]
        table.add_row(
            f"[{color}]{severity.value}[/{color}]",
            gap.src_display,
            gap.dst_display,
            str(gap.dst_port),
            f"{gap.count:,}",
        )
    console.print(table)
