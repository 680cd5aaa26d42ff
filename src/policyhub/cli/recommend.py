"""CLI command: policyhub recommend: advice from recent traffic and policies."""

from __future__ import annotations

import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from policyhub.cli._shared import SEVERITY_COLORS, with_store
from policyhub.recommend.engine import RecommendationEngine, RecommendationFilters
from policyhub.recommend.models import RecommendationType, Severity
from policyhub.simulation.export import to_json

console = Console(stderr=True)


@click.command()
@click.option("--org", "organization_id", default=None, help="Organization id.")
@click.option("--cluster", default=None, help="Only this cluster.")
@click.option(
    "--type",
    "rec_type",
    type=click.Choice([t.value for t in RecommendationType], case_sensitive=False),
    default=None,
    help="Only this recommendation type.",
)
@click.option(
    "--severity",
    type=click.Choice([s.value for s in Severity], case_sensitive=False),
    default=None,
    help="Only this severity.",
)
@click.option(
    "--hours", type=click.IntRange(1, 168), default=None, help="Look-back window."
)
@click.option("--limit", type=click.IntRange(1, 100), default=50, help="Max results.")
@click.option("--stats", "show_stats", is_flag=True, help="Print counts only.")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def recommend(
    ctx: click.Context,
    organization_id: str | None,
    cluster: str | None,
    rec_type: str | None,
    severity: str | None,
    hours: int | None,
    limit: int,
    show_stats: bool,
    as_json: bool,
) -> None:
    """Recommend policy changes from recent traffic and stored policies."""
    config = ctx.obj["config"]
    hours = hours or config.default_hours
    filters = RecommendationFilters(
        cluster_id=cluster,
        type=RecommendationType(rec_type.upper()) if rec_type else None,
        severity=Severity(severity.upper()) if severity else None,
        hours=hours,
        limit=limit,
    )
    inputs = asyncio.run(
        with_store(
            ctx.obj["db_path"],
            lambda store: store.recommendation_inputs(organization_id, hours),
        )
    )
    engine = RecommendationEngine(config.consolidation_threshold)

    if show_stats:
        stats = engine.stats(inputs, cluster_id=cluster, hours=hours)
        if as_json:
            click.echo(to_json(stats))
            return
        console.print(f"[bold]{stats['total']}[/bold] recommendation(s)")
        for name, count in stats["byType"].items():
            console.print(f"  {name}: {count}")
        for name, count in stats["bySeverity"].items():
            console.print(f"  {name}: {count}")
        return

    result = engine.get_recommendations(inputs, filters)
    if as_json:
        click.echo(to_json(result.to_dict()))
        return

    if not result.recommendations:
        console.print("[green]No recommendations.[/green]")
        return

    table = Table(
        title=f"Recommendations ({len(result.recommendations)} of {result.total})"
    )
    table.add_column("Severity", style="bold", width=10)
    table.add_column("Cluster", style="cyan")
    table.add_column("Title")
    table.add_column("Impact", justify="right")
    table.add_column("Action", style="dim")
    for rec in result.recommendations:
        color = SEVERITY_COLORS[rec.severity]
        table.add_row(
            f"[{color}]{rec.severity.value}[/{color}]",
            rec.cluster_name,
            rec.title,
            f"{rec.impact:,}",
            rec.suggested_action,
        )
    console.print(table)

    critical = sum(1 for r in result.recommendations if r.severity is Severity.CRITICAL)
    if critical:
        console.print(f"\n[red]{critical} critical recommendation(s)[/red]")
        sys.exit(1)
