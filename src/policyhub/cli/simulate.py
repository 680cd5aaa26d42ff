"""CLI command: policyhub simulate <policy>: what-if evaluation against history."""

from __future__ import annotations

import asyncio
import math
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from policyhub.cli._shared import (
    VERDICT_COLORS,
    load_records,
    policy_type_option,
    read_document,
    window,
    with_store,
)
from policyhub.config import PolicyHubConfig
from policyhub.errors import ParseError, PreconditionFailed, SimulationFailed
from policyhub.policy.models import PolicyDocument, PolicyType
from policyhub.simulation.engine import SimulationEngine
from policyhub.simulation.export import to_csv, to_json
from policyhub.simulation.models import (
    NetworkSimulationResult,
    ProcessSimulationResult,
    SimulationResult,
)
from policyhub.simulation.nodes import merge_node_results, node_breakdown

console = Console(stderr=True)


@click.command()
@click.argument("policy_path", type=click.Path(exists=True, dir_okay=False))
@policy_type_option
@click.option(
    "--records",
    "-r",
    "record_paths",
    multiple=True,
    type=click.Path(exists=True, dir_okay=False),
    help="JSON/YAML record file. Repeat for several collector nodes.",
)
@click.option(
    "--cluster",
    default=None,
    help="Replay this cluster's stored history instead of record files.",
)
@click.option("--hours", type=int, default=None, help="History window in hours.")
@click.option(
    "--baseline",
    "baseline_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="Compare against this policy instead of the observed verdicts.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json", "csv"]),
    default="table",
    help="Output format.",
)
@click.pass_context
def simulate(
    ctx: click.Context,
    policy_path: str,
    policy_type: str | None,
    record_paths: tuple[str, ...],
    cluster: str | None,
    hours: int | None,
    baseline_path: str | None,
    output_format: str,
) -> None:
    """Simulate a policy against historical flows or process summaries."""
    config: PolicyHubConfig = ctx.obj["config"]
    document = read_document(policy_path, policy_type)
    baseline = read_document(baseline_path, None) if baseline_path else None
    engine = SimulationEngine(config=config)

    if output_format == "csv" and document.policy_type is PolicyType.TETRAGON:
        raise click.UsageError("CSV export is only available for network policies")

    try:
        if record_paths:
            result = _simulate_files(engine, document, baseline, record_paths, config)
        elif cluster:
            start, end = window(hours or config.default_hours)
            sim = asyncio.run(
                with_store(
                    ctx.obj["db_path"],
                    lambda store: store.simulate_document(
                        engine, document, cluster, start, end, baseline=baseline
                    ),
                )
            )
            sim.raise_for_status()
            result = sim.result
        else:
            raise click.UsageError("Pass --records or --cluster")
    except (ParseError, PreconditionFailed) as exc:
        raise click.ClickException(str(exc)) from exc
    except SimulationFailed as exc:
        console.print(f"[red]Simulation failed:[/red] {exc}")
        sys.exit(1)

    if result is None:
        console.print("[yellow]Simulation was cancelled.[/yellow]")
        sys.exit(1)

    if output_format == "json":
        click.echo(to_json(result))
    elif output_format == "csv":
        click.echo(to_csv(result.details), nl=False)
    elif isinstance(result, NetworkSimulationResult):
        _print_network(result)
    else:
        _print_process(result)


def _simulate_files(
    engine: SimulationEngine,
    document: PolicyDocument,
    baseline: PolicyDocument | None,
    record_paths: tuple[str, ...],
    config: PolicyHubConfig,
) -> SimulationResult | None:
    """Run each record file as one node and merge the partial results.

    Process summaries are already per-pod, so tracing policies get a single
    run over every file's records.
    """
    if document.policy_type is PolicyType.TETRAGON:
        records = [r for path in record_paths for r in load_records(path)]
        sim = engine.create(document, "local", 0.0, math.inf, baseline=baseline)
        engine.execute(sim.id, records)
        sim.raise_for_status()
        return sim.result

    results: dict[str, NetworkSimulationResult] = {}
    for path in record_paths:
        node = Path(path).stem
        sim = engine.create(document, node, 0.0, math.inf, baseline=baseline)
        engine.execute(sim.id, load_records(path))
        sim.raise_for_status()
        if sim.result is None:
            return None
        results[node] = sim.result

    if len(results) == 1:
        return next(iter(results.values()))

    for node, stats in node_breakdown(results).items():
        console.print(
            f"  [dim]{node}:[/dim] {stats['flowsAnalyzed']} flows, "
            f"{stats['flowsChanged']} changed, {stats['errors']} errors"
        )
    return merge_node_results(results, sample_limit=config.sample_limit)


def _print_network(result: NetworkSimulationResult) -> None:
    console.print(
        f"[bold]Policy Hub[/bold] simulated [cyan]{result.policy_name}[/cyan] over "
        f"{result.total_flows:,} flows ({result.total_records:,} records)\n"
    )

    summary = Table(title="Verdicts", show_header=False)
    summary.add_column("Verdict", style="bold")
    summary.add_column("Flows", justify="right")
    summary.add_row("[green]Allowed[/green]", f"{result.allowed_count:,}")
    summary.add_row("[red]Denied[/red]", f"{result.denied_count:,}")
    summary.add_row("[dim]No match[/dim]", f"{result.no_match_count:,}")
    summary.add_row("Would change", f"{result.would_change_count:,}")
    summary.add_row("No change", f"{result.no_change_count:,}")
    console.print(summary)

    if result.breakdown_by_namespace:
        table = Table(title="By source namespace")
        table.add_column("Namespace", style="cyan")
        table.add_column("Flows", justify="right")
        table.add_column("Allowed", justify="right")
        table.add_column("Denied", justify="right")
        table.add_column("Would deny", justify="right")
        table.add_column("Would allow", justify="right")
        for ns, impact in sorted(result.breakdown_by_namespace.items()):
            table.add_row(
                ns,
                f"{impact.total_flows:,}",
                f"{impact.allowed_count:,}",
                f"{impact.denied_count:,}",
                f"{impact.would_deny:,}",
                f"{impact.would_allow:,}",
            )
        console.print(table)

    if result.details:
        table = Table(title="Sample flows")
        table.add_column("Source", style="cyan")
        table.add_column("Destination", style="cyan")
        table.add_column("Port", justify="right")
        table.add_column("Was")
        table.add_column("Would be", style="bold")
        table.add_column("Reason", max_width=60)
        for sample in result.details:
            color = VERDICT_COLORS.get(sample.simulated_verdict, "white")
            table.add_row(
                sample.src_namespace,
                sample.dst_namespace,
                str(sample.dst_port),
                sample.original_verdict or "",
                f"[{color}]{sample.simulated_verdict}[/{color}]",
                sample.match_reason,
            )
        console.print(table)

    _print_errors(result.errors)


def _print_process(result: ProcessSimulationResult) -> None:
    console.print(
        f"[bold]Policy Hub[/bold] simulated [cyan]{result.policy_name}[/cyan] over "
        f"{result.total_processes:,} processes ({result.total_execs:,} execs)\n"
    )

    table = Table(title="Outcome")
    table.add_column("Verdict", style="bold")
    table.add_column("Processes", justify="right")
    table.add_column("Execs", justify="right")
    table.add_row(
        "[red]Would block[/red]",
        f"{result.would_block_count:,}",
        f"{result.would_block_execs:,}",
    )
    table.add_row(
        "[green]Would allow[/green]",
        f"{result.would_allow_count:,}",
        f"{result.would_allow_execs:,}",
    )
    table.add_row(
        "[dim]No match[/dim]",
        f"{result.no_match_count:,}",
        f"{result.no_match_execs:,}",
    )
    console.print(table)

    if result.sample_blocked_processes:
        blocked = Table(title="Sample blocked processes")
        blocked.add_column("Namespace", style="cyan")
        blocked.add_column("Pod")
        blocked.add_column("Binary")
        blocked.add_column("Action", style="red")
        for sample in result.sample_blocked_processes:
            blocked.add_row(
                sample.namespace, sample.pod_name, sample.binary, sample.action or ""
            )
        console.print(blocked)

    _print_errors(result.errors)


def _print_errors(errors: tuple[str, ...]) -> None:
    if not errors:
        return
    console.print(f"\n[yellow]{len(errors)} record(s) could not be evaluated:[/yellow]")
    for error in errors[:10]:
        console.print(f"  [dim]{error}[/dim]")
