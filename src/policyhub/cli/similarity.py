"""CLI command: policyhub similarity: endpoint-selector overlap of network policies."""

from __future__ import annotations

import click
from rich.console import Console
from rich.table import Table

from policyhub.cli._shared import read_document
from policyhub.errors import ParseError
from policyhub.policy.models import PolicyStatus
from policyhub.policy.parser import parse_document
from policyhub.recommend.similarity import (
    StoredPolicy,
    compute_similarity,
    find_similar_policies,
)
from policyhub.simulation.export import to_json

console = Console(stderr=True)


@click.command()
@click.argument(
    "paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False)
)
@click.option(
    "--threshold",
    type=click.IntRange(0, 100),
    default=None,
    help="Only list pairs at or above this percentage (default: config).",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def similarity(
    ctx: click.Context, paths: tuple[str, ...], threshold: int | None, as_json: bool
) -> None:
    """Compare two policies, or scan several for consolidation candidates."""
    documents = [read_document(path, None) for path in paths]
    for path, doc in zip(paths, documents):
        if not doc.policy_type.is_network:
            raise click.ClickException(
                f"{path}: only Cilium network policies can be compared"
            )

    if len(documents) == 2 and threshold is None:
        try:
            score = compute_similarity(
                parse_document(documents[0]), parse_document(documents[1])
            )
        except ParseError as exc:
            raise click.ClickException(str(exc)) from exc
        if as_json:
            click.echo(to_json(score.to_dict()))
            return
        console.print(
            f"[bold]{score.similarity_percent}%[/bold] similar "
            f"({'same' if score.same_type else 'different'} kind)"
        )
        console.print(f"  Shared:      {', '.join(score.shared_labels) or '-'}")
        for doc, unique in zip(documents, (score.unique_to_a, score.unique_to_b)):
            console.print(f"  Only in {doc.name}: {', '.join(unique) or '-'}")
        return

    if threshold is None:
        threshold = ctx.obj["config"].consolidation_threshold
    stored = [
        StoredPolicy(
            id=path,
            name=doc.name,
            content=doc.content,
            policy_type=doc.policy_type,
            status=PolicyStatus.DEPLOYED,
        )
        for path, doc in zip(paths, documents)
    ]
    pairs = find_similar_policies(stored, threshold)

    if as_json:
        click.echo(
            to_json(
                {
                    "pairs": [
                        {
                            "policyA": p.policy_a.name,
                            "policyB": p.policy_b.name,
                            **p.similarity.to_dict(),
                        }
                        for p in pairs
                    ]
                }
            )
        )
        return

    if not pairs:
        console.print(f"[green]No pairs at or above {threshold}% similarity.[/green]")
        return

    table = Table(title=f"Pairs at or above {threshold}%")
    table.add_column("Policy A", style="cyan")
    table.add_column("Policy B", style="cyan")
    table.add_column("Similarity", justify="right", style="bold")
    table.add_column("Shared labels")
    for pair in pairs:
        table.add_row(
            pair.policy_a.name,
            pair.policy_b.name,
            f"{pair.similarity.similarity_percent}%",
            ", ".join(pair.similarity.shared_labels),
        )
    console.print(table)
