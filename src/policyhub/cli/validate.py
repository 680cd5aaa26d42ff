"""CLI command: policyhub validate <file>: syntax and schema checks."""

from __future__ import annotations

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from policyhub.cli._shared import policy_type_option, read_document
from policyhub.policy.validator import validate_policy
from policyhub.simulation.export import to_json

console = Console(stderr=True)


@click.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@policy_type_option
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
def validate(path: str, policy_type: str | None, as_json: bool) -> None:
    """Validate a policy document against its declared type."""
    document = read_document(path, policy_type)
    result = validate_policy(document.content, document.policy_type)

    if as_json:
        click.echo(to_json(result.to_dict()))
    elif result.valid:
        console.print(
            f"[green]{Path(path).name} is a valid "
            f"{document.policy_type.value} policy[/green]"
        )
    else:
        table = Table(title=f"{Path(path).name}: {len(result.errors)} problem(s)")
        table.add_column("Type", style="bold", width=8)
        table.add_column("Field", style="cyan")
        table.add_column("Line", justify="right")
        table.add_column("Message")
        for error in result.errors:
            table.add_row(
                error.type,
                error.field or "",
                str(error.line) if error.line else "",
                error.message,
            )
        console.print(table)

    if not result.valid:
        sys.exit(1)
