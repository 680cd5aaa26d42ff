"""CLI entry point: Click group with global options."""

from __future__ import annotations

import logging

import click

from policyhub import __version__
from policyhub.config import PolicyHubConfig


@click.group()
@click.version_option(version=__version__, prog_name="policyhub")
@click.option(
    "--db",
    "db_path",
    type=click.Path(dir_okay=False),
    default=None,
    help="SQLite database path (default: data dir/policyhub.db).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output.")
@click.pass_context
def main(ctx: click.Context, db_path: str | None, verbose: bool) -> None:
    """Policy Hub: validate, simulate and review Cilium and Tetragon policies."""
    config = PolicyHubConfig.load()
    config.verbose = verbose

    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["db_path"] = db_path or str(config.db_path)

    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _register_commands() -> None:
    from policyhub.cli.gaps import gaps  # noqa: F811
    from policyhub.cli.ingest import ingest  # noqa: F811
    from policyhub.cli.recommend import recommend  # noqa: F811
    from policyhub.cli.report import report  # noqa: F811
    from policyhub.cli.similarity import similarity  # noqa: F811
    from policyhub.cli.simulate import simulate  # noqa: F811
    from policyhub.cli.validate import validate  # noqa: F811

    main.add_command(validate)
    main.add_command(simulate)
    main.add_command(similarity)
    main.add_command(gaps)
    main.add_command(recommend)
    main.add_command(report)
    main.add_command(ingest)


_register_commands()
