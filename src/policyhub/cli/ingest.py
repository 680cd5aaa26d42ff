"""CLI commands: policyhub ingest {flows,processes,policy}: load the local store."""

from __future__ import annotations

import asyncio
import time
import uuid
from pathlib import Path

import click
from rich.console import Console

from policyhub.cli._shared import (
    load_records,
    policy_type_option,
    read_document,
    with_store,
)
from policyhub.errors import ParseError
from policyhub.policy.models import PolicyStatus
from policyhub.policy.parser import parse_document
from policyhub.recommend.engine import Cluster
from policyhub.recommend.similarity import StoredPolicy
from policyhub.storage.service import HubStore, IngestResult

console = Console(stderr=True)

cluster_option = click.option("--cluster", required=True, help="Cluster id.")
cluster_name_option = click.option(
    "--cluster-name", default=None, help="Display name (default: the id)."
)
org_option = click.option(
    "--org", "organization_id", default="", help="Organization id."
)


@click.group()
def ingest() -> None:
    """Load observed traffic and policies into the local store."""


@ingest.command("flows")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@cluster_option
@cluster_name_option
@org_option
@click.pass_context
def ingest_flows(
    ctx: click.Context,
    path: str,
    cluster: str,
    cluster_name: str | None,
    organization_id: str,
) -> None:
    """Store flow records and refresh the hourly summaries they touch."""
    records = load_records(path)

    async def _ingest(store: HubStore) -> IngestResult:
        await store.clusters.save(
            Cluster(cluster, cluster_name or cluster, organization_id)
        )
        return await store.ingest_flows(cluster, records)

    result = asyncio.run(with_store(ctx.obj["db_path"], _ingest))
    _report(result, "flow records", cluster)


@ingest.command("processes")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@cluster_option
@cluster_name_option
@org_option
@click.option(
    "--window-hours",
    type=int,
    default=None,
    help="Hours the summaries cover, ending now (default: unbounded).",
)
@click.pass_context
def ingest_processes(
    ctx: click.Context,
    path: str,
    cluster: str,
    cluster_name: str | None,
    organization_id: str,
    window_hours: int | None,
) -> None:
    """Store per-pod process execution summaries."""
    records = load_records(path)
    window_start = window_end = None
    if window_hours:
        window_end = time.time()
        window_start = window_end - window_hours * 3600

    async def _ingest(store: HubStore) -> IngestResult:
        await store.clusters.save(
            Cluster(cluster, cluster_name or cluster, organization_id)
        )
        return await store.ingest_processes(cluster, records, window_start, window_end)

    result = asyncio.run(with_store(ctx.obj["db_path"], _ingest))
    _report(result, "process summaries", cluster)


@ingest.command("policy")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@cluster_option
@cluster_name_option
@org_option
@policy_type_option
@click.option(
    "--id", "policy_id", default=None, help="Policy id (default: generated)."
)
@click.option(
    "--status",
    type=click.Choice([s.value for s in PolicyStatus], case_sensitive=False),
    default=PolicyStatus.DRAFT.value,
    help="Lifecycle status to record.",
)
@click.pass_context
def ingest_policy(
    ctx: click.Context,
    path: str,
    cluster: str,
    cluster_name: str | None,
    organization_id: str,
    policy_type: str | None,
    policy_id: str | None,
    status: str,
) -> None:
    """Register a policy document with a cluster."""
    document = read_document(path, policy_type)
    try:
        parsed = parse_document(document)
    except ParseError as exc:
        raise click.ClickException(f"{Path(path).name}: {exc}") from exc

    now = time.time()
    status_value = PolicyStatus(status.upper())
    policy = StoredPolicy(
        id=policy_id or uuid.uuid4().hex[:12],
        name=parsed.name,
        content=document.content,
        policy_type=document.policy_type,
        cluster_id=cluster,
        status=status_value,
        deployed_at=now if status_value is PolicyStatus.DEPLOYED else None,
        created_at=now,
    )

    async def _save(store: HubStore) -> None:
        await store.clusters.save(
            Cluster(cluster, cluster_name or cluster, organization_id)
        )
        await store.policies.save(policy)

    asyncio.run(with_store(ctx.obj["db_path"], _save))
    console.print(
        f"[green]Stored {policy.policy_type.value} policy '{policy.name}' "
        f"as {policy.id} ({policy.status.value})[/green]"
    )
    click.echo(policy.id)


def _report(result: IngestResult, what: str, cluster: str) -> None:
    console.print(f"[green]Stored {result.stored:,} {what} in {cluster}[/green]")
    if result.errors:
        console.print(f"[yellow]Skipped {result.skipped} malformed record(s):[/yellow]")
        for error in result.errors[:10]:
            console.print(f"  [dim]{error}[/dim]")
