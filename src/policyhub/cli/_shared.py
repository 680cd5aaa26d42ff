"""Helpers shared by the CLI commands."""

from __future__ import annotations

import json
import time
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TypeVar

import click
import yaml

from policyhub.errors import ParseError
from policyhub.policy.models import PolicyDocument, PolicyType
from policyhub.policy.parser import detect_policy_type
from policyhub.recommend.models import Severity
from policyhub.storage.db import get_db
from policyhub.storage.service import HubStore

T = TypeVar("T")

SEVERITY_COLORS = {
    Severity.INFO: "blue",
    Severity.WARNING: "yellow",
    Severity.CRITICAL: "red",
}

VERDICT_COLORS = {
    "ALLOWED": "green",
    "DENIED": "red",
    "NO_MATCH": "dim",
    "WOULD_BLOCK": "red",
    "WOULD_ALLOW": "green",
}

policy_type_option = click.option(
    "--type",
    "-t",
    "policy_type",
    type=click.Choice([t.value for t in PolicyType], case_sensitive=False),
    default=None,
    help="Declared policy type (default: inferred from kind).",
)


def read_document(path: str, policy_type: str | None) -> PolicyDocument:
    """Read a policy file, inferring its type from ``kind`` when not given."""
    content = Path(path).read_text(encoding="utf-8")
    if policy_type:
        declared = PolicyType(policy_type.upper())
    else:
        try:
            declared = detect_policy_type(content)
        except ParseError as exc:
            raise click.ClickException(f"{path}: {exc}") from exc
        if declared is None:
            raise click.ClickException(
                f"{path}: cannot infer the policy type from kind, pass --type"
            )
    return PolicyDocument(content, declared, name=Path(path).stem)


def load_records(path: str) -> list:
    """Load a JSON or YAML list of records.

    A mapping is accepted too, with the list under ``flows``, ``processes``
    or ``records``.
    """
    text = Path(path).read_text(encoding="utf-8")
    try:
        if path.endswith(".json"):
            data = json.loads(text)
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise click.ClickException(f"{path}: cannot parse records: {exc}") from exc

    if isinstance(data, dict):
        for key in ("flows", "processes", "records"):
            if isinstance(data.get(key), list):
                return data[key]
    if not isinstance(data, list):
        raise click.ClickException(f"{path}: expected a list of records")
    return data


def window(hours: int, now: float | None = None) -> tuple[float, float]:
    end = time.time() if now is None else now
    return end - hours * 3600, end


async def with_store(db_path: str, fn: Callable[[HubStore], Awaitable[T]]) -> T:
    """Open the database, run ``fn`` against a HubStore, and close it."""
    db = await get_db(db_path)
    try:
        return await fn(HubStore(db))
    finally:
        await db.close()
