"""Export simulation results as nested JSON or flat per-flow CSV rows."""

from __future__ import annotations

import csv
import io
import json
from collections.abc import Iterable

from policyhub.simulation.models import FlowSimulationResult, SimulationResult

# Largest integer a JSON consumer using IEEE doubles can hold exactly.
MAX_SAFE_INTEGER = 2**53 - 1

CSV_COLUMNS = (
    "srcNamespace",
    "srcPodName",
    "dstNamespace",
    "dstPodName",
    "dstPort",
    "protocol",
    "originalVerdict",
    "simulatedVerdict",
    "verdictChanged",
    "matchedRule",
    "matchReason",
)


def safe_integers(value):
    """Return a copy of ``value`` with out-of-range integers rendered as strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        if -MAX_SAFE_INTEGER <= value <= MAX_SAFE_INTEGER:
            return value
        return str(value)
    if isinstance(value, dict):
        return {k: safe_integers(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [safe_integers(v) for v in value]
    return value


def to_json(result: SimulationResult | dict, indent: int | None = 2) -> str:
    data = result if isinstance(result, dict) else result.to_dict()
    return json.dumps(safe_integers(data), indent=indent)


def _csv_value(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_csv(samples: Iterable[FlowSimulationResult]) -> str:
    """Render flow samples as CSV. Embedded quotes are doubled."""
    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_MINIMAL, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for sample in samples:
        row = sample.to_dict()
        writer.writerow([_csv_value(row[col]) for col in CSV_COLUMNS])
    return buf.getvalue()


def read_csv(text: str) -> list[dict[str, str]]:
    """Parse CSV produced by :func:`to_csv` back into rows keyed by column."""
    reader = csv.DictReader(io.StringIO(text))
    if tuple(reader.fieldnames or ()) != CSV_COLUMNS:
        raise ValueError(f"Unexpected CSV header: {reader.fieldnames}")
    return list(reader)
