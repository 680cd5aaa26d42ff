"""Historical observation records fed into a simulation.

Records are pre-aggregated: a FlowRecord stands for ``count`` flows and a
ProcessSummaryRecord for every execution of one binary in one pod.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone

from policyhub.errors import EvaluationError

# Observed verdicts as reported by Hubble and friends, reduced to three buckets.
_OBSERVED_VERDICTS = {
    "FORWARDED": "ALLOWED",
    "ALLOWED": "ALLOWED",
    "ALLOW": "ALLOWED",
    "REDIRECTED": "ALLOWED",
    "DENIED": "DENIED",
    "DENY": "DENIED",
    "BLOCKED": "DENIED",
    "DROPPED": "DROPPED",
}


def normalize_observed_verdict(value: str | None) -> str | None:
    """Map an observed verdict to ALLOWED / DENIED / DROPPED, or None if unknown."""
    if not value:
        return None
    return _OBSERVED_VERDICTS.get(str(value).strip().upper())


@dataclass(frozen=True)
class FlowRecord:
    """Aggregated network flow between two endpoints."""

    src_namespace: str = ""
    dst_namespace: str = ""
    dst_port: int = 0
    protocol: str = "TCP"
    count: int = 1
    src_pod_name: str | None = None
    dst_pod_name: str | None = None
    src_labels: dict[str, str] = field(default_factory=dict, hash=False)
    dst_labels: dict[str, str] = field(default_factory=dict, hash=False)
    src_ip: str | None = None
    dst_ip: str | None = None
    dst_dns_name: str | None = None
    verdict: str | None = None
    timestamp: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12], compare=False)

    @property
    def observed_verdict(self) -> str | None:
        return normalize_observed_verdict(self.verdict)


@dataclass(frozen=True)
class ProcessSummaryRecord:
    """Executions of one binary in one pod over the simulation window."""

    namespace: str
    binary: str
    exec_count: int = 0
    pod_name: str = ""
    syscall_counts: dict[str, int] = field(default_factory=dict, hash=False)
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12], compare=False)


def _pick(data: Mapping, *keys: str, default=None):
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _as_int(value, name: str, index: int | None) -> int:
    if isinstance(value, float) and not value.is_integer():
        raise EvaluationError(f"{name} must be an integer, got {value!r}", index)
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise EvaluationError(
            f"{name} must be an integer, got {value!r}", index
        ) from None
    if number < 0:
        raise EvaluationError(f"{name} must not be negative, got {number}", index)
    return number


def _as_labels(value, name: str, index: int | None) -> dict[str, str]:
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return {str(k): str(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        # Hubble style ["k8s:app=web", ...]
        labels: dict[str, str] = {}
        for item in value:
            key, _, val = str(item).partition("=")
            labels[key] = val
        return labels
    raise EvaluationError(f"{name} must be a mapping or list, got {value!r}", index)


def _as_timestamp(value, index: int | None) -> float | None:
    """Epoch seconds from a number, a numeric string or an ISO-8601 string.

    Naive ISO times are taken as UTC.
    """
    if value is None:
        return None
    if not isinstance(value, datetime):
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = None
        if number is not None:
            if not math.isfinite(number):
                raise EvaluationError(f"timestamp must be finite, got {value!r}", index)
            return number
        text = str(value).strip()
        if text[-1:] in ("Z", "z"):
            text = text[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(text)
        except ValueError:
            raise EvaluationError(
                f"timestamp must be epoch seconds or ISO-8601, got {value!r}", index
            ) from None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def coerce_flow(data: FlowRecord | Mapping, index: int | None = None) -> FlowRecord:
    """Build a FlowRecord from a mapping with camelCase or snake_case keys."""
    if isinstance(data, FlowRecord):
        return replace(
            data,
            dst_port=_as_int(data.dst_port, "dstPort", index),
            count=_as_int(data.count, "count", index),
            timestamp=_as_timestamp(data.timestamp, index),
        )
    if not isinstance(data, Mapping):
        raise EvaluationError(
            f"flow record must be a mapping, got {type(data).__name__}", index
        )

    dst_port = _pick(data, "dstPort", "dst_port", default=0)
    count = _pick(data, "count", "flowCount", "flow_count", default=1)
    src_labels = _pick(data, "srcLabels", "src_labels")
    dst_labels = _pick(data, "dstLabels", "dst_labels")
    timestamp = _pick(data, "timestamp")
    return FlowRecord(
        src_namespace=str(_pick(data, "srcNamespace", "src_namespace", default="")),
        dst_namespace=str(_pick(data, "dstNamespace", "dst_namespace", default="")),
        dst_port=_as_int(dst_port, "dstPort", index),
        protocol=str(_pick(data, "protocol", default="TCP")).upper(),
        count=_as_int(count, "count", index),
        src_pod_name=_pick(data, "srcPodName", "src_pod_name"),
        dst_pod_name=_pick(data, "dstPodName", "dst_pod_name"),
        src_labels=_as_labels(src_labels, "srcLabels", index),
        dst_labels=_as_labels(dst_labels, "dstLabels", index),
        src_ip=_pick(data, "srcIP", "srcIp", "src_ip"),
        dst_ip=_pick(data, "dstIP", "dstIp", "dst_ip"),
        dst_dns_name=_pick(data, "dstDnsName", "dstDNSName", "dst_dns_name"),
        verdict=_pick(data, "verdict", "originalVerdict"),
        timestamp=_as_timestamp(timestamp, index),
        id=str(_pick(data, "id", default=uuid.uuid4().hex[:12])),
    )


def coerce_process(
    data: ProcessSummaryRecord | Mapping, index: int | None = None
) -> ProcessSummaryRecord:
    """Build a ProcessSummaryRecord from a mapping with camelCase or snake_case keys."""
    if isinstance(data, ProcessSummaryRecord):
        if not data.binary:
            raise EvaluationError("process record has no binary path", index)
        return replace(
            data,
            exec_count=_as_int(data.exec_count, "execCount", index),
            syscall_counts=_as_counts(data.syscall_counts, index),
        )
    if not isinstance(data, Mapping):
        raise EvaluationError(
            f"process record must be a mapping, got {type(data).__name__}", index
        )

    binary = _pick(data, "binary", "processName", "process_name")
    if not binary:
        raise EvaluationError("process record has no binary path", index)

    raw_counts = _pick(data, "syscallCounts", "syscall_counts", default={})
    exec_count = _pick(data, "execCount", "exec_count", default=0)
    return ProcessSummaryRecord(
        namespace=str(_pick(data, "namespace", default="")),
        binary=str(binary),
        exec_count=_as_int(exec_count, "execCount", index),
        pod_name=str(_pick(data, "podName", "pod_name", default="")),
        syscall_counts=_as_counts(raw_counts, index),
        id=str(_pick(data, "id", default=uuid.uuid4().hex[:12])),
    )


def _as_counts(value, index: int | None) -> dict[str, int]:
    if not isinstance(value, Mapping):
        raise EvaluationError(f"syscallCounts must be a mapping, got {value!r}", index)
    return {str(k): _as_int(v, f"syscallCounts.{k}", index) for k, v in value.items()}
