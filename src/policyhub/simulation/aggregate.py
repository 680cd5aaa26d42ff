"""Immutable accumulators folded over evaluated records.

Each ``add`` returns a new accumulator and ``merge`` combines two of them, so
chunks can be folded independently (even on different threads) and reduced
afterwards. Counts merge commutatively; sample lists keep the first
``sample_limit`` entries in merge order.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace

from policyhub.simulation.models import (
    FlowSimulationResult,
    NamespaceImpact,
    NetworkSimulationResult,
    ProcessNamespaceImpact,
    ProcessSample,
    ProcessSimulationResult,
    VerdictBreakdown,
)

UNKNOWN_NAMESPACE = "unknown"


def _merge_maps(a: Mapping, b: Mapping) -> dict:
    merged = dict(a)
    for key, value in b.items():
        merged[key] = merged[key].merge(value) if key in merged else value
    return merged


def _merge_samples(
    a: Mapping[str, tuple], b: Mapping[str, tuple], limit: int
) -> dict[str, tuple]:
    merged = dict(a)
    for key, items in b.items():
        merged[key] = (merged.get(key, ()) + items)[:limit]
    return merged


def _transition(original: str | None, simulated: str, n: int) -> VerdictBreakdown:
    key = f"{(original or '').lower()}_to_{simulated.lower()}"
    if key not in VerdictBreakdown.__dataclass_fields__:
        return VerdictBreakdown()
    return VerdictBreakdown(**{key: n})


@dataclass(frozen=True)
class NetworkAccumulator:
    """Running totals for a network simulation."""

    sample_limit: int = 5
    total_records: int = 0
    total_flows: int = 0
    allowed: int = 0
    denied: int = 0
    no_match: int = 0
    would_change: int = 0
    no_change: int = 0
    namespaces: Mapping[str, NamespaceImpact] = field(default_factory=dict)
    verdicts: VerdictBreakdown = field(default_factory=VerdictBreakdown)
    samples: Mapping[str, tuple[FlowSimulationResult, ...]] = field(
        default_factory=dict
    )
    errors: tuple[str, ...] = ()

    def add(self, sample: FlowSimulationResult) -> NetworkAccumulator:
        n = sample.count
        verdict = sample.simulated_verdict
        changed = sample.verdict_changed
        namespace = sample.src_namespace or UNKNOWN_NAMESPACE
        impact = NamespaceImpact(
            namespace=namespace,
            total_flows=n,
            allowed_count=n if verdict == "ALLOWED" else 0,
            denied_count=n if verdict == "DENIED" else 0,
            no_match_count=n if verdict == "NO_MATCH" else 0,
            would_deny=n if changed and verdict == "DENIED" else 0,
            would_allow=n if changed and verdict == "ALLOWED" else 0,
            no_change=0 if changed else n,
        )
        samples = dict(self.samples)
        bucket = samples.get(verdict, ())
        if len(bucket) < self.sample_limit:
            samples[verdict] = bucket + (sample,)
        return replace(
            self,
            total_records=self.total_records + 1,
            total_flows=self.total_flows + n,
            allowed=self.allowed + impact.allowed_count,
            denied=self.denied + impact.denied_count,
            no_match=self.no_match + impact.no_match_count,
            would_change=self.would_change + (n if changed else 0),
            no_change=self.no_change + impact.no_change,
            namespaces=_merge_maps(self.namespaces, {namespace: impact}),
            verdicts=self.verdicts.merge(
                _transition(sample.original_verdict, verdict, n)
            ),
            samples=samples,
        )

    def add_error(self, message: str) -> NetworkAccumulator:
        return replace(self, errors=self.errors + (message,))

    def merge(self, other: NetworkAccumulator) -> NetworkAccumulator:
        return NetworkAccumulator(
            sample_limit=self.sample_limit,
            total_records=self.total_records + other.total_records,
            total_flows=self.total_flows + other.total_flows,
            allowed=self.allowed + other.allowed,
            denied=self.denied + other.denied,
            no_match=self.no_match + other.no_match,
            would_change=self.would_change + other.would_change,
            no_change=self.no_change + other.no_change,
            namespaces=_merge_maps(self.namespaces, other.namespaces),
            verdicts=self.verdicts.merge(other.verdicts),
            samples=_merge_samples(self.samples, other.samples, self.sample_limit),
            errors=self.errors + other.errors,
        )

    def to_result(self, policy_name: str) -> NetworkSimulationResult:
        return NetworkSimulationResult(
            policy_name=policy_name,
            total_records=self.total_records,
            total_flows=self.total_flows,
            allowed_count=self.allowed,
            denied_count=self.denied,
            no_match_count=self.no_match,
            would_change_count=self.would_change,
            no_change_count=self.no_change,
            breakdown_by_namespace=dict(self.namespaces),
            breakdown_by_verdict=self.verdicts,
            samples=dict(self.samples),
            errors=self.errors,
        )

    @classmethod
    def from_result(
        cls, result: NetworkSimulationResult, sample_limit: int = 5
    ) -> NetworkAccumulator:
        """Re-open a finished result so it can be merged with others."""
        return cls(
            sample_limit=sample_limit,
            total_records=result.total_records,
            total_flows=result.total_flows,
            allowed=result.allowed_count,
            denied=result.denied_count,
            no_match=result.no_match_count,
            would_change=result.would_change_count,
            no_change=result.no_change_count,
            namespaces=dict(result.breakdown_by_namespace),
            verdicts=result.breakdown_by_verdict,
            samples={k: v[:sample_limit] for k, v in result.samples.items()},
            errors=result.errors,
        )


_PROCESS_BUCKETS = {
    "WOULD_BLOCK": "blocked",
    "WOULD_ALLOW": "allowed",
    "NO_MATCH": "unmatched",
}


@dataclass(frozen=True)
class ProcessAccumulator:
    """Running totals for a process simulation."""

    sample_limit: int = 5
    total_processes: int = 0
    total_execs: int = 0
    blocked: int = 0
    blocked_execs: int = 0
    allowed: int = 0
    allowed_execs: int = 0
    no_match: int = 0
    no_match_execs: int = 0
    namespaces: Mapping[str, ProcessNamespaceImpact] = field(default_factory=dict)
    samples: Mapping[str, tuple[ProcessSample, ...]] = field(default_factory=dict)
    errors: tuple[str, ...] = ()

    def add(self, sample: ProcessSample) -> ProcessAccumulator:
        execs = sample.exec_count
        blocked = sample.verdict == "WOULD_BLOCK"
        allowed = sample.verdict == "WOULD_ALLOW"
        unmatched = not blocked and not allowed
        # Blocked exec totals use the hook count, which can differ from execCount
        blocked_execs = sample.blocked_execs if blocked else 0
        namespace = sample.namespace or UNKNOWN_NAMESPACE
        impact = ProcessNamespaceImpact(
            namespace=namespace,
            total_processes=1,
            total_execs=execs,
            blocked_processes=int(blocked),
            blocked_execs=blocked_execs,
            allowed_processes=int(allowed),
            allowed_execs=execs if allowed else 0,
            no_match_processes=int(unmatched),
            no_match_execs=execs if unmatched else 0,
        )
        bucket_name = _PROCESS_BUCKETS.get(sample.verdict, "unmatched")
        samples = dict(self.samples)
        bucket = samples.get(bucket_name, ())
        if len(bucket) < self.sample_limit:
            samples[bucket_name] = bucket + (sample,)
        return replace(
            self,
            total_processes=self.total_processes + 1,
            total_execs=self.total_execs + execs,
            blocked=self.blocked + impact.blocked_processes,
            blocked_execs=self.blocked_execs + blocked_execs,
            allowed=self.allowed + impact.allowed_processes,
            allowed_execs=self.allowed_execs + impact.allowed_execs,
            no_match=self.no_match + impact.no_match_processes,
            no_match_execs=self.no_match_execs + impact.no_match_execs,
            namespaces=_merge_maps(self.namespaces, {namespace: impact}),
            samples=samples,
        )

    def add_error(self, message: str) -> ProcessAccumulator:
        return replace(self, errors=self.errors + (message,))

    def merge(self, other: ProcessAccumulator) -> ProcessAccumulator:
        return ProcessAccumulator(
            sample_limit=self.sample_limit,
            total_processes=self.total_processes + other.total_processes,
            total_execs=self.total_execs + other.total_execs,
            blocked=self.blocked + other.blocked,
            blocked_execs=self.blocked_execs + other.blocked_execs,
            allowed=self.allowed + other.allowed,
            allowed_execs=self.allowed_execs + other.allowed_execs,
            no_match=self.no_match + other.no_match,
            no_match_execs=self.no_match_execs + other.no_match_execs,
            namespaces=_merge_maps(self.namespaces, other.namespaces),
            samples=_merge_samples(self.samples, other.samples, self.sample_limit),
            errors=self.errors + other.errors,
        )

    def to_result(
        self, policy_name: str, policy_namespace: str | None = None
    ) -> ProcessSimulationResult:
        return ProcessSimulationResult(
            policy_name=policy_name,
            policy_namespace=policy_namespace,
            total_processes=self.total_processes,
            total_execs=self.total_execs,
            would_block_count=self.blocked,
            would_block_execs=self.blocked_execs,
            would_allow_count=self.allowed,
            would_allow_execs=self.allowed_execs,
            no_match_count=self.no_match,
            no_match_execs=self.no_match_execs,
            breakdown_by_namespace=dict(self.namespaces),
            sample_blocked_processes=self.samples.get("blocked", ()),
            sample_allowed_processes=self.samples.get("allowed", ()),
            sample_unmatched_processes=self.samples.get("unmatched", ()),
            errors=self.errors,
        )
