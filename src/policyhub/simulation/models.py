"""Simulation data models: per-record verdicts, aggregate results, lifecycle."""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Union

from policyhub.errors import SimulationFailed
from policyhub.policy.models import PolicyDocument


class SimulationStatus(enum.Enum):
    """Lifecycle state of a simulation."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self in (
            SimulationStatus.COMPLETED,
            SimulationStatus.FAILED,
            SimulationStatus.CANCELLED,
        )


@dataclass(frozen=True)
class FlowSimulationResult:
    """Verdict for one flow record, kept as a sample for display."""

    src_namespace: str
    dst_namespace: str
    dst_port: int
    protocol: str
    simulated_verdict: str
    original_verdict: str | None = None
    verdict_changed: bool = False
    src_pod_name: str | None = None
    dst_pod_name: str | None = None
    count: int = 1
    matched_rule: str | None = None
    match_reason: str = ""
    timestamp: float | None = None

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "srcNamespace": self.src_namespace,
            "srcPodName": self.src_pod_name,
            "dstNamespace": self.dst_namespace,
            "dstPodName": self.dst_pod_name,
            "dstPort": self.dst_port,
            "protocol": self.protocol,
            "count": self.count,
            "originalVerdict": self.original_verdict,
            "simulatedVerdict": self.simulated_verdict,
            "verdictChanged": self.verdict_changed,
            "matchedRule": self.matched_rule,
            "matchReason": self.match_reason,
        }


@dataclass(frozen=True)
class ProcessSample:
    """Verdict for one process summary, kept as a sample for display."""

    process_id: str
    namespace: str
    pod_name: str
    binary: str
    exec_count: int
    verdict: str
    blocked_execs: int = 0
    matched_selector: str | None = None
    match_reason: str = ""
    action: str | None = None

    @property
    def would_block(self) -> bool:
        return self.verdict == "WOULD_BLOCK"

    def to_dict(self) -> dict:
        return {
            "processId": self.process_id,
            "namespace": self.namespace,
            "podName": self.pod_name,
            "binary": self.binary,
            "execCount": self.exec_count,
            "verdict": self.verdict,
            "wouldBlock": self.would_block,
            "blockedExecs": self.blocked_execs,
            "matchedSelector": self.matched_selector,
            "matchReason": self.match_reason,
            "action": self.action,
        }


@dataclass(frozen=True)
class NamespaceImpact:
    """Flow counts for one source namespace."""

    namespace: str
    total_flows: int = 0
    allowed_count: int = 0
    denied_count: int = 0
    no_match_count: int = 0
    would_deny: int = 0
    would_allow: int = 0
    no_change: int = 0

    def merge(self, other: NamespaceImpact) -> NamespaceImpact:
        return NamespaceImpact(
            namespace=self.namespace,
            total_flows=self.total_flows + other.total_flows,
            allowed_count=self.allowed_count + other.allowed_count,
            denied_count=self.denied_count + other.denied_count,
            no_match_count=self.no_match_count + other.no_match_count,
            would_deny=self.would_deny + other.would_deny,
            would_allow=self.would_allow + other.would_allow,
            no_change=self.no_change + other.no_change,
        )

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "totalFlows": self.total_flows,
            "allowedCount": self.allowed_count,
            "deniedCount": self.denied_count,
            "noMatchCount": self.no_match_count,
            "wouldDeny": self.would_deny,
            "wouldAllow": self.would_allow,
            "noChange": self.no_change,
        }


@dataclass(frozen=True)
class VerdictBreakdown:
    """Flow counts by (original verdict -> simulated verdict)."""

    allowed_to_allowed: int = 0
    allowed_to_denied: int = 0
    denied_to_allowed: int = 0
    denied_to_denied: int = 0
    dropped_to_allowed: int = 0
    dropped_to_denied: int = 0

    def merge(self, other: VerdictBreakdown) -> VerdictBreakdown:
        return VerdictBreakdown(
            allowed_to_allowed=self.allowed_to_allowed + other.allowed_to_allowed,
            allowed_to_denied=self.allowed_to_denied + other.allowed_to_denied,
            denied_to_allowed=self.denied_to_allowed + other.denied_to_allowed,
            denied_to_denied=self.denied_to_denied + other.denied_to_denied,
            dropped_to_allowed=self.dropped_to_allowed + other.dropped_to_allowed,
            dropped_to_denied=self.dropped_to_denied + other.dropped_to_denied,
        )

    def to_dict(self) -> dict:
        return {
            "allowedToAllowed": self.allowed_to_allowed,
            "allowedToDenied": self.allowed_to_denied,
            "deniedToAllowed": self.denied_to_allowed,
            "deniedToDenied": self.denied_to_denied,
            "droppedToAllowed": self.dropped_to_allowed,
            "droppedToDenied": self.dropped_to_denied,
        }


@dataclass(frozen=True)
class ProcessNamespaceImpact:
    """Process and exec counts for one namespace."""

    namespace: str
    total_processes: int = 0
    total_execs: int = 0
    blocked_processes: int = 0
    blocked_execs: int = 0
    allowed_processes: int = 0
    allowed_execs: int = 0
    no_match_processes: int = 0
    no_match_execs: int = 0

    def merge(self, other: ProcessNamespaceImpact) -> ProcessNamespaceImpact:
        return ProcessNamespaceImpact(
            namespace=self.namespace,
            total_processes=self.total_processes + other.total_processes,
            total_execs=self.total_execs + other.total_execs,
            blocked_processes=self.blocked_processes + other.blocked_processes,
            blocked_execs=self.blocked_execs + other.blocked_execs,
            allowed_processes=self.allowed_processes + other.allowed_processes,
            allowed_execs=self.allowed_execs + other.allowed_execs,
            no_match_processes=self.no_match_processes + other.no_match_processes,
            no_match_execs=self.no_match_execs + other.no_match_execs,
        )

    def to_dict(self) -> dict:
        return {
            "namespace": self.namespace,
            "totalProcesses": self.total_processes,
            "totalExecs": self.total_execs,
            "blockedProcesses": self.blocked_processes,
            "blockedExecs": self.blocked_execs,
            "allowedProcesses": self.allowed_processes,
            "allowedExecs": self.allowed_execs,
            "noMatchProcesses": self.no_match_processes,
            "noMatchExecs": self.no_match_execs,
        }


@dataclass(frozen=True)
class NetworkSimulationResult:
    """Aggregate outcome of running a network policy over flow records.

    Counts are weighted by each record's flow count; ``total_records`` is the
    number of records evaluated.
    """

    policy_name: str
    total_records: int = 0
    total_flows: int = 0
    allowed_count: int = 0
    denied_count: int = 0
    no_match_count: int = 0
    would_change_count: int = 0
    no_change_count: int = 0
    breakdown_by_namespace: dict[str, NamespaceImpact] = field(default_factory=dict)
    breakdown_by_verdict: VerdictBreakdown = field(default_factory=VerdictBreakdown)
    samples: dict[str, tuple[FlowSimulationResult, ...]] = field(default_factory=dict)
    errors: tuple[str, ...] = ()

    @property
    def details(self) -> list[FlowSimulationResult]:
        return [s for bucket in self.samples.values() for s in bucket]

    def to_dict(self) -> dict:
        return {
            "kind": "network",
            "policyName": self.policy_name,
            "totalRecords": self.total_records,
            "totalFlowsAnalyzed": self.total_flows,
            "allowedCount": self.allowed_count,
            "deniedCount": self.denied_count,
            "noMatchCount": self.no_match_count,
            "wouldChangeCount": self.would_change_count,
            "noChangeCount": self.no_change_count,
            "breakdownByNamespace": {
                ns: impact.to_dict()
                for ns, impact in sorted(self.breakdown_by_namespace.items())
            },
            "breakdownByVerdict": self.breakdown_by_verdict.to_dict(),
            "details": [s.to_dict() for s in self.details],
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class ProcessSimulationResult:
    """Aggregate outcome of running a TracingPolicy over process summaries."""

    policy_name: str
    policy_namespace: str | None = None
    total_processes: int = 0
    total_execs: int = 0
    would_block_count: int = 0
    would_block_execs: int = 0
    would_allow_count: int = 0
    would_allow_execs: int = 0
    no_match_count: int = 0
    no_match_execs: int = 0
    breakdown_by_namespace: dict[str, ProcessNamespaceImpact] = field(
        default_factory=dict
    )
    sample_blocked_processes: tuple[ProcessSample, ...] = ()
    sample_allowed_processes: tuple[ProcessSample, ...] = ()
    sample_unmatched_processes: tuple[ProcessSample, ...] = ()
    errors: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "kind": "process",
            "policyName": self.policy_name,
            "policyNamespace": self.policy_namespace,
            "totalProcesses": self.total_processes,
            "totalExecs": self.total_execs,
            "wouldBlockCount": self.would_block_count,
            "wouldBlockExecs": self.would_block_execs,
            "wouldAllowCount": self.would_allow_count,
            "wouldAllowExecs": self.would_allow_execs,
            "noMatchCount": self.no_match_count,
            "noMatchExecs": self.no_match_execs,
            "breakdownByNamespace": {
                ns: impact.to_dict()
                for ns, impact in sorted(self.breakdown_by_namespace.items())
            },
            "sampleBlockedProcesses": [
                s.to_dict() for s in self.sample_blocked_processes
            ],
            "sampleAllowedProcesses": [
                s.to_dict() for s in self.sample_allowed_processes
            ],
            "sampleUnmatchedProcesses": [
                s.to_dict() for s in self.sample_unmatched_processes
            ],
            "errors": list(self.errors),
        }


SimulationResult = Union[NetworkSimulationResult, ProcessSimulationResult]


@dataclass
class Simulation:
    """One what-if run of a policy against a cluster's history."""

    policy: PolicyDocument
    cluster_id: str
    start_time: float
    end_time: float
    baseline: PolicyDocument | None = None
    status: SimulationStatus = SimulationStatus.PENDING
    result: SimulationResult | None = None
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def raise_for_status(self) -> None:
        """Raise SimulationFailed if the simulation ended in FAILED."""
        if self.status is SimulationStatus.FAILED:
            raise SimulationFailed(self.error or "Simulation failed")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "policyId": self.policy.policy_id,
            "policyName": self.policy.name,
            "policyType": self.policy.policy_type.value,
            "clusterId": self.cluster_id,
            "startTime": self.start_time,
            "endTime": self.end_time,
            "status": self.status.value,
            "error": self.error,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "result": self.result.to_dict() if self.result is not None else None,
        }
