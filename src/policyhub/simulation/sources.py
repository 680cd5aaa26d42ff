"""Record sources: where a simulation gets its history and policy text from."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Protocol

from policyhub.policy.models import PolicyDocument, PolicyType
from policyhub.simulation.records import (
    FlowRecord,
    ProcessSummaryRecord,
    coerce_flow,
    coerce_process,
)


class RecordSource(Protocol):
    """What the simulation engine needs from a data store."""

    def fetch_flow_records(
        self, cluster_id: str, start: float, end: float
    ) -> Iterable[FlowRecord | Mapping]: ...

    def fetch_process_summaries(
        self, cluster_id: str, start: float, end: float
    ) -> Iterable[ProcessSummaryRecord | Mapping]: ...

    def fetch_policy_content(self, policy_id: str) -> tuple[str, PolicyType]: ...


class InMemorySource:
    """A RecordSource over in-memory lists, keyed by cluster id.

    Records without a timestamp are always inside the window.
    """

    def __init__(self) -> None:
        self._flows: dict[str, list[FlowRecord]] = {}
        self._processes: dict[str, list[ProcessSummaryRecord]] = {}
        self._policies: dict[str, PolicyDocument] = {}

    def add_flows(
        self, cluster_id: str, records: Iterable[FlowRecord | Mapping]
    ) -> None:
        self._flows.setdefault(cluster_id, []).extend(coerce_flow(r) for r in records)

    def add_processes(
        self, cluster_id: str, records: Iterable[ProcessSummaryRecord | Mapping]
    ) -> None:
        self._processes.setdefault(cluster_id, []).extend(
            coerce_process(r) for r in records
        )

    def add_policy(self, document: PolicyDocument) -> None:
        self._policies[document.policy_id] = document

    def fetch_flow_records(
        self, cluster_id: str, start: float, end: float
    ) -> list[FlowRecord]:
        return [
            r
            for r in self._flows.get(cluster_id, [])
            if r.timestamp is None or start <= r.timestamp <= end
        ]

    def fetch_process_summaries(
        self, cluster_id: str, start: float, end: float
    ) -> list[ProcessSummaryRecord]:
        return list(self._processes.get(cluster_id, []))

    def fetch_policy_content(self, policy_id: str) -> tuple[str, PolicyType]:
        try:
            doc = self._policies[policy_id]
        except KeyError:
            raise LookupError(f"Unknown policy: {policy_id}") from None
        return doc.content, doc.policy_type
