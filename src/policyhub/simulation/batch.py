"""Run a parsed policy over a batch of historical records.

Records are evaluated in chunks; each chunk folds into an immutable
accumulator and the chunk accumulators are merged at the end. Per-record
``EvaluationError``s are collected into the result, anything else propagates.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections.abc import Callable, Iterable, Iterator
from concurrent.futures import ThreadPoolExecutor
from functools import reduce

from policyhub.errors import EvaluationError, SimulationCancelled
from policyhub.policy.evaluator import NetworkPolicyMatcher, Verdict
from policyhub.policy.models import (
    ParsedNetworkPolicy,
    ParsedPolicy,
    ParsedTracingPolicy,
    PolicyType,
)
from policyhub.policy.parser import parse_policy
from policyhub.policy.tracing import TracingPolicyEvaluator
from policyhub.simulation.aggregate import NetworkAccumulator, ProcessAccumulator
from policyhub.simulation.models import (
    FlowSimulationResult,
    NetworkSimulationResult,
    ProcessSample,
    ProcessSimulationResult,
    SimulationResult,
)
from policyhub.simulation.records import (
    FlowRecord,
    coerce_flow,
    coerce_process,
)

logger = logging.getLogger(__name__)


def verdict_changed(original: str | None, simulated: str) -> bool:
    """Whether the simulated verdict flips allowed-ness of the original one.

    NO_MATCH and records without an original verdict never count as a change.
    DROPPED and DENIED are both "not allowed".
    """
    if original is None or simulated == Verdict.NO_MATCH.value:
        return False
    return (original == "ALLOWED") != (simulated == "ALLOWED")


def evaluate_flow(
    matcher: NetworkPolicyMatcher,
    flow: FlowRecord,
    baseline: NetworkPolicyMatcher | None = None,
) -> FlowSimulationResult:
    """Evaluate one flow and describe it as a sample."""
    match = matcher.match(flow)
    original = flow.observed_verdict
    if baseline is not None:
        current = baseline.match(flow)
        if current.verdict is not Verdict.NO_MATCH:
            original = current.verdict.value

    simulated = match.verdict.value
    return FlowSimulationResult(
        src_namespace=flow.src_namespace,
        src_pod_name=flow.src_pod_name,
        dst_namespace=flow.dst_namespace,
        dst_pod_name=flow.dst_pod_name,
        dst_port=flow.dst_port,
        protocol=flow.protocol,
        count=flow.count,
        original_verdict=original,
        simulated_verdict=simulated,
        verdict_changed=verdict_changed(original, simulated),
        matched_rule=match.matched_rule,
        match_reason=match.reason,
        timestamp=flow.timestamp,
    )


def _chunks(records: Iterable, size: int) -> Iterator[list[tuple[int, object]]]:
    it = enumerate(records)
    while True:
        chunk = list(itertools.islice(it, size))
        if not chunk:
            return
        yield chunk


def _fold_chunks(
    records: Iterable,
    fold: Callable[[list], object],
    empty,
    chunk_size: int,
    workers: int,
):
    chunks = _chunks(records, max(chunk_size, 1))
    if workers <= 1:
        partials = map(fold, chunks)
        return reduce(lambda a, b: a.merge(b), partials, empty)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        # map() yields in submission order, so samples stay deterministic
        return reduce(lambda a, b: a.merge(b), pool.map(fold, chunks), empty)


def _check_cancel(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise SimulationCancelled("Simulation was cancelled")


def simulate_flows(
    policy: ParsedNetworkPolicy,
    records: Iterable,
    *,
    baseline: ParsedNetworkPolicy | None = None,
    sample_limit: int = 5,
    chunk_size: int = 1000,
    workers: int = 1,
    cancel_event: threading.Event | None = None,
) -> NetworkSimulationResult:
    """Evaluate flow records (FlowRecord or mappings) against a network policy."""
    matcher = NetworkPolicyMatcher(policy)
    baseline_matcher = NetworkPolicyMatcher(baseline) if baseline else None
    empty = NetworkAccumulator(sample_limit=sample_limit)

    def fold(chunk: list) -> NetworkAccumulator:
        acc = empty
        for index, raw in chunk:
            _check_cancel(cancel_event)
            try:
                flow = coerce_flow(raw, index)
                sample = evaluate_flow(matcher, flow, baseline_matcher)
            except EvaluationError as exc:
                if exc.index is None:
                    exc.index = index
                logger.warning("Skipping flow record: %s", exc)
                acc = acc.add_error(str(exc))
                continue
            acc = acc.add(sample)
        return acc

    acc = _fold_chunks(records, fold, empty, chunk_size, workers)
    return acc.to_result(policy.name)


def simulate_processes(
    policy: ParsedTracingPolicy,
    records: Iterable,
    *,
    sample_limit: int = 5,
    chunk_size: int = 1000,
    workers: int = 1,
    cancel_event: threading.Event | None = None,
) -> ProcessSimulationResult:
    """Evaluate process summaries against a tracing policy."""
    evaluator = TracingPolicyEvaluator(policy)
    empty = ProcessAccumulator(sample_limit=sample_limit)

    def fold(chunk: list) -> ProcessAccumulator:
        acc = empty
        for index, raw in chunk:
            _check_cancel(cancel_event)
            try:
                record = coerce_process(raw, index)
                match = evaluator.evaluate(record)
            except EvaluationError as exc:
                if exc.index is None:
                    exc.index = index
                logger.warning("Skipping process record: %s", exc)
                acc = acc.add_error(str(exc))
                continue
            acc = acc.add(
                ProcessSample(
                    process_id=record.id,
                    namespace=record.namespace,
                    pod_name=record.pod_name,
                    binary=record.binary,
                    exec_count=record.exec_count,
                    verdict=match.verdict.value,
                    blocked_execs=match.blocked_execs,
                    matched_selector=match.matched_selector,
                    match_reason=match.reason,
                    action=match.action,
                )
            )
        return acc

    acc = _fold_chunks(records, fold, empty, chunk_size, workers)
    return acc.to_result(policy.name, policy.namespace)


def simulate_tracing_policy(
    policy_yaml: str, records: Iterable, sample_limit: int = 5
) -> ProcessSimulationResult:
    """Parse a TracingPolicy and evaluate process summaries against it.

    Parse errors raise before any record is looked at.
    """
    policy = parse_policy(policy_yaml, PolicyType.TETRAGON)
    return simulate_processes(policy, records, sample_limit=sample_limit)


def simulate(
    policy: ParsedPolicy,
    records: Iterable,
    *,
    baseline: ParsedPolicy | None = None,
    sample_limit: int = 5,
    chunk_size: int = 1000,
    workers: int = 1,
    cancel_event: threading.Event | None = None,
) -> SimulationResult:
    """Dispatch to the flow or process simulation for the policy's kind."""
    if isinstance(policy, ParsedNetworkPolicy):
        if baseline is not None and not isinstance(baseline, ParsedNetworkPolicy):
            raise TypeError("baseline must be a network policy")
        return simulate_flows(
            policy,
            records,
            baseline=baseline,
            sample_limit=sample_limit,
            chunk_size=chunk_size,
            workers=workers,
            cancel_event=cancel_event,
        )
    if isinstance(policy, ParsedTracingPolicy):
        return simulate_processes(
            policy,
            records,
            sample_limit=sample_limit,
            chunk_size=chunk_size,
            workers=workers,
            cancel_event=cancel_event,
        )
    raise TypeError(f"{policy.kind} policies cannot be simulated against history")
