"""Combine partial simulation results reported by several collector nodes."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import replace
from functools import reduce

from policyhub.simulation.aggregate import NetworkAccumulator
from policyhub.simulation.models import NetworkSimulationResult


def merge_node_results(
    results: Mapping[str, NetworkSimulationResult], sample_limit: int = 5
) -> NetworkSimulationResult:
    """Sum per-node results into one. Errors are prefixed with the node name."""
    if not results:
        raise ValueError("No node results to merge")

    accumulators = []
    for node, result in sorted(results.items()):
        acc = NetworkAccumulator.from_result(result, sample_limit)
        accumulators.append(
            replace(acc, errors=tuple(f"[{node}] {e}" for e in result.errors))
        )

    merged = reduce(lambda a, b: a.merge(b), accumulators)
    policy_name = next(iter(results.values())).policy_name
    return merged.to_result(policy_name)


def node_breakdown(results: Mapping[str, NetworkSimulationResult]) -> dict[str, dict]:
    return {
        node: {
            "flowsAnalyzed": result.total_flows,
            "flowsChanged": result.would_change_count,
            "errors": len(result.errors),
        }
        for node, result in sorted(results.items())
    }
