"""Tests for batch simulation, aggregation, export and node merging."""

from __future__ import annotations

import json
import threading

import pytest
import yaml

from policyhub.errors import EvaluationError, InvalidYAML, SimulationCancelled
from policyhub.simulation.batch import (
    simulate,
    simulate_flows,
    simulate_processes,
    simulate_tracing_policy,
    verdict_changed,
)
from policyhub.simulation.export import (
    CSV_COLUMNS,
    read_csv,
    safe_integers,
    to_csv,
    to_json,
)
from policyhub.simulation.models import FlowSimulationResult
from policyhub.simulation.nodes import merge_node_results, node_breakdown
from policyhub.simulation.records import (
    FlowRecord,
    ProcessSummaryRecord,
    coerce_flow,
)


@pytest.fixture
def flows(fixtures_dir) -> list[dict]:
    return json.loads((fixtures_dir / "flows.json").read_text())


@pytest.fixture
def processes(fixtures_dir) -> list[dict]:
    return yaml.safe_load((fixtures_dir / "processes.yaml").read_text())


def _many_flows(n: int) -> list[dict]:
    return [
        {
            "srcNamespace": f"ns-{i % 4}",
            "srcLabels": {"app": "backend" if i % 3 else "batch"},
            "dstNamespace": "default",
            "dstLabels": {"app": "frontend"},
            "dstPort": 8080 if i % 5 else 443,
            "protocol": "TCP",
            "verdict": "FORWARDED" if i % 2 else "DROPPED",
            "count": i % 7 + 1,
        }
        for i in range(n)
    ]


class TestVerdictChanged:
    def test_allowed_to_denied(self):
        assert verdict_changed("ALLOWED", "DENIED")

    def test_dropped_to_allowed(self):
        assert verdict_changed("DROPPED", "ALLOWED")

    def test_dropped_to_denied_is_not_a_change(self):
        assert not verdict_changed("DROPPED", "DENIED")

    def test_no_match_never_changes(self):
        assert not verdict_changed("ALLOWED", "NO_MATCH")
        assert not verdict_changed("DENIED", "NO_MATCH")

    def test_unknown_original(self):
        assert not verdict_changed(None, "DENIED")


class TestSimulateFlows:
    def test_counts_are_flow_weighted(self, frontend_policy, flows):
        result = simulate_flows(frontend_policy, flows)

        assert result.policy_name == "frontend-from-backend"
        assert result.total_records == 3
        assert result.total_flows == 60
        assert result.allowed_count == 50
        assert result.denied_count == 7
        assert result.no_match_count == 3
        assert result.would_change_count == 7
        assert result.no_change_count == 53
        assert result.errors == ()

    def test_namespace_breakdown(self, frontend_policy, flows):
        result = simulate_flows(frontend_policy, flows)
        default = result.breakdown_by_namespace["default"]
        assert default.total_flows == 57
        assert default.allowed_count == 50
        assert default.would_deny == 7
        assert default.would_allow == 0
        monitoring = result.breakdown_by_namespace["monitoring"]
        assert monitoring.no_match_count == 3
        assert monitoring.no_change == 3

    def test_verdict_breakdown(self, frontend_policy, flows):
        result = simulate_flows(frontend_policy, flows)
        assert result.breakdown_by_verdict.allowed_to_allowed == 50
        assert result.breakdown_by_verdict.allowed_to_denied == 7
        assert result.breakdown_by_verdict.denied_to_allowed == 0

    def test_samples_are_bucketed_by_verdict(self, frontend_policy, flows):
        result = simulate_flows(frontend_policy, flows)
        assert set(result.samples) == {"ALLOWED", "DENIED", "NO_MATCH"}
        denied = result.samples["DENIED"][0]
        assert denied.dst_port == 9090
        assert denied.verdict_changed
        assert denied.match_reason == "No matching ingress rule, default deny"

    def test_sample_limit(self, frontend_policy):
        result = simulate_flows(frontend_policy, _many_flows(50), sample_limit=2)
        assert all(len(bucket) <= 2 for bucket in result.samples.values())
        assert result.total_records == 50

    def test_counts_are_consistent(self, frontend_policy):
        result = simulate_flows(frontend_policy, _many_flows(200))
        assert (
            result.allowed_count + result.denied_count + result.no_match_count
            == result.total_flows
        )
        assert result.would_change_count + result.no_change_count == result.total_flows
        assert (
            sum(i.total_flows for i in result.breakdown_by_namespace.values())
            == result.total_flows
        )

    def test_malformed_records_are_collected(self, frontend_policy, flows):
        records = flows + [{"dstPort": "http"}, "not a mapping"]
        result = simulate_flows(frontend_policy, records)
        assert result.total_records == 3
        assert len(result.errors) == 2
        assert result.errors[0] == "record 3: dstPort must be an integer, got 'http'"
        assert result.errors[1].startswith("record 4:")

    def test_bad_timestamp_is_collected(self, frontend_policy, flows):
        records = [flows[0], dict(flows[0], timestamp="yesterday")]
        result = simulate_flows(frontend_policy, records)
        assert result.allowed_count == 50
        assert len(result.errors) == 1
        assert result.errors[0].startswith(
            "record 1: timestamp must be epoch seconds or ISO-8601"
        )

    def test_iso_timestamps_are_accepted(self, frontend_policy, flows):
        records = [flows[0], dict(flows[0], timestamp="2024-05-01T10:00:00Z")]
        result = simulate_flows(frontend_policy, records)
        assert result.allowed_count == 100
        assert result.errors == ()

    def test_fractional_numbers_are_collected(self, frontend_policy, flows):
        records = [
            flows[0],
            dict(flows[0], dstPort=8080.9),
            dict(flows[0], count=2.5),
            dict(flows[0], dstPort=8080.0),
        ]
        result = simulate_flows(frontend_policy, records)
        assert result.allowed_count == 100
        assert result.errors == (
            "record 1: dstPort must be an integer, got 8080.9",
            "record 2: count must be an integer, got 2.5",
        )

    def test_flow_record_instances_are_checked(self, frontend_policy, flows):
        bad = FlowRecord(dst_namespace="default", dst_port=None)
        result = simulate_flows(frontend_policy, [flows[0], bad])
        assert result.allowed_count == 50
        assert result.errors == ("record 1: dstPort must be an integer, got None",)

    def test_baseline_replaces_observed_verdicts(self, frontend_policy, flows):
        result = simulate_flows(frontend_policy, flows, baseline=frontend_policy)
        assert result.would_change_count == 0
        assert result.breakdown_by_verdict.denied_to_denied == 7

    def test_chunking_and_workers_do_not_change_the_result(self, frontend_policy):
        records = _many_flows(500)
        serial = simulate_flows(frontend_policy, records)
        chunked = simulate_flows(frontend_policy, records, chunk_size=7)
        threaded = simulate_flows(frontend_policy, records, chunk_size=13, workers=4)
        assert chunked.to_dict() == serial.to_dict()
        assert threaded.to_dict() == serial.to_dict()

    def test_cancel_stops_evaluation(self, frontend_policy, flows):
        event = threading.Event()
        event.set()
        with pytest.raises(SimulationCancelled):
            simulate_flows(frontend_policy, flows, cancel_event=event)

    def test_generators_are_accepted(self, frontend_policy, flows):
        result = simulate_flows(frontend_policy, (f for f in flows), chunk_size=1)
        assert result.total_flows == 60


class TestSimulateProcesses:
    def test_block_bash(self, block_bash_policy, processes):
        result = simulate_processes(block_bash_policy, processes)

        assert result.policy_namespace == "prod"
        assert result.total_processes == 3
        assert result.total_execs == 24
        assert result.would_block_count == 1
        assert result.would_block_execs == 10
        assert result.would_allow_count == 1
        assert result.would_allow_execs == 4
        assert result.no_match_count == 1
        assert result.no_match_execs == 10
        blocked = result.sample_blocked_processes[0]
        assert blocked.binary == "/bin/bash"
        assert blocked.action == "Sigkill"
        assert result.sample_unmatched_processes[0].namespace == "staging"

    def test_namespace_breakdown(self, block_bash_policy, processes):
        result = simulate_processes(block_bash_policy, processes)
        prod = result.breakdown_by_namespace["prod"]
        assert prod.total_processes == 2
        assert prod.blocked_execs == 10
        assert prod.allowed_execs == 4

    def test_record_without_binary_is_collected(self, block_bash_policy):
        result = simulate_processes(block_bash_policy, [{"namespace": "prod"}])
        assert result.total_processes == 0
        assert result.errors == ("record 0: process record has no binary path",)

    def test_malformed_record_instance_is_collected(self, block_bash_policy, processes):
        bad = ProcessSummaryRecord(
            namespace="prod", binary="/bin/bash", exec_count=None
        )
        result = simulate_processes(block_bash_policy, [*processes, bad])
        assert result.total_processes == 3
        assert result.would_block_execs == 10
        assert len(result.errors) == 1
        assert result.errors[0] == "record 3: execCount must be an integer, got None"

    def test_simulate_tracing_policy_parses_first(self, block_bash_yaml, processes):
        result = simulate_tracing_policy(block_bash_yaml, processes)
        assert result.would_block_count == 1
        with pytest.raises(InvalidYAML):
            simulate_tracing_policy("", processes)


def test_simulate_dispatches_on_policy_kind(
    frontend_policy, block_bash_policy, flows, processes
):
    assert simulate(frontend_policy, flows).to_dict()["kind"] == "network"
    assert simulate(block_bash_policy, processes).to_dict()["kind"] == "process"
    with pytest.raises(TypeError):
        simulate(frontend_policy, flows, baseline=block_bash_policy)


class TestExport:
    def test_json_is_camel_case(self, frontend_policy, flows):
        data = json.loads(to_json(simulate_flows(frontend_policy, flows)))
        assert data["totalFlowsAnalyzed"] == 60
        assert data["breakdownByNamespace"]["default"]["wouldDeny"] == 7
        assert data["breakdownByVerdict"]["allowedToDenied"] == 7
        assert len(data["details"]) == 3

    def test_large_integers_become_strings(self):
        big = 2**60
        assert safe_integers({"a": big, "b": [1, big], "c": True}) == {
            "a": str(big),
            "b": [1, str(big)],
            "c": True,
        }
        assert json.loads(to_json({"n": 2**53 - 1}))["n"] == 2**53 - 1

    def test_csv_round_trip_with_quotes(self):
        sample = FlowSimulationResult(
            src_namespace="default",
            dst_namespace="prod",
            dst_port=443,
            protocol="TCP",
            simulated_verdict="DENIED",
            original_verdict="ALLOWED",
            verdict_changed=True,
            match_reason='Rule "egress[0]", default deny',
        )
        text = to_csv([sample])
        assert text.splitlines()[0] == ",".join(CSV_COLUMNS)
        assert '"Rule ""egress[0]"", default deny"' in text
        rows = read_csv(text)
        assert rows[0]["matchReason"] == 'Rule "egress[0]", default deny'
        assert rows[0]["verdictChanged"] == "true"
        assert rows[0]["srcPodName"] == ""

    def test_read_csv_rejects_foreign_header(self):
        with pytest.raises(ValueError, match="Unexpected CSV header"):
            read_csv("a,b\n1,2\n")


class TestNodeMerge:
    def test_merge_sums_counts(self, frontend_policy, flows):
        node_a = simulate_flows(frontend_policy, flows)
        node_b = simulate_flows(frontend_policy, flows[:1] + [{"dstPort": "x"}])
        merged = merge_node_results({"node-a": node_a, "node-b": node_b})

        assert merged.total_flows == 110
        assert merged.allowed_count == 100
        assert merged.breakdown_by_namespace["default"].total_flows == 107
        assert merged.errors == (
            "[node-b] record 1: dstPort must be an integer, got 'x'",
        )
        assert merged.policy_name == "frontend-from-backend"

    def test_merge_matches_a_single_run(self, frontend_policy):
        records = _many_flows(90)
        whole = simulate_flows(frontend_policy, records)
        parts = {
            "a": simulate_flows(frontend_policy, records[:30]),
            "b": simulate_flows(frontend_policy, records[30:]),
        }
        merged = merge_node_results(parts)
        assert merged.total_flows == whole.total_flows
        assert merged.would_change_count == whole.would_change_count
        assert merged.breakdown_by_verdict == whole.breakdown_by_verdict

    def test_merge_requires_results(self):
        with pytest.raises(ValueError):
            merge_node_results({})

    def test_node_breakdown(self, frontend_policy, flows):
        stats = node_breakdown({"n1": simulate_flows(frontend_policy, flows)})
        assert stats == {"n1": {"flowsAnalyzed": 60, "flowsChanged": 7, "errors": 0}}


class TestCoerceFlow:
    def test_iso_timestamp_is_utc_epoch(self):
        flow = coerce_flow({"timestamp": "2024-05-01T10:00:00Z"})
        assert flow.timestamp == 1714557600.0

    def test_naive_iso_timestamp_is_utc(self):
        flow = coerce_flow({"timestamp": "2024-05-01T10:00:00"})
        assert flow.timestamp == 1714557600.0

    def test_numeric_string_timestamp(self):
        assert coerce_flow({"timestamp": "1714557600.5"}).timestamp == 1714557600.5

    @pytest.mark.parametrize("value", ["yesterday", "nan", float("inf")])
    def test_unusable_timestamps(self, value):
        with pytest.raises(EvaluationError, match="timestamp"):
            coerce_flow({"timestamp": value}, 7)
