"""Tests for the simulation engine lifecycle and record sources."""

from __future__ import annotations

import json
import math

import pytest
import yaml

from policyhub.config import PolicyHubConfig
from policyhub.errors import InvalidYAML, PreconditionFailed, SimulationFailed
from policyhub.policy.models import PolicyDocument, PolicyType
from policyhub.simulation.engine import SimulationEngine
from policyhub.simulation.models import (
    NetworkSimulationResult,
    ProcessSimulationResult,
    SimulationStatus,
)
from policyhub.simulation.sources import InMemorySource

ROUTE_YAML = """
apiVersion: gateway.networking.k8s.io/v1
kind: HTTPRoute
metadata:
  name: web
spec:
  parentRefs: [{name: gw}]
"""


@pytest.fixture
def flows(fixtures_dir) -> list[dict]:
    return json.loads((fixtures_dir / "flows.json").read_text())


@pytest.fixture
def frontend_doc(frontend_policy_yaml) -> PolicyDocument:
    return PolicyDocument(
        frontend_policy_yaml, PolicyType.CILIUM_NETWORK, policy_id="p1"
    )


@pytest.fixture
def source(flows, frontend_doc, block_bash_yaml, fixtures_dir) -> InMemorySource:
    src = InMemorySource()
    src.add_flows("c1", flows)
    src.add_processes(
        "c1", yaml.safe_load((fixtures_dir / "processes.yaml").read_text())
    )
    src.add_policy(frontend_doc)
    src.add_policy(PolicyDocument(block_bash_yaml, PolicyType.TETRAGON, policy_id="p2"))
    return src


class _FailingSource(InMemorySource):
    def fetch_flow_records(self, cluster_id, start, end):
        raise ConnectionError("flow store unavailable")


class TestLifecycle:
    def test_create_is_pending(self, frontend_doc):
        engine = SimulationEngine()
        sim = engine.create(frontend_doc, "c1", 0.0, 10.0)
        assert sim.status is SimulationStatus.PENDING
        assert sim.result is None
        assert engine.get(sim.id) is sim

    def test_run_completes(self, source, frontend_doc):
        engine = SimulationEngine(source)
        sim = engine.run_simulation(frontend_doc, "c1", 0.0, math.inf)

        assert sim.status is SimulationStatus.COMPLETED
        assert isinstance(sim.result, NetworkSimulationResult)
        assert sim.result.total_flows == 60
        assert sim.started_at is not None
        assert sim.completed_at >= sim.started_at
        sim.raise_for_status()

    def test_run_for_stored_policy(self, source):
        engine = SimulationEngine(source)
        sim = engine.create_for_policy("p2", "c1", 0.0, math.inf)
        engine.run(sim.id)
        assert isinstance(sim.result, ProcessSimulationResult)
        assert sim.result.would_block_execs == 10
        assert sim.to_dict()["policyId"] == "p2"

    def test_unknown_stored_policy(self, source):
        with pytest.raises(LookupError):
            SimulationEngine(source).create_for_policy("missing", "c1", 0.0, 1.0)

    def test_execute_with_caller_records(self, frontend_doc, flows):
        engine = SimulationEngine()
        sim = engine.create(frontend_doc, "local", 0.0, math.inf)
        engine.execute(sim.id, flows[:1])
        assert sim.result.allowed_count == 50

    def test_malformed_record_does_not_fail_the_run(self, frontend_doc, flows):
        engine = SimulationEngine()
        sim = engine.create(frontend_doc, "local", 0.0, math.inf)
        engine.execute(sim.id, [flows[0], dict(flows[0], timestamp="yesterday")])
        assert sim.status is SimulationStatus.COMPLETED
        assert sim.result.allowed_count == 50
        assert len(sim.result.errors) == 1

    def test_source_failure_marks_failed(self, frontend_doc):
        engine = SimulationEngine(_FailingSource())
        sim = engine.run_simulation(frontend_doc, "c1", 0.0, 1.0)
        assert sim.status is SimulationStatus.FAILED
        assert sim.error == "flow store unavailable"
        assert sim.result is None
        with pytest.raises(SimulationFailed, match="unavailable"):
            sim.raise_for_status()

    def test_terminal_simulation_cannot_run_again(self, source, frontend_doc):
        engine = SimulationEngine(source)
        sim = engine.run_simulation(frontend_doc, "c1", 0.0, math.inf)
        with pytest.raises(PreconditionFailed):
            engine.run(sim.id)
        assert sim.status is SimulationStatus.COMPLETED

    def test_run_without_source(self, frontend_doc):
        engine = SimulationEngine()
        sim = engine.create(frontend_doc, "c1", 0.0, 1.0)
        with pytest.raises(PreconditionFailed, match="No record source"):
            engine.run(sim.id)


class TestCreateValidation:
    def test_parse_errors_fail_fast(self):
        engine = SimulationEngine()
        with pytest.raises(InvalidYAML):
            engine.create(PolicyDocument("", PolicyType.CILIUM_NETWORK), "c1", 0, 1)
        assert engine.list() == []

    def test_gateway_resources_cannot_be_simulated(self):
        doc = PolicyDocument(ROUTE_YAML, PolicyType.GATEWAY_HTTPROUTE)
        with pytest.raises(PreconditionFailed, match="HTTPRoute"):
            SimulationEngine().create(doc, "c1", 0.0, 1.0)

    def test_baseline_must_be_network_policy(self, frontend_doc, block_bash_yaml):
        baseline = PolicyDocument(block_bash_yaml, PolicyType.TETRAGON)
        with pytest.raises(PreconditionFailed, match="baseline"):
            SimulationEngine().create(frontend_doc, "c1", 0.0, 1.0, baseline=baseline)

    def test_window_must_not_be_reversed(self, frontend_doc):
        with pytest.raises(PreconditionFailed, match="window"):
            SimulationEngine().create(frontend_doc, "c1", 10.0, 1.0)


class TestCancel:
    def test_cancel_pending(self, frontend_doc):
        finished = []
        engine = SimulationEngine(on_finish=finished.append)
        sim = engine.create(frontend_doc, "c1", 0.0, 1.0)
        engine.cancel(sim.id)
        assert sim.status is SimulationStatus.CANCELLED
        assert finished == [sim]
        with pytest.raises(PreconditionFailed):
            engine.run(sim.id)

    def test_cancel_completed_is_rejected(self, source, frontend_doc):
        engine = SimulationEngine(source)
        sim = engine.run_simulation(frontend_doc, "c1", 0.0, math.inf)
        with pytest.raises(PreconditionFailed, match="not pending or running"):
            engine.cancel(sim.id)
        assert sim.status is SimulationStatus.COMPLETED

    def test_cancel_while_running_discards_result(self, frontend_doc, flows):
        engine = SimulationEngine()
        sim = engine.create(frontend_doc, "c1", 0.0, math.inf)

        def records():
            yield flows[0]
            engine.cancel(sim.id)
            yield flows[1]

        engine.execute(sim.id, records())
        assert sim.status is SimulationStatus.CANCELLED
        assert sim.result is None


def test_list_and_stats(source, frontend_doc, block_bash_yaml):
    engine = SimulationEngine(source, config=PolicyHubConfig(sample_limit=1))
    net = engine.run_simulation(frontend_doc, "c1", 0.0, math.inf)
    proc = engine.run_simulation(
        PolicyDocument(block_bash_yaml, PolicyType.TETRAGON), "c1", 0.0, math.inf
    )
    pending = engine.create(frontend_doc, "c1", 0.0, 1.0)

    assert {s.id for s in engine.list()} == {net.id, proc.id, pending.id}
    assert engine.list(SimulationStatus.PENDING) == [pending]
    assert all(len(b) <= 1 for b in net.result.samples.values())

    stats = engine.stats()
    assert stats["total"] == 3
    assert stats["completed"] == 2
    assert stats["flowsAnalyzed"] == 60
    assert stats["flowsChanged"] == 7
    assert stats["processesBlocked"] == 1


def test_unknown_simulation():
    with pytest.raises(LookupError):
        SimulationEngine().get("nope")


def test_in_memory_source_filters_by_window():
    src = InMemorySource()
    src.add_flows(
        "c1",
        [
            {"dstPort": 80, "timestamp": 100},
            {"dstPort": 81, "timestamp": 200},
            {"dstPort": 82},
        ],
    )
    ports = [f.dst_port for f in src.fetch_flow_records("c1", 150, 250)]
    assert ports == [81, 82]
    assert src.fetch_flow_records("other", 0, 1) == []
