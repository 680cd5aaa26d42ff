"""Simulation engine: orchestrates parse, fetch, evaluate, and lifecycle."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable

from policyhub.config import PolicyHubConfig
from policyhub.errors import PreconditionFailed, SimulationCancelled
from policyhub.policy.models import (
    ParsedGatewayRoute,
    ParsedNetworkPolicy,
    ParsedPolicy,
    PolicyDocument,
)
from policyhub.policy.parser import parse_document
from policyhub.simulation.batch import simulate
from policyhub.simulation.models import (
    NetworkSimulationResult,
    ProcessSimulationResult,
    Simulation,
    SimulationResult,
    SimulationStatus,
)
from policyhub.simulation.sources import RecordSource

logger = logging.getLogger(__name__)


class SimulationEngine:
    """Runs what-if simulations and tracks their lifecycle.

    PENDING -> RUNNING -> COMPLETED | FAILED | CANCELLED. A simulation that
    reached a terminal state is never modified again.
    """

    def __init__(
        self,
        source: RecordSource | None = None,
        config: PolicyHubConfig | None = None,
        on_finish: Callable[[Simulation], None] | None = None,
    ) -> None:
        self._source = source
        self._config = config or PolicyHubConfig()
        self._on_finish = on_finish
        self._simulations: dict[str, Simulation] = {}
        self._parsed: dict[str, tuple[ParsedPolicy, ParsedPolicy | None]] = {}
        self._cancel_events: dict[str, threading.Event] = {}
        self._lock = threading.Lock()

    # --- creation ---------------------------------------------------------

    def create(
        self,
        document: PolicyDocument,
        cluster_id: str,
        start: float,
        end: float,
        baseline: PolicyDocument | None = None,
    ) -> Simulation:
        """Parse the policy and register a PENDING simulation.

        Parse errors propagate; nothing is registered in that case.
        """
        parsed = parse_document(document)
        if isinstance(parsed, ParsedGatewayRoute):
            raise PreconditionFailed(
                f"{parsed.kind} resources cannot be simulated against traffic history"
            )
        parsed_baseline = parse_document(baseline) if baseline is not None else None
        if parsed_baseline is not None and not (
            isinstance(parsed, ParsedNetworkPolicy)
            and isinstance(parsed_baseline, ParsedNetworkPolicy)
        ):
            raise PreconditionFailed(
                "A baseline is only supported for network policies"
            )
        if end < start:
            raise PreconditionFailed("Simulation window ends before it starts")

        sim = Simulation(
            policy=document,
            cluster_id=cluster_id,
            start_time=start,
            end_time=end,
            baseline=baseline,
        )
        with self._lock:
            self._simulations[sim.id] = sim
            self._parsed[sim.id] = (parsed, parsed_baseline)
            self._cancel_events[sim.id] = threading.Event()
        logger.info(
            "Created simulation %s for policy '%s' on cluster %s",
            sim.id,
            parsed.name,
            cluster_id,
        )
        return sim

    def create_for_policy(
        self,
        policy_id: str,
        cluster_id: str,
        start: float,
        end: float,
        baseline_id: str | None = None,
    ) -> Simulation:
        """Create a simulation for a stored policy, loading its text from the source."""
        source = self._require_source()
        content, policy_type = source.fetch_policy_content(policy_id)
        document = PolicyDocument(content, policy_type, policy_id=policy_id)
        baseline = None
        if baseline_id is not None:
            b_content, b_type = source.fetch_policy_content(baseline_id)
            baseline = PolicyDocument(b_content, b_type, policy_id=baseline_id)
        return self.create(document, cluster_id, start, end, baseline=baseline)

    # --- running ----------------------------------------------------------

    def run(self, simulation_id: str) -> Simulation:
        """Fetch the window's records from the source and evaluate them."""
        sim = self.get(simulation_id)
        parsed, _ = self._parsed[sim.id]
        source = self._require_source()

        def fetch() -> Iterable:
            if isinstance(parsed, ParsedNetworkPolicy):
                return source.fetch_flow_records(
                    sim.cluster_id, sim.start_time, sim.end_time
                )
            return source.fetch_process_summaries(
                sim.cluster_id, sim.start_time, sim.end_time
            )

        return self._run(sim, fetch)

    def execute(self, simulation_id: str, records: Iterable) -> Simulation:
        """Evaluate records that were fetched by the caller."""
        sim = self.get(simulation_id)
        return self._run(sim, lambda: records)

    def run_simulation(
        self,
        document: PolicyDocument,
        cluster_id: str,
        start: float,
        end: float,
        baseline: PolicyDocument | None = None,
    ) -> Simulation:
        """Create and run in one call."""
        sim = self.create(document, cluster_id, start, end, baseline=baseline)
        return self.run(sim.id)

    def _run(self, sim: Simulation, fetch: Callable[[], Iterable]) -> Simulation:
        self._start(sim)
        parsed, baseline = self._parsed[sim.id]
        cancel_event = self._cancel_events[sim.id]
        started = time.monotonic()
        try:
            records = fetch()
            result = simulate(
                parsed,
                records,
                baseline=baseline,
                sample_limit=self._config.sample_limit,
                chunk_size=self._config.chunk_size,
                workers=self._config.workers,
                cancel_event=cancel_event,
            )
        except SimulationCancelled:
            logger.info("Simulation %s stopped after cancellation", sim.id)
            self._finish(sim, SimulationStatus.CANCELLED)
            return sim
        except Exception as exc:
            logger.warning("Simulation %s failed: %s", sim.id, exc)
            self._finish(sim, SimulationStatus.FAILED, error=str(exc) or repr(exc))
            return sim

        if cancel_event.is_set():
            self._finish(sim, SimulationStatus.CANCELLED)
            return sim

        logger.info(
            "Simulation %s completed in %.2fs (%s)",
            sim.id,
            time.monotonic() - started,
            _describe(result),
        )
        self._finish(sim, SimulationStatus.COMPLETED, result=result)
        return sim

    # --- lifecycle --------------------------------------------------------

    def cancel(self, simulation_id: str) -> Simulation:
        """Cancel a PENDING or RUNNING simulation.

        A running evaluation notices between records and stops without
        aggregating. Raises PreconditionFailed from any other state.
        """
        sim = self.get(simulation_id)
        with self._lock:
            if sim.status not in (SimulationStatus.PENDING, SimulationStatus.RUNNING):
                raise PreconditionFailed(
                    "Cannot cancel a simulation that is not pending or running"
                )
            self._cancel_events[sim.id].set()
            sim.status = SimulationStatus.CANCELLED
            sim.completed_at = time.time()
        logger.info("Cancelled simulation %s", sim.id)
        self._notify(sim)
        return sim

    def get(self, simulation_id: str) -> Simulation:
        try:
            return self._simulations[simulation_id]
        except KeyError:
            raise LookupError(f"Unknown simulation: {simulation_id}") from None

    def list(self, status: SimulationStatus | None = None) -> list[Simulation]:
        sims = sorted(
            self._simulations.values(), key=lambda s: s.created_at, reverse=True
        )
        if status is None:
            return sims
        return [s for s in sims if s.status is status]

    def stats(self) -> dict:
        """Counts across every simulation this engine has seen."""
        sims = list(self._simulations.values())
        stats = {
            "total": len(sims),
            "running": sum(1 for s in sims if s.status is SimulationStatus.RUNNING),
            "completed": sum(1 for s in sims if s.status is SimulationStatus.COMPLETED),
            "failed": sum(1 for s in sims if s.status is SimulationStatus.FAILED),
            "cancelled": sum(1 for s in sims if s.status is SimulationStatus.CANCELLED),
            "flowsAnalyzed": 0,
            "flowsAllowed": 0,
            "flowsDenied": 0,
            "flowsChanged": 0,
            "processesAnalyzed": 0,
            "processesBlocked": 0,
        }
        for sim in sims:
            if isinstance(sim.result, NetworkSimulationResult):
                stats["flowsAnalyzed"] += sim.result.total_flows
                stats["flowsAllowed"] += sim.result.allowed_count
                stats["flowsDenied"] += sim.result.denied_count
                stats["flowsChanged"] += sim.result.would_change_count
            elif isinstance(sim.result, ProcessSimulationResult):
                stats["processesAnalyzed"] += sim.result.total_processes
                stats["processesBlocked"] += sim.result.would_block_count
        return stats

    def _start(self, sim: Simulation) -> None:
        with self._lock:
            if sim.status is not SimulationStatus.PENDING:
                raise PreconditionFailed(
                    f"Cannot start a simulation in state {sim.status.value}"
                )
            sim.status = SimulationStatus.RUNNING
            sim.started_at = time.time()
        logger.info("Running simulation %s", sim.id)

    def _finish(
        self,
        sim: Simulation,
        status: SimulationStatus,
        result: SimulationResult | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            if sim.status.is_terminal:
                logger.debug(
                    "Simulation %s already %s, dropping %s",
                    sim.id,
                    sim.status.value,
                    status.value,
                )
                return
            sim.status = status
            sim.result = result
            sim.error = error
            sim.completed_at = time.time()
        self._notify(sim)

    def _notify(self, sim: Simulation) -> None:
        if self._on_finish:
            self._on_finish(sim)

    def _require_source(self) -> RecordSource:
        if self._source is None:
            raise PreconditionFailed("No record source configured")
        return self._source


def _describe(result: SimulationResult) -> str:
    if isinstance(result, NetworkSimulationResult):
        return (
            f"{result.total_flows} flows, {result.allowed_count} allowed, "
            f"{result.denied_count} denied, {result.would_change_count} changed"
        )
    return (
        f"{result.total_processes} processes, "
        f"{result.would_block_count} would block"
    )
