"""Async bridge between the SQLite store and the synchronous core engines."""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

import aiosqlite

from policyhub.errors import EvaluationError, ParseError
from policyhub.policy.evaluator import NetworkPolicyMatcher, Verdict
from policyhub.policy.models import PolicyDocument, PolicyStatus
from policyhub.policy.parser import parse_policy
from policyhub.recommend.engine import PolicyMatch, RecommendationInputs
from policyhub.reporting.summary import (
    HOUR,
    ValidationReport,
    hour_bucket,
    summarize,
    summarize_flows,
)
from policyhub.simulation.engine import SimulationEngine
from policyhub.simulation.models import Simulation
from policyhub.simulation.records import FlowRecord, coerce_flow, coerce_process
from policyhub.storage.repos import (
    ClusterRepo,
    FlowRepo,
    MatchRepo,
    PolicyRepo,
    ProcessRepo,
    SimulationRepo,
    SummaryRepo,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IngestResult:
    stored: int = 0
    errors: tuple[str, ...] = field(default_factory=tuple)

    @property
    def skipped(self) -> int:
        return len(self.errors)


class HubStore:
    """High-level operations over one database connection."""

    def __init__(self, db: aiosqlite.Connection) -> None:
        self.clusters = ClusterRepo(db)
        self.policies = PolicyRepo(db)
        self.flows = FlowRepo(db)
        self.processes = ProcessRepo(db)
        self.summaries = SummaryRepo(db)
        self.matches = MatchRepo(db)
        self.simulations = SimulationRepo(db)

    # --- ingestion --------------------------------------------------------

    async def ingest_flows(
        self, cluster_id: str, raw: Iterable[Mapping]
    ) -> IngestResult:
        """Store flow records, record policy matches, and refresh hourly summaries.

        Malformed records are skipped and reported, the rest are stored.
        """
        records: list[FlowRecord] = []
        errors: list[str] = []
        for index, item in enumerate(raw):
            try:
                records.append(coerce_flow(item, index))
            except EvaluationError as exc:
                errors.append(str(exc))

        stored = await self.flows.add_many(cluster_id, records)
        await self.matches.add_many(await self._policy_matches(cluster_id, records))

        hours = [hour_bucket(r.timestamp) for r in records if r.timestamp is not None]
        if hours:
            await self.rebuild_summaries(cluster_id, min(hours), max(hours) + HOUR - 1)

        if errors:
            logger.warning("Skipped %d malformed flow records", len(errors))
        logger.info("Ingested %d flow records into cluster %s", stored, cluster_id)
        return IngestResult(stored=stored, errors=tuple(errors))

    async def ingest_processes(
        self,
        cluster_id: str,
        raw: Iterable[Mapping],
        window_start: float | None = None,
        window_end: float | None = None,
    ) -> IngestResult:
        records = []
        errors: list[str] = []
        for index, item in enumerate(raw):
            try:
                records.append(coerce_process(item, index))
            except EvaluationError as exc:
                errors.append(str(exc))
        stored = await self.processes.add_many(
            cluster_id, records, window_start, window_end
        )
        logger.info("Ingested %d process summaries into cluster %s", stored, cluster_id)
        return IngestResult(stored=stored, errors=tuple(errors))

    async def rebuild_summaries(self, cluster_id: str, start: float, end: float) -> int:
        """Recompute the hourly summaries covering [start, end] from stored flows."""
        flows = await self.flows.fetch(cluster_id, start, end)
        summaries = summarize_flows(cluster_id, flows)
        for summary in summaries:
            await self.summaries.save(summary)
        return len(summaries)

    async def _policy_matches(
        self, cluster_id: str, records: list[FlowRecord]
    ) -> list[PolicyMatch]:
        matchers = []
        for policy in await self.policies.list_by_clusters([cluster_id]):
            if policy.status is not PolicyStatus.DEPLOYED:
                continue
            if not policy.policy_type.is_network:
                continue
            try:
                parsed = parse_policy(policy.content, policy.policy_type)
                matchers.append(NetworkPolicyMatcher(parsed))
            except ParseError as exc:
                logger.debug("Deployed policy %s does not parse: %s", policy.id, exc)

        matches: dict[str, float] = {}
        for record in records:
            if record.timestamp is None:
                continue
            for matcher in matchers:
                try:
                    verdict = matcher.match(record).verdict
                except EvaluationError:
                    continue
                if verdict is not Verdict.NO_MATCH:
                    name = matcher.policy.name
                    last = matches.get(name, record.timestamp)
                    matches[name] = max(last, record.timestamp)
        return [PolicyMatch(cluster_id, name, ts) for name, ts in matches.items()]

    # --- reads ------------------------------------------------------------

    async def recommendation_inputs(
        self,
        organization_id: str | None = None,
        hours: int = 24,
        now: float | None = None,
    ) -> RecommendationInputs:
        """Everything the recommendation engine needs for one organization."""
        now = time.time() if now is None else now
        since = now - hours * HOUR
        clusters = await self.clusters.list_all(organization_id)
        ids = [c.id for c in clusters]
        return RecommendationInputs(
            clusters=clusters,
            summaries=await self.summaries.list_since(ids, since),
            policies=await self.policies.list_by_clusters(ids),
            matches=await self.matches.list_since(ids, since),
            now=now,
        )

    async def validation_report(
        self, cluster_id: str, start: float, end: float
    ) -> ValidationReport:
        summaries = await self.summaries.list_since([cluster_id], start, end)
        return summarize(cluster_id, summaries, start, end)

    # --- simulation -------------------------------------------------------

    async def simulate_policy(
        self,
        engine: SimulationEngine,
        policy_id: str,
        cluster_id: str,
        start: float,
        end: float,
        baseline_id: str | None = None,
    ) -> Simulation:
        """Run a stored policy against the stored history and persist the run."""
        document = await self._document(policy_id)
        baseline = await self._document(baseline_id) if baseline_id else None
        return await self.simulate_document(
            engine, document, cluster_id, start, end, baseline=baseline
        )

    async def simulate_document(
        self,
        engine: SimulationEngine,
        document: PolicyDocument,
        cluster_id: str,
        start: float,
        end: float,
        baseline: PolicyDocument | None = None,
    ) -> Simulation:
        sim = engine.create(document, cluster_id, start, end, baseline=baseline)
        await self.simulations.save(sim)

        if document.policy_type.is_network:
            records: list = await self.flows.fetch(cluster_id, start, end)
        else:
            records = await self.processes.fetch(cluster_id, start, end)

        engine.execute(sim.id, records)
        await self.simulations.save(sim)
        return sim

    async def _document(self, policy_id: str) -> PolicyDocument:
        policy = await self.policies.get(policy_id)
        if policy is None:
            raise LookupError(f"Unknown policy: {policy_id}")
        return PolicyDocument(
            policy.content, policy.policy_type, policy_id=policy.id, name=policy.name
        )

