"""Recommendations from recent traffic summaries and the stored policy set."""

from __future__ import annotations

import logging
import math
import time
from collections.abc import Iterable
from dataclasses import dataclass, field

from policyhub.policy.models import PolicyStatus
from policyhub.recommend.gaps import merge_gaps
from policyhub.recommend.models import (
    ConsolidationRecommendation,
    CoverageGapRecommendation,
    PolicyRef,
    Recommendation,
    RecommendationType,
    Severity,
    UnusedPolicyRecommendation,
)
from policyhub.recommend.similarity import (
    DEFAULT_THRESHOLD,
    StoredPolicy,
    find_similar_policies,
)
from policyhub.reporting.summary import HOUR, HourlySummary

logger = logging.getLogger(__name__)

DAY = 24 * HOUR


@dataclass(frozen=True)
class Cluster:
    id: str
    name: str
    organization_id: str = ""


@dataclass(frozen=True)
class PolicyMatch:
    """A flow in ``cluster_id`` was governed by the policy named ``policy_name``."""

    cluster_id: str
    policy_name: str
    timestamp: float


@dataclass
class RecommendationInputs:
    """Everything the engine looks at for one organization."""

    clusters: list[Cluster] = field(default_factory=list)
    summaries: list[HourlySummary] = field(default_factory=list)
    policies: list[StoredPolicy] = field(default_factory=list)
    matches: list[PolicyMatch] = field(default_factory=list)
    now: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecommendationFilters:
    cluster_id: str | None = None
    type: RecommendationType | None = None
    severity: Severity | None = None
    hours: int = 24
    limit: int = 50

    def __post_init__(self) -> None:
        if not 1 <= self.hours <= 168:
            raise ValueError("hours must be between 1 and 168")
        if not 1 <= self.limit <= 100:
            raise ValueError("limit must be between 1 and 100")


@dataclass(frozen=True)
class RecommendationList:
    recommendations: tuple[Recommendation, ...]
    total: int

    def to_dict(self) -> dict:
        return {
            "recommendations": [r.to_dict() for r in self.recommendations],
            "total": self.total,
        }


def sort_recommendations(recs: Iterable[Recommendation]) -> list[Recommendation]:
    """Most severe first, then by impact (desc)."""
    return sorted(recs, key=lambda r: (r.severity.rank, -r.impact))


class RecommendationEngine:
    """Derives recommendations from summaries, policies, and policy matches."""

    def __init__(self, consolidation_threshold: int = DEFAULT_THRESHOLD) -> None:
        self.consolidation_threshold = consolidation_threshold

    def get_recommendations(
        self,
        inputs: RecommendationInputs,
        filters: RecommendationFilters | None = None,
    ) -> RecommendationList:
        filters = filters or RecommendationFilters()
        clusters = _select_clusters(inputs.clusters, filters.cluster_id)

        recs: list[Recommendation] = []
        if filters.type in (None, RecommendationType.COVERAGE_GAP):
            recs.extend(self.coverage_gaps(inputs, clusters, filters.hours))
        if filters.type in (None, RecommendationType.UNUSED_POLICY):
            recs.extend(self.unused_policies(inputs, clusters, filters.hours))
        if filters.type in (None, RecommendationType.CONSOLIDATION):
            recs.extend(self.consolidations(inputs, clusters))

        if filters.severity is not None:
            recs = [r for r in recs if r.severity is filters.severity]

        ordered = sort_recommendations(recs)
        return RecommendationList(tuple(ordered[: filters.limit]), total=len(ordered))

    def stats(
        self,
        inputs: RecommendationInputs,
        cluster_id: str | None = None,
        hours: int = 24,
    ) -> dict:
        clusters = _select_clusters(inputs.clusters, cluster_id)
        gaps = self.coverage_gaps(inputs, clusters, hours)
        unused = self.unused_policies(inputs, clusters, hours)
        consolidations = self.consolidations(inputs, clusters)
        everything = [*gaps, *unused, *consolidations]
        return {
            "total": len(everything),
            "byType": {
                RecommendationType.COVERAGE_GAP.value: len(gaps),
                RecommendationType.UNUSED_POLICY.value: len(unused),
                RecommendationType.CONSOLIDATION.value: len(consolidations),
            },
            "bySeverity": {
                sev.value: sum(1 for r in everything if r.severity is sev)
                for sev in Severity
            },
        }

    def coverage_gaps(
        self, inputs: RecommendationInputs, clusters: dict[str, Cluster], hours: int
    ) -> list[CoverageGapRecommendation]:
        since = inputs.now - hours * HOUR
        by_cluster: dict[str, list] = {}
        for summary in inputs.summaries:
            if summary.cluster_id not in clusters or summary.hour < since:
                continue
            by_cluster.setdefault(summary.cluster_id, []).extend(summary.coverage_gaps)

        recs: list[CoverageGapRecommendation] = []
        for cluster_id, gaps in by_cluster.items():
            for gap in merge_gaps(gaps).values():
                recs.append(
                    CoverageGapRecommendation(
                        cluster_id=cluster_id,
                        cluster_name=clusters[cluster_id].name,
                        gap=gap,
                        hours=hours,
                    )
                )
        return recs

    def unused_policies(
        self, inputs: RecommendationInputs, clusters: dict[str, Cluster], hours: int
    ) -> list[UnusedPolicyRecommendation]:
        since = inputs.now - hours * HOUR
        matched = {
            (m.cluster_id, m.policy_name)
            for m in inputs.matches
            if m.timestamp >= since
        }

        recs: list[UnusedPolicyRecommendation] = []
        for policy in inputs.policies:
            if policy.cluster_id not in clusters:
                continue
            if policy.status is not PolicyStatus.DEPLOYED:
                continue
            if (policy.cluster_id, policy.name) in matched:
                continue
            deployed_at = policy.deployed_at or policy.created_at
            days = max(math.floor((inputs.now - deployed_at) / DAY), 0)
            recs.append(
                UnusedPolicyRecommendation(
                    cluster_id=policy.cluster_id,
                    cluster_name=clusters[policy.cluster_id].name,
                    policy=PolicyRef(policy.id, policy.name),
                    days_since_deployed=days,
                    deployed_at=deployed_at,
                    hours=hours,
                )
            )
        return recs

    def consolidations(
        self, inputs: RecommendationInputs, clusters: dict[str, Cluster]
    ) -> list[ConsolidationRecommendation]:
        by_cluster: dict[str, list[StoredPolicy]] = {}
        for policy in inputs.policies:
            if policy.cluster_id in clusters:
                by_cluster.setdefault(policy.cluster_id, []).append(policy)

        recs: list[ConsolidationRecommendation] = []
        for cluster_id, policies in by_cluster.items():
            if len(policies) < 2:
                continue
            for pair in find_similar_policies(policies, self.consolidation_threshold):
                recs.append(
                    ConsolidationRecommendation(
                        cluster_id=cluster_id,
                        cluster_name=clusters[cluster_id].name,
                        policy_a=pair.policy_a,
                        policy_b=pair.policy_b,
                        similarity=pair.similarity,
                    )
                )
        logger.debug("Found %d consolidation candidates", len(recs))
        return recs


def _select_clusters(
    clusters: Iterable[Cluster], cluster_id: str | None
) -> dict[str, Cluster]:
    return {c.id: c for c in clusters if cluster_id is None or c.id == cluster_id}
