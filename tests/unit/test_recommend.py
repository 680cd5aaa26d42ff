"""Tests for similarity, coverage gaps and the recommendation engine."""

from __future__ import annotations

import pytest

from policyhub.policy.models import PolicyStatus, PolicyType
from policyhub.policy.parser import parse_policy
from policyhub.recommend.engine import (
    DAY,
    Cluster,
    PolicyMatch,
    RecommendationEngine,
    RecommendationFilters,
    RecommendationInputs,
    sort_recommendations,
)
from policyhub.recommend.gaps import cluster_coverage_gaps, merge_gaps
from policyhub.recommend.models import (
    ConsolidationRecommendation,
    CoverageGap,
    CoverageGapRecommendation,
    PolicyRef,
    RecommendationType,
    Severity,
    SimilarityScore,
    UnusedPolicyRecommendation,
    consolidation_severity,
    gap_severity,
    unused_policy_severity,
)
from policyhub.recommend.similarity import (
    StoredPolicy,
    compute_similarity,
    find_similar_policies,
)
from policyhub.reporting.summary import HOUR, HourlySummary

NOW = 1_700_000_000.0


def _cnp(name: str, labels: dict[str, str], kind="CiliumNetworkPolicy") -> str:
    lines = [
        "apiVersion: cilium.io/v2",
        f"kind: {kind}",
        "metadata:",
        f"  name: {name}",
        "spec:",
        "  endpointSelector:",
        "    matchLabels:",
    ]
    lines += [f"      {k}: {v}" for k, v in labels.items()]
    return "\n".join(lines) + "\n"


def _stored(
    policy_id: str,
    labels: dict[str, str],
    *,
    cluster_id: str = "c1",
    status: PolicyStatus = PolicyStatus.DEPLOYED,
    deployed_at: float | None = None,
    policy_type: PolicyType = PolicyType.CILIUM_NETWORK,
) -> StoredPolicy:
    kind = (
        "CiliumClusterwideNetworkPolicy"
        if policy_type is PolicyType.CILIUM_CLUSTERWIDE
        else "CiliumNetworkPolicy"
    )
    return StoredPolicy(
        id=policy_id,
        name=f"policy-{policy_id}",
        content=_cnp(f"policy-{policy_id}", labels, kind),
        policy_type=policy_type,
        cluster_id=cluster_id,
        status=status,
        deployed_at=deployed_at,
        created_at=NOW - 100 * DAY,
    )


def _parsed(labels: dict[str, str]):
    return parse_policy(_cnp("p", labels), PolicyType.CILIUM_NETWORK)


class TestSimilarity:
    def test_one_shared_of_three_is_33(self):
        a = _parsed({"app": "frontend", "tier": "web"})
        b = _parsed({"app": "frontend", "env": "prod"})
        score = compute_similarity(a, b)
        assert score.similarity_percent == 33
        assert score.shared_labels == ("app=frontend",)
        assert score.unique_to_a == ("tier=web",)
        assert score.unique_to_b == ("env=prod",)
        assert consolidation_severity(score.similarity_percent) is Severity.INFO

    def test_symmetric(self):
        a = _parsed({"app": "a", "x": "1"})
        b = _parsed({"app": "a", "y": "2", "z": "3"})
        assert (
            compute_similarity(a, b).similarity_percent
            == compute_similarity(b, a).similarity_percent
        )

    def test_rounds_half_up(self):
        a = _parsed({"a": "1"})
        b = _parsed({"a": "1", "b": "2"})
        assert compute_similarity(a, b).similarity_percent == 50
        c = _parsed({"a": "1", "b": "2", "c": "3", "d": "4", "e": "5", "f": "6"})
        d = _parsed({"a": "1", "b": "2", "c": "3", "d": "4", "e": "5", "g": "7"})
        # 5 / 7 = 71.43
        assert compute_similarity(c, d).similarity_percent == 71

    def test_empty_selectors_are_zero(self):
        assert compute_similarity(_parsed({}), _parsed({})).similarity_percent == 0

    def test_find_similar_policies_threshold(self):
        policies = [
            _stored("a", {"app": "frontend", "tier": "web"}),
            _stored("b", {"app": "frontend", "env": "prod"}),
            _stored("c", {"app": "frontend", "tier": "web"}),
        ]
        pairs = find_similar_policies(policies, threshold=80)
        assert [(p.policy_a.id, p.policy_b.id) for p in pairs] == [("a", "c")]
        assert pairs[0].similarity.similarity_percent == 100
        assert len(find_similar_policies(policies, threshold=30)) == 3

    def test_find_skips_archived_other_types_and_bad_yaml(self):
        broken = StoredPolicy("x", "broken", "kind: [", PolicyType.CILIUM_NETWORK)
        policies = [
            _stored("a", {"app": "web"}),
            _stored("b", {"app": "web"}, status=PolicyStatus.ARCHIVED),
            _stored("c", {"app": "web"}, policy_type=PolicyType.CILIUM_CLUSTERWIDE),
            broken,
        ]
        assert find_similar_policies(policies, threshold=0) == []


class TestGaps:
    def test_merge_sums_same_key(self):
        merged = merge_gaps(
            [
                CoverageGap("a", "b", 80, count=3),
                {"srcNamespace": "a", "dstNamespace": "b", "dstPort": 80, "count": 4},
                CoverageGap("a", "b", 443, count=1),
            ]
        )
        assert len(merged) == 2
        assert merged[("a", "*", "b", "*", 80)].count == 7

    def test_pod_names_are_part_of_the_key(self):
        merged = merge_gaps(
            [
                CoverageGap("a", "b", 80, count=1, src_pod_name="p1"),
                CoverageGap("a", "b", 80, count=1),
            ]
        )
        assert len(merged) == 2

    def test_cluster_sorts_and_limits(self):
        report = cluster_coverage_gaps(
            [
                [
                    CoverageGap("a", "b", 80, count=5),
                    CoverageGap("c", "d", 53, count=9),
                ],
                [CoverageGap("a", "b", 80, count=6)],
            ],
            limit=1,
        )
        assert report.total_gaps == 2
        assert report.gaps == (CoverageGap("a", "b", 80, count=11),)
        assert report.to_dict()["totalGaps"] == 2


class TestSeverity:
    @pytest.mark.parametrize(
        "count, expected",
        [
            (1000, Severity.CRITICAL),
            (999, Severity.WARNING),
            (100, Severity.WARNING),
            (99, Severity.INFO),
        ],
    )
    def test_gap_thresholds(self, count, expected):
        assert gap_severity(count) is expected

    def test_unused_thresholds(self):
        assert unused_policy_severity(30) is Severity.WARNING
        assert unused_policy_severity(29) is Severity.INFO

    def test_consolidation_thresholds(self):
        assert consolidation_severity(95) is Severity.WARNING
        assert consolidation_severity(94) is Severity.INFO

    def test_severity_follows_the_metric(self):
        rec = CoverageGapRecommendation(
            cluster_id="c1",
            cluster_name="prod",
            gap=CoverageGap("a", "b", 80, count=1500),
        )
        assert rec.severity is Severity.CRITICAL
        assert rec.impact == 1500
        assert rec.id == "coverage-gap-c1-a-b-80"
        assert rec.to_dict()["metadata"]["flowCount"] == 1500


def test_sort_by_severity_then_impact():
    recs = [
        CoverageGapRecommendation("c", "c", gap=CoverageGap("a", "b", 1, count=5)),
        CoverageGapRecommendation("c", "c", gap=CoverageGap("a", "b", 2, count=2000)),
        CoverageGapRecommendation("c", "c", gap=CoverageGap("a", "b", 3, count=50)),
        UnusedPolicyRecommendation(
            "c", "c", policy=PolicyRef("p", "p"), days_since_deployed=45
        ),
        ConsolidationRecommendation(
            "c", "c", similarity=SimilarityScore(similarity_percent=99)
        ),
    ]
    ordered = sort_recommendations(recs)
    assert [r.severity for r in ordered] == [
        Severity.CRITICAL,
        Severity.WARNING,
        Severity.WARNING,
        Severity.INFO,
        Severity.INFO,
    ]
    assert [r.impact for r in ordered] == [2000, 99, 45, 50, 5]


@pytest.fixture
def inputs() -> RecommendationInputs:
    recent = NOW - 2 * HOUR
    batch = {"app": "batch", "tier": "jobs"}
    return RecommendationInputs(
        clusters=[Cluster("c1", "prod"), Cluster("c2", "staging")],
        summaries=[
            HourlySummary(
                "c1",
                recent,
                no_policy_count=1505,
                coverage_gaps=(
                    CoverageGap("web", "db", 5432, count=1500),
                    CoverageGap("web", "cache", 6379, count=5),
                ),
            ),
            HourlySummary(
                "c1",
                recent + HOUR,
                coverage_gaps=(CoverageGap("web", "cache", 6379, count=145),),
            ),
            # Outside a 24h window
            HourlySummary(
                "c1",
                NOW - 48 * HOUR,
                coverage_gaps=(CoverageGap("old", "db", 5432, count=9000),),
            ),
            HourlySummary(
                "c2", recent, coverage_gaps=(CoverageGap("a", "b", 80, count=3),)
            ),
        ],
        policies=[
            _stored("used", {"app": "api"}, deployed_at=NOW - 40 * DAY),
            _stored("idle", {"app": "worker"}, deployed_at=NOW - 40 * DAY),
            _stored("new", batch, deployed_at=NOW - 2 * DAY),
            _stored("draft", batch, status=PolicyStatus.DRAFT),
        ],
        matches=[
            PolicyMatch("c1", "policy-used", NOW - HOUR),
            PolicyMatch("c1", "policy-idle", NOW - 10 * DAY),
        ],
        now=NOW,
    )


class TestRecommendationEngine:
    def test_all_recommendations(self, inputs):
        result = RecommendationEngine().get_recommendations(inputs)
        by_id = {r.id: r for r in result.recommendations}

        assert result.total == 6
        assert by_id["coverage-gap-c1-web-db-5432"].severity is Severity.CRITICAL
        # 5 + 145 merged across hours
        assert by_id["coverage-gap-c1-web-cache-6379"].impact == 150
        assert "coverage-gap-c1-old-db-5432" not in by_id
        assert by_id["unused-policy-idle"].days_since_deployed == 40
        assert by_id["unused-policy-idle"].severity is Severity.WARNING
        assert by_id["unused-policy-new"].severity is Severity.INFO
        assert "unused-policy-used" not in by_id
        assert "unused-policy-draft" not in by_id
        assert by_id["consolidation-new-draft"].impact == 100
        assert result.recommendations[0].severity is Severity.CRITICAL

    def test_cluster_filter(self, inputs):
        filters = RecommendationFilters(cluster_id="c2")
        result = RecommendationEngine().get_recommendations(inputs, filters)
        assert [r.id for r in result.recommendations] == ["coverage-gap-c2-a-b-80"]

    def test_type_and_severity_filters(self, inputs):
        engine = RecommendationEngine()
        unused = engine.get_recommendations(
            inputs, RecommendationFilters(type=RecommendationType.UNUSED_POLICY)
        )
        assert {r.type for r in unused.recommendations} == {
            RecommendationType.UNUSED_POLICY
        }
        warnings = engine.get_recommendations(
            inputs, RecommendationFilters(severity=Severity.WARNING)
        )
        assert all(r.severity is Severity.WARNING for r in warnings.recommendations)
        assert warnings.total == 3

    def test_limit_keeps_total(self, inputs):
        result = RecommendationEngine().get_recommendations(
            inputs, RecommendationFilters(limit=2)
        )
        assert len(result.recommendations) == 2
        assert result.total == 6
        assert result.to_dict()["total"] == 6

    def test_hours_window(self, inputs):
        result = RecommendationEngine().get_recommendations(
            inputs, RecommendationFilters(hours=72)
        )
        ids = {r.id for r in result.recommendations}
        assert "coverage-gap-c1-old-db-5432" in ids

    def test_higher_threshold_drops_consolidation(self, inputs):
        engine = RecommendationEngine(consolidation_threshold=101)
        result = engine.get_recommendations(
            inputs, RecommendationFilters(type=RecommendationType.CONSOLIDATION)
        )
        assert result.total == 0

    def test_stats(self, inputs):
        stats = RecommendationEngine().stats(inputs)
        assert stats["total"] == 6
        assert stats["byType"] == {
            "COVERAGE_GAP": 3,
            "UNUSED_POLICY": 2,
            "CONSOLIDATION": 1,
        }
        assert stats["bySeverity"] == {"CRITICAL": 1, "WARNING": 3, "INFO": 2}

    @pytest.mark.parametrize("kwargs", [{"hours": 0}, {"hours": 169}, {"limit": 101}])
    def test_filter_ranges(self, kwargs):
        with pytest.raises(ValueError):
            RecommendationFilters(**kwargs)
