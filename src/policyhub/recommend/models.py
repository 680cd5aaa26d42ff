"""Recommendation data models.

Severity is always derived from the metric a recommendation carries; it is a
read-only property, never a stored field.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Union


class Severity(enum.Enum):
    """Recommendation severity, most urgent first."""

    CRITICAL = "CRITICAL"
    WARNING = "WARNING"
    INFO = "INFO"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.WARNING: 1, Severity.INFO: 2}


class RecommendationType(enum.Enum):
    """Kind of recommendation."""

    COVERAGE_GAP = "COVERAGE_GAP"
    UNUSED_POLICY = "UNUSED_POLICY"
    CONSOLIDATION = "CONSOLIDATION"


def gap_severity(count: int) -> Severity:
    if count >= 1000:
        return Severity.CRITICAL
    if count >= 100:
        return Severity.WARNING
    return Severity.INFO


def unused_policy_severity(days_since_deployed: int) -> Severity:
    if days_since_deployed >= 30:
        return Severity.WARNING
    return Severity.INFO


def consolidation_severity(similarity_percent: int) -> Severity:
    if similarity_percent >= 95:
        return Severity.WARNING
    return Severity.INFO


@dataclass(frozen=True)
class CoverageGap:
    """Traffic observed with no governing policy."""

    src_namespace: str
    dst_namespace: str
    dst_port: int
    count: int = 0
    src_pod_name: str | None = None
    dst_pod_name: str | None = None

    @property
    def key(self) -> tuple[str, str, str, str, int]:
        """Merge key. Missing pod names act as namespace-wide wildcards."""
        return (
            self.src_namespace,
            self.src_pod_name or "*",
            self.dst_namespace,
            self.dst_pod_name or "*",
            self.dst_port,
        )

    @property
    def src_display(self) -> str:
        if self.src_pod_name:
            return f"{self.src_namespace}/{self.src_pod_name}"
        return self.src_namespace

    @property
    def dst_display(self) -> str:
        if self.dst_pod_name:
            return f"{self.dst_namespace}/{self.dst_pod_name}"
        return self.dst_namespace

    @classmethod
    def from_dict(cls, data: dict) -> CoverageGap:
        return cls(
            src_namespace=str(data.get("srcNamespace", "")),
            src_pod_name=data.get("srcPodName"),
            dst_namespace=str(data.get("dstNamespace", "")),
            dst_pod_name=data.get("dstPodName"),
            dst_port=int(data.get("dstPort", 0)),
            count=int(data.get("count", 0)),
        )

    def to_dict(self) -> dict:
        return {
            "srcNamespace": self.src_namespace,
            "srcPodName": self.src_pod_name,
            "dstNamespace": self.dst_namespace,
            "dstPodName": self.dst_pod_name,
            "dstPort": self.dst_port,
            "count": self.count,
        }


@dataclass(frozen=True)
class SimilarityScore:
    """Label overlap between two policies' endpoint selectors."""

    similarity_percent: int
    shared_labels: tuple[str, ...] = ()
    unique_to_a: tuple[str, ...] = ()
    unique_to_b: tuple[str, ...] = ()
    same_type: bool = True

    def to_dict(self) -> dict:
        return {
            "similarityPercent": self.similarity_percent,
            "sharedLabels": list(self.shared_labels),
            "uniqueToA": list(self.unique_to_a),
            "uniqueToB": list(self.unique_to_b),
            "sameType": self.same_type,
        }


@dataclass(frozen=True)
class PolicyRef:
    """Minimal identity of a stored policy."""

    id: str
    name: str


@dataclass(frozen=True)
class _RecommendationBase:
    cluster_id: str
    cluster_name: str

    def _base_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "severity": self.severity.value,
            "clusterId": self.cluster_id,
            "clusterName": self.cluster_name,
            "title": self.title,
            "description": self.description,
            "impact": self.impact,
            "suggestedAction": self.suggested_action,
        }


@dataclass(frozen=True)
class CoverageGapRecommendation(_RecommendationBase):
    gap: CoverageGap = field(default_factory=lambda: CoverageGap("", "", 0))
    hours: int = 24

    type = RecommendationType.COVERAGE_GAP
    suggested_action = "Create network policy"

    @property
    def severity(self) -> Severity:
        return gap_severity(self.gap.count)

    @property
    def id(self) -> str:
        g = self.gap
        return (
            f"coverage-gap-{self.cluster_id}-{g.src_namespace}-"
            f"{g.dst_namespace}-{g.dst_port}"
        )

    @property
    def impact(self) -> int:
        return self.gap.count

    @property
    def title(self) -> str:
        g = self.gap
        return f"Missing policy for {g.src_display} -> {g.dst_display}:{g.dst_port}"

    @property
    def description(self) -> str:
        return (
            f"{self.gap.count:,} flows observed without any governing policy "
            f"in the last {self.hours} hours"
        )

    def to_dict(self) -> dict:
        data = self._base_dict()
        metadata = self.gap.to_dict()
        metadata["flowCount"] = metadata.pop("count")
        data["metadata"] = metadata
        return data


@dataclass(frozen=True)
class UnusedPolicyRecommendation(_RecommendationBase):
    policy: PolicyRef = field(default_factory=lambda: PolicyRef("", ""))
    days_since_deployed: int = 0
    deployed_at: float = 0.0
    hours: int = 24

    type = RecommendationType.UNUSED_POLICY
    suggested_action = "Review and consider archiving"

    @property
    def severity(self) -> Severity:
        return unused_policy_severity(self.days_since_deployed)

    @property
    def id(self) -> str:
        return f"unused-policy-{self.policy.id}"

    @property
    def impact(self) -> int:
        return self.days_since_deployed

    @property
    def title(self) -> str:
        return f'Policy "{self.policy.name}" is unused'

    @property
    def description(self) -> str:
        return (
            f"No flows matched this policy in the last {self.hours} hours. "
            f"Policy deployed {self.days_since_deployed} days ago."
        )

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["metadata"] = {
            "policyId": self.policy.id,
            "policyName": self.policy.name,
            "daysSinceDeployed": self.days_since_deployed,
            "deployedAt": self.deployed_at,
        }
        return data


@dataclass(frozen=True)
class ConsolidationRecommendation(_RecommendationBase):
    policy_a: PolicyRef = field(default_factory=lambda: PolicyRef("", ""))
    policy_b: PolicyRef = field(default_factory=lambda: PolicyRef("", ""))
    similarity: SimilarityScore = field(default_factory=lambda: SimilarityScore(0))

    type = RecommendationType.CONSOLIDATION
    suggested_action = "Review and consider merging"

    @property
    def severity(self) -> Severity:
        return consolidation_severity(self.similarity.similarity_percent)

    @property
    def id(self) -> str:
        return f"consolidation-{self.policy_a.id}-{self.policy_b.id}"

    @property
    def impact(self) -> int:
        return self.similarity.similarity_percent

    @property
    def title(self) -> str:
        return (
            f'Policies "{self.policy_a.name}" and "{self.policy_b.name}" '
            f"overlap {self.similarity.similarity_percent}%"
        )

    @property
    def description(self) -> str:
        shared = ", ".join(self.similarity.shared_labels) or "none"
        return (
            "These policies target similar workloads and could potentially be "
            f"merged. Shared labels: {shared}"
        )

    def to_dict(self) -> dict:
        data = self._base_dict()
        data["metadata"] = {
            "policyAId": self.policy_a.id,
            "policyAName": self.policy_a.name,
            "policyBId": self.policy_b.id,
            "policyBName": self.policy_b.name,
            "similarityPercent": self.similarity.similarity_percent,
            "sharedLabels": list(self.similarity.shared_labels),
            "uniqueToA": list(self.similarity.unique_to_a),
            "uniqueToB": list(self.similarity.unique_to_b),
        }
        return data


Recommendation = Union[
    CoverageGapRecommendation, UnusedPolicyRecommendation, ConsolidationRecommendation
]
