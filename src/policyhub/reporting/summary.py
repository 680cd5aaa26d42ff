"""Hourly verdict roll-ups: totals, coverage, and trend."""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from policyhub.recommend.gaps import merge_gaps
from policyhub.recommend.models import CoverageGap
from policyhub.simulation.records import FlowRecord, normalize_observed_verdict

HOUR = 3600


@dataclass(frozen=True)
class HourlySummary:
    """Verdict counts for one cluster and one hour bucket. Immutable once written."""

    cluster_id: str
    hour: float  # bucket start, epoch seconds
    allowed_count: int = 0
    blocked_count: int = 0
    no_policy_count: int = 0
    coverage_gaps: tuple[CoverageGap, ...] = ()

    @property
    def total(self) -> int:
        return self.allowed_count + self.blocked_count + self.no_policy_count

    def to_dict(self) -> dict:
        return {
            "clusterId": self.cluster_id,
            "hour": self.hour,
            "allowed": self.allowed_count,
            "blocked": self.blocked_count,
            "noPolicy": self.no_policy_count,
            "coverageGaps": [g.to_dict() for g in self.coverage_gaps],
        }


@dataclass(frozen=True)
class Totals:
    allowed: int = 0
    blocked: int = 0
    no_policy: int = 0

    @property
    def total(self) -> int:
        return self.allowed + self.blocked + self.no_policy


@dataclass(frozen=True)
class ValidationReport:
    """Roll-up of a window of hourly summaries."""

    cluster_id: str
    start: float
    end: float
    totals: Totals
    coverage_percentage: float
    trend: float
    hourly_breakdown: tuple[HourlySummary, ...] = field(default_factory=tuple)

    @property
    def total_flows(self) -> int:
        return self.totals.total

    def to_dict(self) -> dict:
        return {
            "clusterId": self.cluster_id,
            "period": {"startTime": self.start, "endTime": self.end},
            "totals": {
                "allowed": self.totals.allowed,
                "blocked": self.totals.blocked,
                "noPolicy": self.totals.no_policy,
            },
            "totalFlows": self.total_flows,
            "coveragePercentage": self.coverage_percentage,
            "trend": self.trend,
            "hourlyBreakdown": [
                {
                    "hour": s.hour,
                    "allowed": s.allowed_count,
                    "blocked": s.blocked_count,
                    "noPolicy": s.no_policy_count,
                }
                for s in self.hourly_breakdown
            ],
        }


def coverage_percentage(allowed: int, blocked: int, total: int) -> float:
    """Share of flows governed by some policy. 100 when there were no flows."""
    if total <= 0:
        return 100.0
    return (allowed + blocked) / total * 100


def trend(summaries: Sequence[HourlySummary]) -> float:
    """Percent change of the second half's flow total over the first half's.

    Summaries must be ordered by hour. 0 when the first half saw no flows.
    """
    midpoint = len(summaries) // 2
    first = sum(s.total for s in summaries[:midpoint])
    second = sum(s.total for s in summaries[midpoint:])
    if first <= 0:
        return 0.0
    return (second - first) / first * 100


def summarize(
    cluster_id: str,
    summaries: Iterable[HourlySummary],
    start: float,
    end: float,
) -> ValidationReport:
    """Roll up the summaries for ``cluster_id`` whose hour falls in [start, end]."""
    window = sorted(
        (s for s in summaries if s.cluster_id == cluster_id and start <= s.hour <= end),
        key=lambda s: s.hour,
    )
    totals = Totals(
        allowed=sum(s.allowed_count for s in window),
        blocked=sum(s.blocked_count for s in window),
        no_policy=sum(s.no_policy_count for s in window),
    )
    return ValidationReport(
        cluster_id=cluster_id,
        start=start,
        end=end,
        totals=totals,
        coverage_percentage=coverage_percentage(
            totals.allowed, totals.blocked, totals.total
        ),
        trend=trend(window),
        hourly_breakdown=tuple(window),
    )


def hour_bucket(timestamp: float) -> float:
    return float(int(timestamp // HOUR) * HOUR)


def summarize_flows(
    cluster_id: str, records: Iterable[FlowRecord]
) -> list[HourlySummary]:
    """Bucket observed flows into hourly summaries.

    Flows with a NO_POLICY (or unrecognised) verdict count as no-policy and
    become coverage gaps. Records without a timestamp are skipped.
    """
    buckets: dict[float, dict] = {}
    for record in records:
        if record.timestamp is None:
            continue
        bucket = buckets.setdefault(
            hour_bucket(record.timestamp),
            {"allowed": 0, "blocked": 0, "no_policy": 0, "gaps": []},
        )
        verdict = normalize_observed_verdict(record.verdict)
        if verdict == "ALLOWED":
            bucket["allowed"] += record.count
        elif verdict in ("DENIED", "DROPPED"):
            bucket["blocked"] += record.count
        else:
            bucket["no_policy"] += record.count
            bucket["gaps"].append(
                CoverageGap(
                    src_namespace=record.src_namespace,
                    src_pod_name=record.src_pod_name,
                    dst_namespace=record.dst_namespace,
                    dst_pod_name=record.dst_pod_name,
                    dst_port=record.dst_port,
                    count=record.count,
                )
            )

    return [
        HourlySummary(
            cluster_id=cluster_id,
            hour=hour,
            allowed_count=b["allowed"],
            blocked_count=b["blocked"],
            no_policy_count=b["no_policy"],
            coverage_gaps=tuple(merge_gaps(b["gaps"]).values()),
        )
        for hour, b in sorted(buckets.items())
    ]
