"""Coverage-gap clustering across time-bucketed summaries."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, replace

from policyhub.recommend.models import CoverageGap


@dataclass(frozen=True)
class GapReport:
    gaps: tuple[CoverageGap, ...]
    total_gaps: int

    def to_dict(self) -> dict:
        return {
            "gaps": [g.to_dict() for g in self.gaps],
            "totalGaps": self.total_gaps,
        }


def merge_gaps(gaps: Iterable[CoverageGap | dict]) -> dict[tuple, CoverageGap]:
    """Sum counts of gaps sharing a merge key."""
    merged: dict[tuple, CoverageGap] = {}
    for gap in gaps:
        if isinstance(gap, dict):
            gap = CoverageGap.from_dict(gap)
        existing = merged.get(gap.key)
        if existing is None:
            merged[gap.key] = gap
        else:
            merged[gap.key] = replace(existing, count=existing.count + gap.count)
    return merged


def cluster_coverage_gaps(
    gap_lists: Iterable[Iterable[CoverageGap | dict]], limit: int | None = None
) -> GapReport:
    """Merge gaps from several summaries, sort by count (desc), then truncate."""
    merged = merge_gaps(gap for gaps in gap_lists for gap in gaps)
    ordered = sorted(merged.values(), key=lambda g: (-g.count, g.key))
    if limit is not None:
        ordered = ordered[:limit]
    return GapReport(gaps=tuple(ordered), total_gaps=len(merged))
