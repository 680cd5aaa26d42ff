"""Tests for hourly summaries and validation reports."""

from __future__ import annotations

import pytest

from policyhub.recommend.models import CoverageGap
from policyhub.reporting.summary import (
    HOUR,
    HourlySummary,
    coverage_percentage,
    hour_bucket,
    summarize,
    summarize_flows,
    trend,
)
from policyhub.simulation.records import FlowRecord

BASE = 1_700_000_000 - 1_700_000_000 % HOUR


def _summary(hour_offset: int, allowed=0, blocked=0, no_policy=0, cluster="c1"):
    return HourlySummary(
        cluster_id=cluster,
        hour=BASE + hour_offset * HOUR,
        allowed_count=allowed,
        blocked_count=blocked,
        no_policy_count=no_policy,
    )


class TestCoverage:
    def test_no_flows_is_full_coverage(self):
        assert coverage_percentage(0, 0, 0) == 100.0

    def test_no_governed_flows(self):
        assert coverage_percentage(0, 0, 40) == 0.0

    def test_partial(self):
        assert coverage_percentage(30, 10, 50) == pytest.approx(80.0)


class TestTrend:
    def test_growth(self):
        summaries = [_summary(0, allowed=10), _summary(1, allowed=15)]
        assert trend(summaries) == pytest.approx(50.0)

    def test_empty_first_half(self):
        assert trend([_summary(0), _summary(1, allowed=5)]) == 0.0

    def test_single_summary(self):
        assert trend([_summary(0, allowed=5)]) == 0.0

    def test_odd_length_puts_middle_in_second_half(self):
        summaries = [_summary(0, allowed=10), _summary(1, allowed=5), _summary(2, 5)]
        assert trend(summaries) == pytest.approx(0.0)


def test_summarize_window_and_cluster():
    summaries = [
        _summary(2, allowed=20, no_policy=5),
        _summary(0, allowed=10, blocked=5),
        _summary(1, allowed=10, cluster="c2"),
        _summary(10, allowed=1000),
    ]
    report = summarize("c1", summaries, BASE, BASE + 5 * HOUR)

    assert [s.hour for s in report.hourly_breakdown] == [BASE, BASE + 2 * HOUR]
    assert report.totals.allowed == 30
    assert report.totals.blocked == 5
    assert report.totals.no_policy == 5
    assert report.total_flows == 40
    assert report.coverage_percentage == pytest.approx(87.5)
    assert report.trend == pytest.approx((25 - 15) / 15 * 100)

    data = report.to_dict()
    assert data["totals"] == {"allowed": 30, "blocked": 5, "noPolicy": 5}
    assert data["period"] == {"startTime": BASE, "endTime": BASE + 5 * HOUR}
    assert len(data["hourlyBreakdown"]) == 2


def test_summarize_empty_window():
    report = summarize("c1", [], BASE, BASE + HOUR)
    assert report.total_flows == 0
    assert report.coverage_percentage == 100.0
    assert report.trend == 0.0


def test_hour_bucket():
    assert hour_bucket(BASE + 59 * 60) == BASE
    assert hour_bucket(BASE + HOUR) == BASE + HOUR


def test_summarize_flows_buckets_by_hour():
    records = [
        FlowRecord("a", "b", 80, count=10, verdict="FORWARDED", timestamp=BASE + 1),
        FlowRecord("a", "b", 80, count=2, verdict="DROPPED", timestamp=BASE + 2),
        FlowRecord("a", "b", 80, count=3, verdict="NO_POLICY", timestamp=BASE + 3),
        FlowRecord("a", "b", 80, count=4, verdict=None, timestamp=BASE + 4),
        FlowRecord("c", "d", 53, count=1, verdict="AUDIT", timestamp=BASE + HOUR),
        FlowRecord("x", "y", 1, count=99, verdict="FORWARDED"),
    ]
    first, second = summarize_flows("c1", records)

    assert first.hour == BASE
    assert first.allowed_count == 10
    assert first.blocked_count == 2
    assert first.no_policy_count == 7
    assert first.coverage_gaps == (CoverageGap("a", "b", 80, count=7),)
    assert second.hour == BASE + HOUR
    assert second.coverage_gaps[0].dst_port == 53
    assert second.to_dict()["noPolicy"] == 1
