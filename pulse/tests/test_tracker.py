"""Tests for change tracking between consecutive snapshots."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime

import pytest

from pulse.reconciler import Attribution
from pulse.tracker import MAX_REASON_LENGTH, describe_change, pick_driver, significance_threshold, track_change


@dataclass
class Snap:
    score: int
    revenue: int = 50
    profitability: int = 50
    retention: int = 50
    acquisition: int = 50
    operations: int = 50

    @property
    def dimension_scores(self) -> dict[str, int]:
        return {
            "revenue": self.revenue, "profitability": self.profitability, "retention": self.retention,
            "acquisition": self.acquisition, "operations": self.operations,
        }


T = datetime(2026, 3, 1, tzinfo=UTC)


class TestSignificance:
    def test_four_point_rise_is_significant_with_one_driver(self):
        report = track_change(Snap(74, retention=70), Snap(70, retention=50), threshold=3)
        assert report.significant
        assert report.score_change == 4
        assert report.driver == "retention"
        assert report.reason.startswith("Retention improved 20 pts")

    def test_one_point_rise_is_not_significant(self):
        report = track_change(Snap(71, revenue=52), Snap(70), threshold=3)
        assert not report.significant
        assert report.score_change == 1
        assert report.driver is None
        assert report.reason == ""

    def test_exact_threshold_counts(self):
        assert track_change(Snap(67), Snap(70), threshold=3).significant

    def test_first_snapshot(self):
        report = track_change(Snap(60), None)
        assert report.previous_score is None
        assert report.score_change == 0
        assert not report.significant
        assert set(report.deltas.values()) == {0}

    def test_threshold_from_environment(self, monkeypatch):
        monkeypatch.setenv("PULSE_SIGNIFICANT_CHANGE", "10")
        assert significance_threshold() == 10
        assert not track_change(Snap(75, revenue=80), Snap(70)).significant

    def test_invalid_environment_threshold_falls_back(self, monkeypatch):
        monkeypatch.setenv("PULSE_SIGNIFICANT_CHANGE", "lots")
        assert significance_threshold() == 3


class TestDriver:
    def test_largest_absolute_delta(self):
        assert pick_driver({"revenue": 5, "profitability": -12, "retention": 8}) == "profitability"

    def test_tie_goes_to_canonical_order(self):
        assert pick_driver({"operations": 6, "acquisition": -6}) == "acquisition"

    def test_no_movement(self):
        assert pick_driver({"revenue": 0}) is None

    def test_weighting_change_without_dimension_movement(self):
        report = track_change(Snap(80), Snap(70), threshold=3)
        assert report.significant
        assert report.driver is None
        assert "weighting" in report.reason


class TestReason:
    def test_drop_names_source(self):
        attribution = {
            "revenue_monthly": Attribution("stripe", T),
            "avg_order_value": Attribution("manual", T),
        }
        report = track_change(Snap(60, revenue=20), Snap(70), attribution, threshold=3)
        assert report.source == "stripe"
        assert report.reason == "Revenue dropped 30 pts, monthly revenue declined (via stripe)"

    def test_manual_source_not_named(self):
        attribution = {"revenue_monthly": Attribution("manual", T)}
        report = track_change(Snap(60, revenue=20), Snap(70), attribution, threshold=3)
        assert report.source is None
        assert "via" not in report.reason

    @pytest.mark.parametrize("delta", [1, -99])
    def test_length_cap(self, delta):
        assert len(describe_change("acquisition", delta, "google-analytics" * 10)) <= MAX_REASON_LENGTH
