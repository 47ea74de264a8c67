"""Tests for the pure health scorer."""
from __future__ import annotations

import pytest

from pulse.metrics import DIMENSIONS, METRIC_FIELDS, MetricSet
from pulse.scorer import (
    DEFAULT_WEIGHTS,
    DIMENSION_DEFAULTS,
    MAX_NEXT_STEPS,
    MIN_NEXT_STEPS,
    compute_health_score,
    profile_hash,
    resolve_weights,
    score_revenue,
)

HEALTHY = MetricSet(
    revenue_monthly=60_000, avg_order_value=250, gross_margin_pct=72, net_profit_monthly=12_000,
    runway_months=20, churn_monthly_pct=1.5, ltv=1_200, traffic_monthly=60_000,
    conversion_rate_pct=5.5, cac=15, ops_hours_per_week=8, fulfillment_days=1,
    support_tickets_per_week=3,
)

STRUGGLING = MetricSet(
    revenue_monthly=800, gross_margin_pct=20, net_profit_monthly=-500, churn_monthly_pct=12,
    ltv=80, cac=200, traffic_monthly=500, conversion_rate_pct=0.5, ops_hours_per_week=55,
)


class TestDeterminism:
    def test_identical_inputs_give_identical_results(self):
        a = compute_health_score(STRUGGLING, "subscription-software")
        b = compute_health_score(STRUGGLING, "subscription-software")
        assert a.to_dict() == b.to_dict()

    def test_profile_hash_is_stable_and_short(self):
        result = compute_health_score(HEALTHY, "online-retail")
        h1 = profile_hash(HEALTHY, "online-retail", result)
        h2 = profile_hash(HEALTHY, "online-retail", compute_health_score(HEALTHY, "online-retail"))
        assert h1 == h2
        assert len(h1) == 16
        int(h1, 16)

    def test_profile_hash_changes_with_metrics(self):
        other = MetricSet.from_mapping({**HEALTHY.as_dict(), "revenue_monthly": 1_000})
        h1 = profile_hash(HEALTHY, "online-retail", compute_health_score(HEALTHY, "online-retail"))
        h2 = profile_hash(other, "online-retail", compute_health_score(other, "online-retail"))
        assert h1 != h2


class TestDimensions:
    def test_scores_are_bounded(self):
        for metrics in (HEALTHY, STRUGGLING, MetricSet()):
            result = compute_health_score(metrics, "local-business")
            assert 0 <= result.score <= 100
            for d in DIMENSIONS:
                assert 0 <= result.dimensions[d].score <= 100
                assert 0.0 <= result.dimensions[d].confidence <= 1.0

    def test_revenue_tier_and_partial_confidence(self):
        result = score_revenue(MetricSet(revenue_monthly=60_000), "online-retail")
        assert result.score == 90
        assert result.confidence == 0.5
        assert not result.defaulted

    def test_empty_dimension_falls_back_to_category_default(self):
        result = compute_health_score(MetricSet(revenue_monthly=60_000), "content-creator")
        ops = result.dimensions["operations"]
        assert ops.defaulted
        assert ops.confidence == 0.0
        assert ops.score == DIMENSION_DEFAULTS["content-creator"]["operations"]

    def test_dimension_reads_only_its_own_fields(self):
        base = compute_health_score(HEALTHY, "service-agency")
        changed = MetricSet.from_mapping({**HEALTHY.as_dict(), "ops_hours_per_week": 60})
        after = compute_health_score(changed, "service-agency")
        assert after.dimensions["operations"].score < base.dimensions["operations"].score
        for d in ("revenue", "profitability", "retention", "acquisition"):
            assert after.dimensions[d].score == base.dimensions[d].score

    def test_loss_scores_low_profitability(self):
        result = compute_health_score(MetricSet(net_profit_monthly=-100), "service-agency")
        assert result.dimensions["profitability"].score == 15

    def test_extreme_finite_inputs_do_not_raise(self):
        metrics = MetricSet(traffic_monthly=1e200, conversion_rate_pct=50, avg_order_value=1e200,
                            revenue_monthly=1, ltv=1e308, cac=1e-308)
        result = compute_health_score(metrics, "online-retail")
        assert 0 <= result.score <= 100
        assert not any("implies" in lever for lever in result.dimensions["revenue"].levers)
        assert len(profile_hash(metrics, "online-retail", result)) == 16


class TestComposite:
    def test_empty_profile_uses_defaults(self):
        result = compute_health_score(MetricSet(), "service-agency")
        assert result.score == 37
        assert result.missing_inputs == list(METRIC_FIELDS)

    def test_unknown_category_uses_default_category(self):
        result = compute_health_score(MetricSet(), "spaceship-repair")
        assert result.category == "service-agency"

    def test_healthy_beats_struggling(self):
        for category in DEFAULT_WEIGHTS:
            assert compute_health_score(HEALTHY, category).score > compute_health_score(STRUGGLING, category).score

    def test_custom_weights_change_composite(self):
        all_revenue = {"revenue": 1, "profitability": 0, "retention": 0, "acquisition": 0, "operations": 0}
        result = compute_health_score(MetricSet(revenue_monthly=60_000), "online-retail", all_revenue)
        assert result.score == 90

    def test_missing_inputs_follow_canonical_order(self):
        result = compute_health_score(MetricSet(cac=10, revenue_monthly=5), "online-retail")
        assert result.missing_inputs[0] == "gross_margin_pct"
        assert "revenue_monthly" not in result.missing_inputs
        assert result.missing_inputs == [f for f in METRIC_FIELDS if f not in ("cac", "revenue_monthly")]


class TestWeights:
    def test_normalizes_to_one(self):
        weights = resolve_weights("online-retail", {d: 2 for d in DIMENSIONS})
        assert sum(weights.values()) == pytest.approx(1.0)
        assert weights["revenue"] == pytest.approx(0.2)

    @pytest.mark.parametrize("bad", [
        {"revenue": 1},
        {d: 0 for d in DIMENSIONS},
        {**{d: 0.2 for d in DIMENSIONS}, "revenue": -1},
        {d: "heavy" for d in DIMENSIONS},
        {**{d: 1 for d in DIMENSIONS}, "revenue": float("inf")},
        {**{d: 1 for d in DIMENSIONS}, "retention": float("nan")},
        {d: 1e308 for d in DIMENSIONS},
    ])
    def test_invalid_table_falls_back(self, bad):
        assert resolve_weights("online-retail", bad) == DEFAULT_WEIGHTS["online-retail"]

    def test_infinite_weight_still_scores(self):
        weights = {**{d: 1 for d in DIMENSIONS}, "revenue": float("inf")}
        result = compute_health_score(MetricSet(), "online-retail", weights)
        assert result.weights == DEFAULT_WEIGHTS["online-retail"]
        assert 0 <= result.score <= 100

    def test_defaults_sum_to_one(self):
        for weights in DEFAULT_WEIGHTS.values():
            assert sum(weights.values()) == pytest.approx(1.0)


class TestQualitative:
    def test_subscription_churn_override(self):
        result = compute_health_score(MetricSet(churn_monthly_pct=10, revenue_monthly=60_000), "subscription-software")
        assert "customer retention" in result.primary_risk
        assert "churn" in result.fastest_lever.lower()

    def test_critical_band_wording(self):
        result = compute_health_score(STRUGGLING, "service-agency")
        assert result.primary_risk.startswith("Critical risk")

    def test_next_steps_count(self):
        for metrics in (HEALTHY, STRUGGLING, MetricSet()):
            steps = compute_health_score(metrics, "online-retail").next_steps
            assert MIN_NEXT_STEPS <= len(steps) <= MAX_NEXT_STEPS

    def test_next_steps_start_with_weakest_dimension(self):
        result = compute_health_score(STRUGGLING, "service-agency")
        titles = [s.title for s in result.next_steps]
        assert "Complete your business profile" not in titles[:1]
        assert len(set(titles)) == len(titles)
