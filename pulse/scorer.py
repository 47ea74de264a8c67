"""Health scorer: five deterministic dimension evaluations with weighted aggregation.

Architecture
------------
Each subject is scored on five dimensions, each reading only its own
metric fields (see ``pulse.metrics.DIMENSION_FIELDS``):

- **Revenue** - monthly revenue tier and average order value.
- **Profitability** - gross margin, monthly net profit, runway.
- **Retention** - monthly churn and customer lifetime value.
- **Acquisition** - traffic, conversion rate, acquisition cost.
- **Operations** - ops hours, fulfillment time, support load.

A dimension with no usable fields falls back to a category-specific default
and reports zero confidence. The composite is the weighted sum of the five
dimension scores, rounded and clamped to 0-100. Weights are data: callers pass
the table for the subject's category (the ``category_weights`` table at
runtime) and ``DEFAULT_WEIGHTS`` is used when none is given or the given one
is unusable.

Qualitative outputs (reasons, levers, primary risk, fastest lever, next steps)
may look across dimensions; only the numeric sub-scores are field-disjoint.

``compute_health_score`` never raises and never does I/O.
"""
from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import asdict, dataclass, field
from typing import Any, Mapping

from pulse.metrics import (
    DEFAULT_CATEGORY,
    DIMENSION_FIELDS,
    DIMENSIONS,
    METRIC_FIELDS,
    MetricSet,
    normalize_category,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Category tables (seeded into the database, editable via API)
# ---------------------------------------------------------------------------

DEFAULT_WEIGHTS: dict[str, dict[str, float]] = {
    "online-retail": {"revenue": 0.25, "profitability": 0.20, "retention": 0.20, "acquisition": 0.25, "operations": 0.10},
    "subscription-software": {"revenue": 0.20, "profitability": 0.20, "retention": 0.30, "acquisition": 0.15, "operations": 0.15},
    "service-agency": {"revenue": 0.25, "profitability": 0.15, "retention": 0.20, "acquisition": 0.10, "operations": 0.30},
    "content-creator": {"revenue": 0.20, "profitability": 0.15, "retention": 0.25, "acquisition": 0.30, "operations": 0.10},
    "local-business": {"revenue": 0.30, "profitability": 0.20, "retention": 0.15, "acquisition": 0.15, "operations": 0.20},
}

# Conservative scores used when a dimension has no data at all.
DIMENSION_DEFAULTS: dict[str, dict[str, int]] = {
    "online-retail": {"revenue": 30, "profitability": 30, "retention": 35, "acquisition": 35, "operations": 40},
    "subscription-software": {"revenue": 30, "profitability": 30, "retention": 35, "acquisition": 35, "operations": 50},
    "service-agency": {"revenue": 30, "profitability": 35, "retention": 45, "acquisition": 35, "operations": 40},
    "content-creator": {"revenue": 25, "profitability": 35, "retention": 40, "acquisition": 30, "operations": 50},
    "local-business": {"revenue": 35, "profitability": 30, "retention": 45, "acquisition": 30, "operations": 45},
}

RISK_LABELS: dict[str, str] = {
    "revenue": "revenue generation",
    "profitability": "profitability and unit economics",
    "retention": "customer retention",
    "acquisition": "customer acquisition",
    "operations": "operational efficiency",
}

MAX_NEXT_STEPS = 7
MIN_NEXT_STEPS = 3


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class DimensionResult:
    """Result for one scoring dimension."""
    score: int
    confidence: float
    reasons: list[str] = field(default_factory=list)
    levers: list[str] = field(default_factory=list)
    defaulted: bool = False


@dataclass(frozen=True)
class NextStep:
    title: str
    why: str
    how_to_start: str
    effort: str  # low | medium | high


@dataclass
class HealthScore:
    score: int
    category: str
    dimensions: dict[str, DimensionResult]
    primary_risk: str
    fastest_lever: str
    next_steps: list[NextStep]
    missing_inputs: list[str]
    weights: dict[str, float]

    @property
    def dimension_scores(self) -> dict[str, int]:
        return {d: self.dimensions[d].score for d in DIMENSIONS}

    @property
    def confidence(self) -> dict[str, float]:
        return {d: self.dimensions[d].confidence for d in DIMENSIONS}

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "category": self.category,
            "dimensions": {d: asdict(r) for d, r in self.dimensions.items()},
            "primary_risk": self.primary_risk,
            "fastest_lever": self.fastest_lever,
            "next_steps": [asdict(s) for s in self.next_steps],
            "missing_inputs": list(self.missing_inputs),
            "weights": dict(self.weights),
        }


# ---------------------------------------------------------------------------
# Tier helpers
# ---------------------------------------------------------------------------


def _clamp(n: float, lo: int = 0, hi: int = 100) -> int:
    return int(max(lo, min(hi, n)))


def _at_least(value: float, tiers: tuple[tuple[float, int], ...], floor: int) -> int:
    """First score whose threshold *value* reaches; tiers ordered high to low."""
    for threshold, score in tiers:
        if value >= threshold:
            return score
    return floor


def _at_most(value: float, tiers: tuple[tuple[float, int], ...], floor: int) -> int:
    """First score whose ceiling *value* stays under; tiers ordered low to high."""
    for ceiling, score in tiers:
        if value <= ceiling:
            return score
    return floor


def _finish(name: str, category: str, scores: list[int], reasons: list[str], levers: list[str]) -> DimensionResult:
    fields_ = DIMENSION_FIELDS[name]
    confidence = round(len(scores) / len(fields_), 2)
    if not scores:
        reasons.append(f"No {name} data provided, score estimated conservatively.")
        return DimensionResult(
            score=DIMENSION_DEFAULTS[category][name], confidence=0.0,
            reasons=reasons, levers=levers, defaulted=True,
        )
    avg = round(sum(scores) / len(scores))
    return DimensionResult(score=_clamp(avg), confidence=confidence, reasons=reasons, levers=levers)


# ---------------------------------------------------------------------------
# Dimension scoring
# ---------------------------------------------------------------------------


def score_revenue(m: MetricSet, category: str) -> DimensionResult:
    reasons: list[str] = []
    levers: list[str] = []
    scores: list[int] = []

    if m.revenue_monthly is not None:
        s = _at_least(m.revenue_monthly, ((50_000, 90), (15_000, 75), (5_000, 60), (1_000, 40)), 20)
        scores.append(s)
        if s <= 20:
            reasons.append("Monthly revenue is below $1k, early stage.")
        elif s <= 40:
            reasons.append("Revenue between $1k and $5k, gaining traction.")
        elif s <= 60:
            reasons.append("Revenue between $5k and $15k, solid foundation.")
        elif s <= 75:
            reasons.append("Revenue between $15k and $50k, scaling nicely.")
        else:
            reasons.append("Revenue above $50k/mo, strong position.")

    if m.avg_order_value is not None:
        scores.append(_at_least(m.avg_order_value, ((200, 80), (50, 60)), 35))
        if m.avg_order_value < 50:
            levers.append("Increasing average order value (bundles, upsells) is a fast revenue lever.")

    # Traffic x conversion x AOV as a sanity check on the top line.
    if None not in (m.traffic_monthly, m.conversion_rate_pct, m.avg_order_value, m.revenue_monthly):
        implied = m.traffic_monthly * (m.conversion_rate_pct / 100) * m.avg_order_value
        if math.isfinite(implied) and implied > m.revenue_monthly * 1.3:
            levers.append(
                f"Traffic x conversion x AOV implies ~${round(implied):,}/mo, "
                "there may be unrealized revenue."
            )

    result = _finish("revenue", category, scores, reasons, levers)
    if not result.defaulted and result.score >= 70 and not result.levers:
        result.levers.append("Consider diversifying revenue streams to reduce dependency risk.")
    return result


def score_profitability(m: MetricSet, category: str) -> DimensionResult:
    reasons: list[str] = []
    levers: list[str] = []
    scores: list[int] = []

    if m.gross_margin_pct is not None:
        scores.append(_at_least(m.gross_margin_pct, ((70, 90), (50, 70), (30, 50)), 25))
        if m.gross_margin_pct < 50:
            reasons.append(f"Gross margin at {m.gross_margin_pct:g}%, below healthy threshold.")
            levers.append("Review COGS and pricing to improve gross margin above 50%.")
        else:
            reasons.append(f"Gross margin at {m.gross_margin_pct:g}%, healthy.")

    if m.net_profit_monthly is not None:
        if m.net_profit_monthly < 0:
            scores.append(15)
            reasons.append("Business is operating at a loss.")
            levers.append("Cut non-essential expenses or raise prices to reach break-even.")
        else:
            scores.append(_at_least(m.net_profit_monthly, ((10_000, 90), (1_000, 70)), 45))
            if m.net_profit_monthly < 1_000:
                reasons.append("Net profit under $1k/mo, thin margins.")
                levers.append("Target 15%+ net margin by reducing overhead or increasing price.")

    if m.runway_months is not None:
        scores.append(_at_least(m.runway_months, ((18, 90), (12, 75), (6, 50)), 20))
        if m.runway_months < 6:
            reasons.append(f"Only {m.runway_months:g} months of runway, urgent.")
            levers.append("Extend runway by cutting burn or securing revenue commitments.")

    return _finish("profitability", category, scores, reasons, levers)


def score_retention(m: MetricSet, category: str) -> DimensionResult:
    reasons: list[str] = []
    levers: list[str] = []
    scores: list[int] = []

    if m.churn_monthly_pct is not None:
        scores.append(_at_most(m.churn_monthly_pct, ((2, 90), (5, 70), (10, 45)), 15))
        if m.churn_monthly_pct > 5:
            reasons.append(f"Monthly churn at {m.churn_monthly_pct:g}%, above healthy range.")
            levers.append("Implement a churn-reduction campaign: exit surveys, win-back emails, better onboarding.")
        else:
            reasons.append(f"Monthly churn at {m.churn_monthly_pct:g}%, well controlled.")

    if m.ltv is not None:
        scores.append(_at_least(m.ltv, ((1_000, 85), (300, 65), (100, 45)), 25))
        ratio = m.ltv_to_cac
        if ratio is not None and ratio < 3:
            reasons.append(f"LTV:CAC ratio is {ratio:.1f}x, should be 3x+.")
            levers.append("Improve LTV through retention or reduce CAC through organic acquisition.")
        elif ratio is not None:
            reasons.append(f"LTV:CAC ratio is {ratio:.1f}x, efficient.")

    return _finish("retention", category, scores, reasons, levers)


def score_acquisition(m: MetricSet, category: str) -> DimensionResult:
    reasons: list[str] = []
    levers: list[str] = []
    scores: list[int] = []

    if m.traffic_monthly is not None:
        scores.append(_at_least(m.traffic_monthly, ((50_000, 90), (10_000, 70), (2_000, 50)), 25))
        if m.traffic_monthly < 2_000:
            reasons.append("Monthly traffic below 2k, limited top-of-funnel.")
            levers.append("Invest in content marketing or paid acquisition to drive traffic above 5k/mo.")

    if m.conversion_rate_pct is not None:
        scores.append(_at_least(m.conversion_rate_pct, ((5, 90), (3, 75), (1, 50)), 25))
        if m.conversion_rate_pct < 2:
            reasons.append(f"Conversion rate at {m.conversion_rate_pct:g}%, below average.")
            levers.append("A/B test landing pages, simplify checkout, add social proof to improve conversion.")
        else:
            reasons.append(f"Conversion rate at {m.conversion_rate_pct:g}%, solid.")

    if m.cac is not None:
        scores.append(_at_most(m.cac, ((20, 90), (50, 75), (150, 55)), 25))
        if m.cac > 100:
            reasons.append(f"CAC at ${m.cac:g}, high. Watch unit economics.")
            levers.append("Shift budget toward organic channels or referral programs to lower CAC.")

    return _finish("acquisition", category, scores, reasons, levers)


def score_operations(m: MetricSet, category: str) -> DimensionResult:
    reasons: list[str] = []
    levers: list[str] = []
    scores: list[int] = []

    if m.ops_hours_per_week is not None:
        scores.append(_at_most(m.ops_hours_per_week, ((10, 90), (25, 70), (40, 50)), 25))
        if m.ops_hours_per_week > 30:
            reasons.append(f"Spending {m.ops_hours_per_week:g} hrs/wk on ops, high overhead.")
            levers.append("Automate repetitive tasks (invoicing, reporting) to reclaim 10+ hrs/week.")
        else:
            reasons.append(f"Ops load at {m.ops_hours_per_week:g} hrs/wk, manageable.")

    if m.fulfillment_days is not None:
        scores.append(_at_most(m.fulfillment_days, ((1, 95), (3, 80), (7, 55)), 25))
        if m.fulfillment_days > 5:
            reasons.append(f"Fulfillment takes {m.fulfillment_days:g} days, slow.")
            levers.append("Streamline fulfillment or switch to faster logistics partners.")

    if m.support_tickets_per_week is not None:
        scores.append(_at_most(m.support_tickets_per_week, ((5, 90), (20, 70), (50, 45)), 20))
        if m.support_tickets_per_week > 30:
            reasons.append(f"{m.support_tickets_per_week:g} support tickets/week, pointing at product or process issues.")
            levers.append("Create a self-service knowledge base and fix top recurring ticket causes.")

    return _finish("operations", category, scores, reasons, levers)


DIMENSION_SCORERS = {
    "revenue": score_revenue,
    "profitability": score_profitability,
    "retention": score_retention,
    "acquisition": score_acquisition,
    "operations": score_operations,
}


# ---------------------------------------------------------------------------
# Weights
# ---------------------------------------------------------------------------


def resolve_weights(category: str, weights: Mapping[str, Any] | None = None) -> dict[str, float]:
    """Return normalized weights for *category*, falling back to defaults if *weights* is unusable."""
    category = normalize_category(category)
    if weights is not None:
        try:
            values = {d: float(weights[d]) for d in DIMENSIONS}
        except (KeyError, TypeError, ValueError):
            values = None
        if values is not None and all(math.isfinite(v) and v >= 0 for v in values.values()):
            total = sum(values.values())
            if math.isfinite(total) and total > 0:
                return {d: v / total for d, v in values.items()}
        log.warning("Unusable weights for %s (%r), using defaults", category, weights)
    return dict(DEFAULT_WEIGHTS[category])


# ---------------------------------------------------------------------------
# Qualitative outputs
# ---------------------------------------------------------------------------


def format_risk(dimension: str, score: int) -> str:
    label = RISK_LABELS[dimension]
    if score < 40:
        return f"Critical risk in {label} (score: {score}/100), address immediately."
    if score < 60:
        return f"Primary risk area is {label} (score: {score}/100), improvement needed."
    return f"All dimensions above 60. Lowest is {label} at {score}/100, optimize for growth."


def _lowest(dimensions: dict[str, DimensionResult]) -> str:
    # min() keeps canonical order on ties
    return min(DIMENSIONS, key=lambda d: dimensions[d].score)


def identify_primary_risk(dimensions: dict[str, DimensionResult], m: MetricSet, category: str) -> str:
    override: str | None = None
    if category == "subscription-software":
        if m.churn_monthly_pct is not None and m.churn_monthly_pct > 8:
            override = "retention"
        elif m.ltv_to_cac is not None and m.ltv_to_cac < 2:
            override = "retention"
    elif category == "online-retail":
        if m.conversion_rate_pct is not None and m.conversion_rate_pct < 2:
            override = "acquisition"
        elif m.fulfillment_days is not None and m.fulfillment_days > 5:
            override = "operations"
    elif category == "service-agency":
        if m.ops_hours_per_week is not None and m.ops_hours_per_week > 50:
            override = "operations"
    elif category == "content-creator":
        if m.traffic_monthly is not None and m.traffic_monthly < 1_000:
            override = "acquisition"
    elif category == "local-business":
        if m.revenue_monthly is not None and m.revenue_monthly < 3_000:
            override = "revenue"

    dimension = override or _lowest(dimensions)
    return format_risk(dimension, dimensions[dimension].score)


def identify_fastest_lever(dimensions: dict[str, DimensionResult], m: MetricSet, category: str) -> str:
    if category == "subscription-software" and m.churn_monthly_pct is not None and m.churn_monthly_pct > 5:
        return "Reducing churn is your highest-leverage move, even 1% improvement compounds across recurring revenue."
    if category == "online-retail" and m.avg_order_value is not None and m.avg_order_value < 40:
        return "Increasing average order value (bundles, upsells, free-shipping thresholds) is the fastest retail lever."
    if category == "service-agency" and m.ops_hours_per_week is not None and m.ops_hours_per_week > 35:
        return "Automate or delegate ops tasks to free up hours for billable client work."
    if category == "content-creator" and m.conversion_rate_pct is not None and m.conversion_rate_pct < 2:
        return "Optimizing your conversion funnel (landing pages, CTAs, email sequences) monetizes your existing audience faster."
    if category == "local-business" and m.traffic_monthly is not None and m.traffic_monthly < 2_000:
        return "Local SEO and a maintained business listing drive foot traffic and calls with minimal spend."

    with_levers = [d for d in DIMENSIONS if dimensions[d].levers]
    if with_levers:
        weakest = min(with_levers, key=lambda d: dimensions[d].score)
        return dimensions[weakest].levers[0]
    if m.conversion_rate_pct is not None and m.conversion_rate_pct < 3:
        return "Improving conversion rate is typically the fastest revenue lever, test your checkout flow."
    return "Focus on the dimension with the lowest score to unlock the biggest improvement."


GENERIC_STEPS: tuple[NextStep, ...] = (
    NextStep(
        title="Complete your business profile",
        why="More data means a more accurate score and better recommendations.",
        how_to_start="Fill in any missing metrics in your profile.",
        effort="low",
    ),
    NextStep(
        title="Set up monthly metric tracking",
        why="Trend data over time reveals whether your changes are working.",
        how_to_start="Schedule a 15-minute monthly review to update your numbers or connect a data source.",
        effort="low",
    ),
    NextStep(
        title="Benchmark against your industry",
        why="Your numbers may be great or concerning depending on your market.",
        how_to_start="Research 2-3 competitors' public metrics to calibrate your expectations.",
        effort="low",
    ),
)


def _steps_for(dimension: str, result: DimensionResult, m: MetricSet) -> list[NextStep]:
    steps: list[NextStep] = []
    if dimension == "revenue" and result.score < 70:
        steps.append(NextStep(
            title="Increase monthly revenue baseline",
            why="Revenue is the foundation, all other metrics improve with a stronger top line.",
            how_to_start="Identify your best-performing offer and run a promotional push this week.",
            effort="high" if result.score < 40 else "medium",
        ))
    elif dimension == "profitability":
        if m.gross_margin_pct is not None and m.gross_margin_pct < 50:
            steps.append(NextStep(
                title="Improve gross margin above 50%",
                why="Low margins mean you need much more revenue to be profitable.",
                how_to_start="Audit your top 3 costs and identify one you can reduce by 10% this month.",
                effort="medium",
            ))
        if m.runway_months is not None and m.runway_months < 6:
            steps.append(NextStep(
                title="Extend cash runway past six months",
                why="Short runway forces reactive decisions.",
                how_to_start="Cut one recurring expense and secure one prepaid commitment this month.",
                effort="high",
            ))
    elif dimension == "retention":
        if m.churn_monthly_pct is not None and m.churn_monthly_pct > 5:
            steps.append(NextStep(
                title="Reduce monthly churn below 5%",
                why="High churn negates acquisition efforts, you're filling a leaky bucket.",
                how_to_start="Survey 10 recently churned customers to find the top reason, then fix it.",
                effort="medium",
            ))
        if m.ltv_to_cac is not None and m.ltv_to_cac < 3:
            steps.append(NextStep(
                title="Fix LTV:CAC ratio (target 3x+)",
                why="Spending too much to acquire customers who don't generate enough lifetime value.",
                how_to_start="Reduce CAC via organic channels or increase LTV with upsells and retention.",
                effort="high",
            ))
    elif dimension == "acquisition":
        if m.conversion_rate_pct is not None and m.conversion_rate_pct < 2:
            steps.append(NextStep(
                title="Optimize conversion rate",
                why="You have traffic but aren't converting, this is the fastest revenue win.",
                how_to_start="Run one A/B test on your main landing page CTA this week.",
                effort="low",
            ))
        if m.traffic_monthly is not None and m.traffic_monthly < 2_000:
            steps.append(NextStep(
                title="Scale traffic acquisition",
                why="Not enough visitors entering your funnel to generate consistent revenue.",
                how_to_start="Publish 2 search-optimized articles targeting buyer-intent keywords.",
                effort="medium",
            ))
    elif dimension == "operations" and m.ops_hours_per_week is not None and m.ops_hours_per_week > 30:
        steps.append(NextStep(
            title="Automate operational workflows",
            why="You're spending too many hours on ops instead of growth activities.",
            how_to_start="List your 5 most repetitive weekly tasks and automate the top one.",
            effort="low",
        ))
    return steps


def generate_next_steps(dimensions: dict[str, DimensionResult], m: MetricSet) -> list[NextStep]:
    """Ranked suggestions, weakest dimension first, padded to at least three."""
    steps: list[NextStep] = []
    for dimension in sorted(DIMENSIONS, key=lambda d: dimensions[d].score):
        if len(steps) >= MAX_NEXT_STEPS:
            break
        if dimensions[dimension].score >= 80 and len(steps) >= MIN_NEXT_STEPS:
            continue
        steps.extend(_steps_for(dimension, dimensions[dimension], m))

    for generic in GENERIC_STEPS:
        if len(steps) >= MIN_NEXT_STEPS:
            break
        if all(s.title != generic.title for s in steps):
            steps.append(generic)
    return steps[:MAX_NEXT_STEPS]


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def compute_health_score(
    metrics: MetricSet,
    category: str | None = DEFAULT_CATEGORY,
    weights: Mapping[str, Any] | None = None,
) -> HealthScore:
    """Score a merged metric set for a subject category.

    Args:
        metrics: Merged metrics, percentages already on a 0-100 scale.
        category: Subject category; unknown values fall back to the default.
        weights: Optional ``{dimension: weight}`` table for the category.
            Missing, negative or all-zero tables fall back to ``DEFAULT_WEIGHTS``.
    """
    category = normalize_category(category)
    dimensions = {d: DIMENSION_SCORERS[d](metrics, category) for d in DIMENSIONS}
    resolved = resolve_weights(category, weights)
    composite = _clamp(round(sum(dimensions[d].score * resolved[d] for d in DIMENSIONS)))
    return HealthScore(
        score=composite,
        category=category,
        dimensions=dimensions,
        primary_risk=identify_primary_risk(dimensions, metrics, category),
        fastest_lever=identify_fastest_lever(dimensions, metrics, category),
        next_steps=generate_next_steps(dimensions, metrics),
        missing_inputs=metrics.missing_fields(),
        weights=resolved,
    )


def profile_hash(metrics: MetricSet, category: str, result: HealthScore) -> str:
    """Stable 16-hex-char fingerprint of a scored profile, used as a cache address."""
    data = json.dumps({
        "category": normalize_category(category),
        "metrics": {f: metrics.get(f) for f in METRIC_FIELDS},
        "score": result.score,
        "dimensions": result.dimension_scores,
    }, sort_keys=True)
    return hashlib.sha256(data.encode("utf-8")).hexdigest()[:16]

