"""Playbook trigger evaluation.

Pure functions: given the catalog, a subject's merged metrics, its category
and its latest snapshot, return the playbooks that apply, ranked by relevance.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from pulse.metrics import CATEGORIES, DERIVED_METRICS, DIMENSIONS, METRIC_FIELDS, METRIC_LABELS, MetricSet
from pulse.utils import json_parse, to_number

log = logging.getLogger(__name__)

GOAL_BOOST = 15

# Subject goal -> playbook topics that get the relevance boost.
GOAL_TOPICS: dict[str, tuple[str, ...]] = {
    "grow_revenue": ("revenue", "sales", "growth"),
    "improve_profitability": ("profitability", "margins", "costs"),
    "reduce_churn": ("retention", "churn", "loyalty"),
    "acquire_customers": ("acquisition", "marketing", "leads"),
    "streamline_operations": ("operations", "ops", "efficiency"),
}


@dataclass
class TriggerRule:
    dimension: str | None = None
    below_score: float | None = None
    metric: str | None = None
    below: float | None = None
    above: float | None = None
    categories: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any] | None) -> TriggerRule:
        data = data or {}
        return cls(
            dimension=data.get("dimension") or None,
            below_score=to_number(data.get("below_score")),
            metric=data.get("metric") or None,
            below=to_number(data.get("below")),
            above=to_number(data.get("above")),
            categories=list(data.get("categories") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for key in ("dimension", "below_score", "metric", "below", "above"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        if self.categories:
            out["categories"] = list(self.categories)
        return out

    def has_condition(self) -> bool:
        if self.dimension and self.below_score is not None:
            return True
        return bool(self.metric) and (self.below is not None or self.above is not None)


@dataclass
class PlaybookDefinition:
    slug: str
    title: str
    topic: str
    categories: list[str]
    trigger_rule: TriggerRule
    steps: list[dict[str, Any]]
    impact: str = ""
    effort: str = "medium"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> PlaybookDefinition:
        return cls(
            slug=data["slug"],
            title=data["title"],
            topic=data.get("topic", ""),
            categories=list(data.get("categories") or []),
            trigger_rule=TriggerRule.from_dict(data.get("trigger_rule")),
            steps=list(data.get("steps") or []),
            impact=data.get("impact", ""),
            effort=data.get("effort", "medium"),
        )

    @classmethod
    def from_model(cls, row: Any) -> PlaybookDefinition:
        """Build from a ``Playbook`` row."""
        return cls(
            slug=row.slug,
            title=row.title,
            topic=row.topic or "",
            categories=json_parse(row.categories_json, []),
            trigger_rule=TriggerRule.from_dict(json_parse(row.trigger_rule_json, {})),
            steps=json_parse(row.steps_json, []),
            impact=row.impact or "",
            effort=row.effort or "medium",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "slug": self.slug, "title": self.title, "topic": self.topic,
            "categories": list(self.categories), "trigger_rule": self.trigger_rule.to_dict(),
            "steps": list(self.steps), "impact": self.impact, "effort": self.effort,
        }


@dataclass
class TriggeredPlaybook:
    playbook: PlaybookDefinition
    reason: str
    relevance: int

    def to_dict(self) -> dict[str, Any]:
        return {**self.playbook.to_dict(), "trigger_reason": self.reason, "relevance": self.relevance}


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def _applies_to(categories: list[str], category: str) -> bool:
    return not categories or category in categories


def _fmt(value: float) -> str:
    return f"{value:g}"


def _metric_relevance(gap: float, bound: float) -> int:
    """50 plus the gap as a fraction of the bound's magnitude, clamped to 50-100."""
    fraction = min(1.0, gap / abs(bound)) if bound else 1.0
    return 50 + round(max(0.0, fraction) * 50)


def evaluate_rule(
    rule: TriggerRule,
    metrics: MetricSet,
    category: str,
    dimension_scores: Mapping[str, int] | None,
) -> tuple[bool, str, int]:
    """Return ``(matched, reason, relevance)`` for a single rule."""
    if not _applies_to(rule.categories, category):
        return False, "", 0

    if rule.dimension and rule.below_score is not None:
        if not dimension_scores or rule.dimension not in dimension_scores:
            return False, "", 0
        score = dimension_scores[rule.dimension]
        if score < rule.below_score:
            gap = rule.below_score - score
            reason = f"Your {rule.dimension} score is {score}/100 (below {_fmt(rule.below_score)})."
            return True, reason, int(min(100, 50 + gap))
        return False, "", 0

    if rule.metric:
        value = metrics.get(rule.metric)
        if value is None:
            return False, "", 0
        label = METRIC_LABELS.get(rule.metric, rule.metric)
        if rule.below is not None and value < rule.below:
            reason = f"Your {label} is {_fmt(value)}, below the {_fmt(rule.below)} threshold."
            return True, reason, _metric_relevance(rule.below - value, rule.below)
        if rule.above is not None and value > rule.above:
            reason = f"Your {label} is {_fmt(value)}, above the {_fmt(rule.above)} threshold."
            return True, reason, _metric_relevance(value - rule.above, rule.above)
        return False, "", 0

    return False, "", 0


def goal_matches(goal: str | None, topic: str) -> bool:
    if not goal:
        return False
    topic = topic.lower()
    return any(t in topic for t in GOAL_TOPICS.get(goal, ()))


def evaluate_playbooks(
    catalog: Iterable[PlaybookDefinition],
    metrics: MetricSet,
    category: str,
    dimension_scores: Mapping[str, int] | None,
    goal: str | None = None,
) -> list[TriggeredPlaybook]:
    """Matching playbooks sorted by relevance, highest first.

    ``dimension_scores`` comes from the latest snapshot and may be ``None``,
    in which case dimension rules never match. Ties keep catalog order.
    """
    triggered: list[TriggeredPlaybook] = []
    for playbook in catalog:
        if not _applies_to(playbook.categories, category):
            continue
        matched, reason, relevance = evaluate_rule(playbook.trigger_rule, metrics, category, dimension_scores)
        if not matched:
            continue
        if goal_matches(goal, playbook.topic):
            relevance = min(100, relevance + GOAL_BOOST)
        triggered.append(TriggeredPlaybook(playbook=playbook, reason=reason, relevance=relevance))
    triggered.sort(key=lambda t: t.relevance, reverse=True)
    return triggered


def validate_catalog(catalog: Iterable[PlaybookDefinition]) -> list[str]:
    """Configuration problems in *catalog*; an empty list means it is usable."""
    problems: list[str] = []
    known_metrics = set(METRIC_FIELDS) | set(DERIVED_METRICS)
    seen: set[str] = set()
    for playbook in catalog:
        rule = playbook.trigger_rule
        if playbook.slug in seen:
            problems.append(f"{playbook.slug}: duplicate slug")
        seen.add(playbook.slug)
        if not rule.has_condition():
            problems.append(f"{playbook.slug}: trigger rule has no condition and will never match")
        if rule.dimension and rule.dimension not in DIMENSIONS:
            problems.append(f"{playbook.slug}: unknown dimension {rule.dimension!r}")
        if rule.metric and rule.metric not in known_metrics:
            problems.append(f"{playbook.slug}: unknown metric {rule.metric!r}")
        for cat in [*playbook.categories, *rule.categories]:
            if cat not in CATEGORIES:
                problems.append(f"{playbook.slug}: unknown category {cat!r}")
        if not playbook.steps:
            problems.append(f"{playbook.slug}: no steps")
    return problems


# ---------------------------------------------------------------------------
# Seed catalog
# ---------------------------------------------------------------------------

_ALL = list(CATEGORIES)


def _steps(*pairs: tuple[str, str]) -> list[dict[str, Any]]:
    return [{"step": i, "title": title, "action": action} for i, (title, action) in enumerate(pairs, 1)]


DEFAULT_PLAYBOOKS: list[dict[str, Any]] = [
    {
        "slug": "revenue_surge",
        "title": "Revenue Surge Sprint",
        "topic": "revenue",
        "categories": _ALL,
        "trigger_rule": {"dimension": "revenue", "below_score": 70},
        "steps": _steps(
            ("Audit top revenue sources", "List your top 5 revenue streams and rank by margin. Identify the one with the most upside."),
            ("Create a 7-day promo push", "Pick your best offer and run a focused campaign: email blast, social posts and direct outreach."),
            ("Activate dormant leads", "Pull contacts who engaged in the last 90 days but didn't buy. Send a personalized re-engagement offer."),
            ("Add an upsell or bundle", "Create a bundle or upsell for your best-selling product. Test a 20-30% price increase with added value."),
            ("Set a daily revenue target", "Break your monthly goal into a daily number. Track it visibly and adjust tactics daily."),
        ),
        "impact": "10-25% revenue increase within 30 days when executed consistently.",
        "effort": "medium",
    },
    {
        "slug": "conversion_optimization",
        "title": "Conversion Rate Fix",
        "topic": "acquisition",
        "categories": ["online-retail", "content-creator", "local-business"],
        "trigger_rule": {
            "metric": "conversion_rate_pct", "below": 2.5,
            "categories": ["online-retail", "content-creator", "local-business"],
        },
        "steps": _steps(
            ("Identify the biggest drop-off", "Check your funnel analytics: where do most visitors leave? Landing page, product page, or checkout?"),
            ("Rewrite your main CTA", "Replace generic CTAs with benefit-driven copy. Test 'Get [outcome]' vs 'Buy now'."),
            ("Add social proof above the fold", "Place 2-3 testimonials, review count, or trust badges within the first screen visitors see."),
            ("Simplify checkout / signup", "Remove unnecessary form fields. Aim for 3 fields or fewer. Add guest checkout if missing."),
            ("Run one A/B test", "Test your highest-traffic page: change the headline or hero image. Run for 7 days minimum."),
            ("Add exit-intent capture", "Set up an exit-intent popup with a compelling offer to capture abandoning visitors."),
        ),
        "impact": "0.5-2% conversion rate improvement, translating to 20-80% more revenue from existing traffic.",
        "effort": "low",
    },
    {
        "slug": "reduce_churn",
        "title": "Churn Reduction Program",
        "topic": "retention",
        "categories": ["subscription-software"],
        "trigger_rule": {"metric": "churn_monthly_pct", "above": 5, "categories": ["subscription-software"]},
        "steps": _steps(
            ("Survey recent churns", "Email your last 20 churned users with a 1-question survey: 'What was the #1 reason you left?' Categorize responses."),
            ("Fix the top churn reason", "Take the most common reason and create a fix plan. Ship it within 7 days, even if it's a partial fix."),
            ("Build a usage health check", "Define 3-5 usage signals that predict churn. Flag at-risk accounts weekly."),
            ("Launch a save flow", "When users click 'cancel', offer a pause, a discount, or a call with support."),
            ("Improve onboarding", "Audit your first-7-day experience. Add a checklist, a welcome sequence, and a quick win users can hit in 5 minutes."),
        ),
        "impact": "1-3% monthly churn reduction, which compounds to 12-36% more annual retained revenue.",
        "effort": "high",
    },
    {
        "slug": "operational_efficiency",
        "title": "Ops Efficiency Overhaul",
        "topic": "ops",
        "categories": _ALL,
        "trigger_rule": {"metric": "ops_hours_per_week", "above": 40},
        "steps": _steps(
            ("Time-audit your week", "Track every task for 3 days. Categorize into billable, admin, repetitive, meetings and fire-fighting."),
            ("Identify your top 3 time sinks", "Rank the repetitive tasks by hours spent. These are your automation candidates."),
            ("Automate the #1 time sink", "Use an automation tool or a script for your most repetitive task. Target saving 3+ hours/week."),
            ("Create SOPs for delegation", "Write a step-by-step SOP for your 2nd and 3rd time sinks. Make them delegate-ready."),
            ("Batch and block your calendar", "Group similar tasks into time blocks. Protect 2+ hours daily for deep work."),
            ("Set an ops budget", "Cap ops hours at 25/week. Anything above that gets automated, delegated, or eliminated."),
        ),
        "impact": "10-15 hours/week reclaimed for revenue-generating work.",
        "effort": "medium",
    },
    {
        "slug": "pricing_power",
        "title": "Pricing & Margin Recovery",
        "topic": "profitability",
        "categories": _ALL,
        "trigger_rule": {"metric": "gross_margin_pct", "below": 30},
        "steps": _steps(
            ("Calculate true unit economics", "For your top 5 products or services, list every cost. Get your real per-unit margin."),
            ("Identify margin killers", "Find the items with margins below 20%. Decide: raise price, cut costs, or drop the product."),
            ("Test a price increase", "Raise prices 10-15% on one product. Monitor volume for 14 days."),
            ("Renegotiate vendor costs", "Contact your top 3 vendors and ask for a volume discount or better payment terms."),
            ("Introduce a premium tier", "Create a higher-priced version of your best seller with added value."),
        ),
        "impact": "5-15% gross margin improvement, directly increasing profit without new sales.",
        "effort": "medium",
    },
    {
        "slug": "ltv_expansion",
        "title": "LTV Expansion Playbook",
        "topic": "retention",
        "categories": ["online-retail", "subscription-software", "service-agency", "content-creator"],
        "trigger_rule": {"metric": "ltv_to_cac", "below": 3},
        "steps": _steps(
            ("Map your customer journey", "List every touchpoint from first purchase to year 1. Identify where customers go silent."),
            ("Launch a post-purchase sequence", "Set up 5 automated emails: thank you, tips, cross-sell, review request, reorder."),
            ("Create a loyalty program", "Design a simple points or tier system. Reward repeat purchases, referrals and reviews."),
            ("Add a subscription or retainer option", "Offer a recurring plan for your most-purchased item at a 10-15% discount."),
            ("Reduce time-to-second-purchase", "Find the average gap between purchases. Send a targeted nudge at 70% of that interval."),
        ),
        "impact": "Improving LTV:CAC from under 3x to 4x+ makes every marketing dollar 30-50% more effective.",
        "effort": "medium",
    },
]


def default_catalog() -> list[PlaybookDefinition]:
    return [PlaybookDefinition.from_dict(d) for d in DEFAULT_PLAYBOOKS]
