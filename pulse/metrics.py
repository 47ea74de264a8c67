"""Metric vocabulary: tracked fields, scoring dimensions and subject categories.

Every metric field belongs to exactly one dimension. Percentage fields
(``*_pct``) are on a 0-100 scale by the time a ``MetricSet`` reaches the
scorer; the reconciler and the request schemas enforce that.
"""
from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Mapping

from pulse.utils import to_number

DIMENSIONS: tuple[str, ...] = ("revenue", "profitability", "retention", "acquisition", "operations")

DIMENSION_LABELS: dict[str, str] = {
    "revenue": "Revenue",
    "profitability": "Profitability",
    "retention": "Retention",
    "acquisition": "Acquisition",
    "operations": "Operations",
}

DIMENSION_FIELDS: dict[str, tuple[str, ...]] = {
    "revenue": ("revenue_monthly", "avg_order_value"),
    "profitability": ("gross_margin_pct", "net_profit_monthly", "runway_months"),
    "retention": ("churn_monthly_pct", "ltv"),
    "acquisition": ("traffic_monthly", "conversion_rate_pct", "cac"),
    "operations": ("ops_hours_per_week", "fulfillment_days", "support_tickets_per_week"),
}

# Canonical order, highest-value inputs first.
METRIC_FIELDS: tuple[str, ...] = (
    "revenue_monthly",
    "gross_margin_pct",
    "net_profit_monthly",
    "runway_months",
    "churn_monthly_pct",
    "conversion_rate_pct",
    "traffic_monthly",
    "avg_order_value",
    "cac",
    "ltv",
    "ops_hours_per_week",
    "fulfillment_days",
    "support_tickets_per_week",
)

METRIC_LABELS: dict[str, str] = {
    "revenue_monthly": "monthly revenue",
    "gross_margin_pct": "gross margin %",
    "net_profit_monthly": "monthly net profit",
    "runway_months": "runway (months)",
    "churn_monthly_pct": "monthly churn %",
    "conversion_rate_pct": "conversion rate %",
    "traffic_monthly": "monthly traffic",
    "avg_order_value": "average order value",
    "cac": "customer acquisition cost",
    "ltv": "customer lifetime value",
    "ops_hours_per_week": "ops hours per week",
    "fulfillment_days": "fulfillment days",
    "support_tickets_per_week": "support tickets per week",
    "ltv_to_cac": "LTV:CAC ratio",
}

PERCENT_FIELDS = frozenset(f for f in METRIC_FIELDS if f.endswith("_pct"))
FIELD_DIMENSION: dict[str, str] = {f: d for d, fs in DIMENSION_FIELDS.items() for f in fs}
DERIVED_METRICS: tuple[str, ...] = ("ltv_to_cac",)

CATEGORIES: tuple[str, ...] = (
    "subscription-software",
    "online-retail",
    "service-agency",
    "content-creator",
    "local-business",
)
DEFAULT_CATEGORY = "service-agency"

GOALS: tuple[str, ...] = (
    "grow_revenue",
    "improve_profitability",
    "reduce_churn",
    "acquire_customers",
    "streamline_operations",
)

RECALC_REASONS: tuple[str, ...] = ("manual", "automated-pull", "scheduled-sweep")


def normalize_category(value: str | None) -> str:
    """Return *value* if it is a known category, else the default."""
    return value if value in CATEGORIES else DEFAULT_CATEGORY


@dataclass(frozen=True)
class MetricSet:
    """Sparse set of business metrics. ``None`` means unknown, never zero."""
    revenue_monthly: float | None = None
    gross_margin_pct: float | None = None
    net_profit_monthly: float | None = None
    runway_months: float | None = None
    churn_monthly_pct: float | None = None
    conversion_rate_pct: float | None = None
    traffic_monthly: float | None = None
    avg_order_value: float | None = None
    cac: float | None = None
    ltv: float | None = None
    ops_hours_per_week: float | None = None
    fulfillment_days: float | None = None
    support_tickets_per_week: float | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> MetricSet:
        return cls(**{f: to_number(data.get(f)) for f in METRIC_FIELDS})

    @classmethod
    def from_object(cls, obj: Any) -> MetricSet:
        """Build from any object exposing the metric fields as attributes (e.g. a MetricProfile row)."""
        if obj is None:
            return cls()
        return cls(**{f: to_number(getattr(obj, f, None)) for f in METRIC_FIELDS})

    @property
    def ltv_to_cac(self) -> float | None:
        if self.ltv is None or self.cac is None:
            return None
        return self.ltv / max(self.cac, 1.0)

    def get(self, name: str) -> float | None:
        if name == "ltv_to_cac":
            return self.ltv_to_cac
        if name not in METRIC_FIELDS:
            return None
        return getattr(self, name)

    def present_fields(self) -> list[str]:
        return [f for f in METRIC_FIELDS if getattr(self, f) is not None]

    def missing_fields(self) -> list[str]:
        return [f for f in METRIC_FIELDS if getattr(self, f) is None]

    def as_dict(self) -> dict[str, float]:
        """Present fields only."""
        return {f.name: getattr(self, f.name) for f in fields(self) if getattr(self, f.name) is not None}
