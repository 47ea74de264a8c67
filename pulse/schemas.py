"""Pydantic request/response schemas for the Pulse API."""
from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ValidationInfo, field_validator

from pulse.metrics import CATEGORIES, DIMENSIONS, GOALS, PERCENT_FIELDS, RECALC_REASONS


class MetricsIn(BaseModel):
    """Manual metric entry. Omitted fields are left alone, explicit ``null`` clears a field."""
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

    @field_validator("*")
    @classmethod
    def must_be_finite(cls, v: float | None, info: ValidationInfo) -> float | None:
        if v is None:
            return v
        if math.isnan(v) or math.isinf(v):
            raise ValueError("must be a finite number")
        if info.field_name in PERCENT_FIELDS and not 0 <= v <= 100:
            raise ValueError("percentages are on a 0-100 scale")
        return v


def _check_category(v: str | None) -> str | None:
    if v is not None and v not in CATEGORIES:
        raise ValueError(f"category must be one of: {', '.join(CATEGORIES)}")
    return v


def _check_goal(v: str | None) -> str | None:
    if v is not None and v != "" and v not in GOALS:
        raise ValueError(f"goal must be one of: {', '.join(GOALS)}")
    return v


class SubjectCreate(BaseModel):
    name: str
    category: str | None = None
    goal: str | None = None
    metrics: MetricsIn | None = None

    @field_validator("category")
    @classmethod
    def known_category(cls, v: str | None) -> str | None:
        return _check_category(v)

    @field_validator("goal")
    @classmethod
    def known_goal(cls, v: str | None) -> str | None:
        return _check_goal(v)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        return v


class SubjectUpdate(BaseModel):
    name: str | None = None
    category: str | None = None
    goal: str | None = None

    @field_validator("category")
    @classmethod
    def known_category(cls, v: str | None) -> str | None:
        return _check_category(v)

    @field_validator("goal")
    @classmethod
    def known_goal(cls, v: str | None) -> str | None:
        return _check_goal(v)


class RecalculateIn(BaseModel):
    reason: str = "manual"

    @field_validator("reason")
    @classmethod
    def known_reason(cls, v: str) -> str:
        if v not in RECALC_REASONS:
            raise ValueError(f"reason must be one of: {', '.join(RECALC_REASONS)}")
        return v


class RecalculateOut(BaseModel):
    subject_id: int
    new_score: int
    previous_score: int | None = None
    score_change: int
    deltas: dict[str, int]
    significant: bool
    reason: str
    attribution: dict[str, dict[str, str]]
    pulled: list[str] = []
    failed_sources: list[str] = []
    missing_inputs: list[str] = []
    summary_scheduled: bool


class SweepOut(BaseModel):
    succeeded: int
    failed: int
    average_change: float
    results: list[dict[str, Any]]


class ConnectionCreate(BaseModel):
    provider: str
    access_token: str
    refresh_token: str | None = None
    external_id: str | None = None
    store_domain: str | None = None


class WeightsIn(BaseModel):
    revenue: float
    profitability: float
    retention: float
    acquisition: float
    operations: float

    @field_validator(*DIMENSIONS)
    @classmethod
    def non_negative(cls, v: float) -> float:
        if not math.isfinite(v) or v < 0:
            raise ValueError("weights must be finite and non-negative")
        return v


class ExplainIn(BaseModel):
    item_key: str


class StatsOut(BaseModel):
    total: int
    scored: int
    average_score: float | None = None
    by_category: dict[str, int]
    connections_by_status: dict[str, int]
