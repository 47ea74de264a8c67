"""Change tracking between consecutive score snapshots.

The previous snapshot is always passed in explicitly. A change is significant
when the composite moved by at least ``significance_threshold()`` points; the
dimension with the largest absolute delta is then named as the driver.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from pulse.metrics import DIMENSION_FIELDS, DIMENSION_LABELS, DIMENSIONS

log = logging.getLogger(__name__)

DEFAULT_SIGNIFICANT_CHANGE = 3
MAX_REASON_LENGTH = 120

POSITIVE_REASONS: dict[str, str] = {
    "revenue": "monthly revenue increased",
    "profitability": "margins improved or costs decreased",
    "retention": "churn decreased or customer value grew",
    "acquisition": "traffic and conversion metrics improved",
    "operations": "operational efficiency improved",
}

NEGATIVE_REASONS: dict[str, str] = {
    "revenue": "monthly revenue declined",
    "profitability": "margins compressed or costs increased",
    "retention": "churn increased or customer value fell",
    "acquisition": "traffic or conversion rate dropped",
    "operations": "operational load increased",
}


class Scored(Protocol):
    score: int

    @property
    def dimension_scores(self) -> dict[str, int]: ...


@dataclass
class ChangeReport:
    score: int
    previous_score: int | None
    score_change: int
    deltas: dict[str, int] = field(default_factory=dict)
    significant: bool = False
    driver: str | None = None
    source: str | None = None
    reason: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "score": self.score, "previous_score": self.previous_score,
            "score_change": self.score_change, "deltas": dict(self.deltas),
            "significant": self.significant, "driver": self.driver,
            "source": self.source, "reason": self.reason,
        }


def significance_threshold() -> int:
    raw = os.environ.get("PULSE_SIGNIFICANT_CHANGE", "")
    try:
        return int(raw) if raw else DEFAULT_SIGNIFICANT_CHANGE
    except ValueError:
        log.warning("Ignoring invalid PULSE_SIGNIFICANT_CHANGE=%r", raw)
        return DEFAULT_SIGNIFICANT_CHANGE


def compute_deltas(current: Scored, previous: Scored | None) -> dict[str, int]:
    if previous is None:
        return {d: 0 for d in DIMENSIONS}
    now, before = current.dimension_scores, previous.dimension_scores
    return {d: int(now[d]) - int(before[d]) for d in DIMENSIONS}


def pick_driver(deltas: Mapping[str, int]) -> str | None:
    """Dimension with the largest absolute delta; first in canonical order on ties."""
    best: str | None = None
    for dimension in DIMENSIONS:
        delta = abs(deltas.get(dimension, 0))
        if delta and (best is None or delta > abs(deltas[best])):
            best = dimension
    return best


def likely_source(dimension: str, attribution: Mapping[str, Any] | None) -> str | None:
    """Most recent external source among the dimension's fields, if any."""
    if not attribution:
        return None
    candidates = []
    for name in DIMENSION_FIELDS[dimension]:
        entry = attribution.get(name)
        if entry is None or entry.source == "manual":
            continue
        candidates.append(entry)
    if not candidates:
        return None
    return max(candidates, key=lambda a: a.observed_at).source


def describe_change(dimension: str, delta: int, source: str | None = None) -> str:
    label = DIMENSION_LABELS[dimension]
    if delta > 0:
        text = f"{label} improved {delta} pts, {POSITIVE_REASONS[dimension]}"
    else:
        text = f"{label} dropped {abs(delta)} pts, {NEGATIVE_REASONS[dimension]}"
    if source:
        text += f" (via {source})"
    return text[:MAX_REASON_LENGTH]


def track_change(
    current: Scored,
    previous: Scored | None,
    attribution: Mapping[str, Any] | None = None,
    threshold: int | None = None,
) -> ChangeReport:
    """Diff *current* against the immediately preceding snapshot.

    Args:
        current: The snapshot just persisted.
        previous: The snapshot before it, or ``None`` for a first score.
        attribution: ``{field: Attribution}`` from the reconciliation, used
            to name the source behind the driving dimension.
        threshold: Minimum absolute composite change that counts as significant.
    """
    if threshold is None:
        threshold = significance_threshold()
    deltas = compute_deltas(current, previous)
    if previous is None:
        return ChangeReport(score=current.score, previous_score=None, score_change=0, deltas=deltas)

    change = int(current.score) - int(previous.score)
    report = ChangeReport(
        score=current.score, previous_score=previous.score, score_change=change, deltas=deltas,
        significant=abs(change) >= threshold,
    )
    if not report.significant:
        return report

    report.driver = pick_driver(deltas)
    if report.driver is None:
        direction = "rose" if change > 0 else "fell"
        report.reason = f"Overall score {direction} {abs(change)} pts after a weighting change"
        return report
    report.source = likely_source(report.driver, attribution)
    report.reason = describe_change(report.driver, deltas[report.driver], report.source)
    return report
