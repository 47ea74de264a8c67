"""Per-item explanations and playbook plans for a health score, cached by scored-profile hash.

An explanation is addressed by ``(subject_id, item_key, profile_hash)``. When
the subject's metrics, category or scores change, the hash changes and the
old rows simply stop being hit; they are pruned on the next write.
"""
from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from pulse.metrics import DIMENSION_LABELS, DIMENSIONS, METRIC_LABELS, MetricSet
from pulse.models import Explanation, Subject
from pulse.playbooks import PlaybookDefinition
from pulse.scorer import HealthScore, profile_hash
from pulse.summary import LLMCallError, LLMClient, has_credentials
from pulse.utils import json_parse, to_number

log = logging.getLogger(__name__)

ITEM_KINDS = ("dimension", "risk", "lever", "step")

EXPLAIN_SYSTEM_PROMPT = """\
You explain one item of a small business's health score to its owner.

You receive the business category, its metrics, the five dimension scores,
and the item to explain. Be concrete and reference the actual numbers.

Respond with ONLY valid JSON:
{
  "title": "<short title>",
  "explanation": "<2-3 sentences on why this item looks the way it does>",
  "actions": ["<concrete action>", "<concrete action>", "<concrete action>"]
}
"""


def parse_item_key(item_key: str, health: HealthScore) -> tuple[str, str]:
    """Validate *item_key* against the score and return ``(kind, target)``.

    Keys are ``dimension:<name>``, ``risk``, ``lever`` or ``step:<index>``.
    """
    kind, _, target = item_key.partition(":")
    if kind not in ITEM_KINDS:
        raise ValueError(f"Unknown item kind {kind!r}")
    if kind == "dimension" and target not in DIMENSIONS:
        raise ValueError(f"Unknown dimension {target!r}")
    if kind == "step":
        if not target.isdigit() or int(target) >= len(health.next_steps):
            raise ValueError(f"No next step at index {target!r}")
    return kind, target


def describe_item(kind: str, target: str, health: HealthScore) -> str:
    if kind == "dimension":
        result = health.dimensions[target]
        reasons = "; ".join(result.reasons) or "no data"
        return f"{DIMENSION_LABELS[target]} dimension, score {result.score}/100: {reasons}"
    if kind == "risk":
        return f"Primary risk: {health.primary_risk}"
    if kind == "lever":
        return f"Fastest lever: {health.fastest_lever}"
    step = health.next_steps[int(target)]
    return f"Next step: {step.title}. {step.why}"


def fallback_explanation(kind: str, target: str, health: HealthScore) -> dict[str, Any]:
    """Deterministic explanation built from the scorer's own reasons and levers."""
    if kind == "dimension":
        result = health.dimensions[target]
        return {
            "title": f"{DIMENSION_LABELS[target]}: {result.score}/100",
            "explanation": " ".join(result.reasons) or "Not enough data to score this dimension.",
            "actions": list(result.levers[:3]),
        }
    if kind == "risk":
        return {"title": "Primary risk", "explanation": health.primary_risk,
                "actions": [s.how_to_start for s in health.next_steps[:3]]}
    if kind == "lever":
        return {"title": "Fastest lever", "explanation": health.fastest_lever,
                "actions": [s.how_to_start for s in health.next_steps[:2]]}
    step = health.next_steps[int(target)]
    return {"title": step.title, "explanation": step.why, "actions": [step.how_to_start]}


def build_explain_prompt(item: str, metrics: MetricSet, health: HealthScore) -> str:
    lines = [f"CATEGORY: {health.category}", f"SCORE: {health.score}/100", "DIMENSIONS:"]
    lines += [f"  {DIMENSION_LABELS[d]}: {health.dimensions[d].score}" for d in DIMENSIONS]
    lines.append("METRICS:")
    lines += [f"  {METRIC_LABELS[k]}: {v:g}" for k, v in metrics.as_dict().items()] or ["  (none)"]
    lines.append(f"ITEM: {item}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


def _cached(session: Session, subject_id: int, item_key: str, digest: str) -> Explanation | None:
    return session.execute(
        select(Explanation).where(
            Explanation.subject_id == subject_id,
            Explanation.item_key == item_key,
            Explanation.profile_hash == digest,
        )
    ).scalars().first()


def _load_cached(session: Session, subject_id: int, item_key: str, digest: str, required: str) -> dict | None:
    """Cached content for the current hash; a row without *required* is discarded."""
    row = _cached(session, subject_id, item_key, digest)
    if row is None:
        return None
    content = json_parse(row.content_json, None)
    if isinstance(content, dict) and content.get(required):
        return content
    log.warning("Discarding malformed cached %s for subject %s", item_key, subject_id)
    session.delete(row)
    session.flush()
    return None


def _store(session: Session, subject_id: int, item_key: str, digest: str, content: dict, model: str) -> None:
    """Replace cached rows for *item_key* with *content* under the current hash."""
    session.execute(delete(Explanation).where(
        Explanation.subject_id == subject_id,
        Explanation.item_key == item_key,
        Explanation.profile_hash != digest,
    ))
    session.add(Explanation(
        subject_id=subject_id, item_key=item_key, profile_hash=digest,
        content_json=json.dumps(content), llm_model=model,
    ))


def _default_client(client: LLMClient | None) -> LLMClient | None:
    if client is None and has_credentials():
        return LLMClient()
    return client


# ---------------------------------------------------------------------------
# Score item explanations
# ---------------------------------------------------------------------------


async def explain_item(
    session: Session,
    subject: Subject,
    item_key: str,
    metrics: MetricSet,
    health: HealthScore,
    client: LLMClient | None = None,
) -> dict[str, Any]:
    """Return the explanation for *item_key*, generating and caching it if needed (caller must commit).

    Raises ``ValueError`` for an unknown item key.
    """
    kind, target = parse_item_key(item_key, health)
    digest = profile_hash(metrics, subject.category, health)

    cached = _load_cached(session, subject.id, item_key, digest, "explanation")
    if cached is not None:
        return {**cached, "cached": True, "profile_hash": digest}

    content, model = None, ""
    client = _default_client(client)
    if client is not None:
        try:
            reply = await client.call(
                EXPLAIN_SYSTEM_PROMPT, build_explain_prompt(describe_item(kind, target, health), metrics, health),
            )
        except LLMCallError as exc:
            log.warning("Explanation for %s failed, using fallback: %s", item_key, exc)
        else:
            if reply.get("explanation"):
                content, model = reply, client.model
            else:
                log.warning("LLM explanation for %s missing text, using fallback", item_key)
    if content is None:
        content = fallback_explanation(kind, target, health)

    _store(session, subject.id, item_key, digest, content, model)
    return {**content, "cached": False, "profile_hash": digest}


# ---------------------------------------------------------------------------
# Playbook expansion
# ---------------------------------------------------------------------------

PLAN_DAYS = 7

DEFAULT_TRIGGER_REASON = "Your metrics triggered this playbook."

EXPAND_SYSTEM_PROMPT = """\
You turn a playbook's base steps into a personalized 7-day action plan for a
small business owner, using their category, scores and the reason the playbook
was triggered.

Be specific and practical, one focused action per day. You give guidance only:
never claim to act on the owner's behalf and never promise guaranteed results.

Respond with ONLY valid JSON:
{
  "personalized_steps": [
    {"day": 1, "title": "...", "action": "...", "why_now": "..."}
  ],
  "kpi_targets": ["<metric to track>", "<metric to track>", "<metric to track>"],
  "risks": ["<risk to watch>", "<risk to watch>"],
  "suggested_tools": ["<tool>", "<tool>"],
  "copy_prompt": "<prompt the owner can paste into an AI assistant to execute day 1>"
}
personalized_steps has exactly 7 entries, days 1 through 7.
"""

# Playbook topic -> dimension whose score goes into the prompt.
TOPIC_DIMENSIONS = {"ops": "operations"}

FALLBACK_KPIS: dict[str, list[str]] = {
    "revenue": ["Daily revenue vs target", "Number of offers sent", "Average deal value"],
    "profitability": ["Gross margin %", "Cost per unit", "Net profit trend"],
    "retention": ["Monthly churn rate", "Repeat purchase rate", "Customer satisfaction score"],
    "acquisition": ["Conversion rate", "Cost per acquisition", "Lead volume"],
    "ops": ["Hours on ops per week", "Tasks automated", "Fulfillment time"],
}

FALLBACK_RISKS: dict[str, list[str]] = {
    "revenue": ["Discounting too aggressively can erode margins.",
                "Spreading focus across too many initiatives at once."],
    "profitability": ["Cutting costs that affect product quality.",
                      "Raising prices without communicating the added value."],
    "retention": ["Over-communicating can push customers away.",
                  "Loyalty programs with poor unit economics."],
    "acquisition": ["Spending on ads before the funnel converts.",
                    "Chasing vanity metrics over qualified leads."],
    "ops": ["Automating a broken process.", "Buying tools before you need them."],
}

FALLBACK_TOOLS = ["A spreadsheet for tracking daily metrics", "Your existing project management tool"]


def build_expand_prompt(playbook: PlaybookDefinition, reason: str, health: HealthScore) -> str:
    lines = [
        f"CATEGORY: {health.category}",
        f"PLAYBOOK: {playbook.title} (topic: {playbook.topic})",
        f"TRIGGER: {reason}",
        f"IMPACT: {playbook.impact}",
        f"EFFORT: {playbook.effort}",
        "BASE STEPS:",
    ]
    lines += [
        f"  {s.get('step', i)}. {s.get('title', '')}: {s.get('action', '')}"
        for i, s in enumerate(playbook.steps, 1)
    ]
    lines += [
        f"SCORE: {health.score}/100",
        f"PRIMARY RISK: {health.primary_risk}",
        f"FASTEST LEVER: {health.fastest_lever}",
    ]
    dimension = TOPIC_DIMENSIONS.get(playbook.topic, playbook.topic)
    if dimension in health.dimensions:
        lines.append(f"{DIMENSION_LABELS[dimension]} score: {health.dimensions[dimension].score}/100")
    return "\n".join(lines)


def fallback_expansion(playbook: PlaybookDefinition, reason: str, category: str) -> dict[str, Any]:
    """Deterministic plan: the base steps spread over the week, padded with review days."""
    focus = playbook.topic or "business"
    steps = [
        {
            "day": day,
            "title": str(s.get("title", "")),
            "action": str(s.get("action", "")),
            "why_now": f"{reason} Start here to build momentum." if day == 1
            else f"Builds on the previous step to strengthen your {focus}.",
        }
        for day, s in enumerate(playbook.steps[:PLAN_DAYS], 1)
    ]
    while len(steps) < PLAN_DAYS:
        day = len(steps) + 1
        if day == PLAN_DAYS:
            title = "Review and plan next week"
            action = ("Review what you accomplished this week. Write down results, what worked, "
                      "and what to adjust next week.")
        else:
            title = "Consolidate progress"
            action = "Review the steps so far, finish anything incomplete and prepare the next action."
        steps.append({"day": day, "title": title, "action": action,
                      "why_now": "Consistency compounds. Reviewing progress prevents drift."})
    key = playbook.topic if playbook.topic in FALLBACK_KPIS else "ops"
    return {
        "personalized_steps": steps,
        "kpi_targets": list(FALLBACK_KPIS[key]),
        "risks": list(FALLBACK_RISKS[key]),
        "suggested_tools": list(FALLBACK_TOOLS),
        "copy_prompt": (
            f'Help me execute "{playbook.title}" for my {category} business. {reason} '
            "I need a detailed day-by-day plan starting today. Focus on practical execution, not theory."
        ),
    }


def _strings(value: Any) -> list[str]:
    return [str(v) for v in value] if isinstance(value, list) else []


def clean_expansion(content: Any) -> dict[str, Any] | None:
    """Normalize an LLM plan; ``None`` when it has no usable steps."""
    if not isinstance(content, dict) or not isinstance(content.get("personalized_steps"), list):
        return None
    steps = []
    for i, s in enumerate(content["personalized_steps"], 1):
        if not isinstance(s, dict):
            continue
        day = to_number(s.get("day"))
        steps.append({
            "day": int(day) if day and 1 <= day <= PLAN_DAYS else i,
            "title": str(s.get("title") or ""),
            "action": str(s.get("action") or ""),
            "why_now": str(s.get("why_now") or ""),
        })
    if not steps:
        return None
    return {
        "personalized_steps": steps,
        "kpi_targets": _strings(content.get("kpi_targets")),
        "risks": _strings(content.get("risks")),
        "suggested_tools": _strings(content.get("suggested_tools")),
        "copy_prompt": str(content.get("copy_prompt") or ""),
    }


async def expand_playbook(
    session: Session,
    subject: Subject,
    playbook: PlaybookDefinition,
    reason: str,
    metrics: MetricSet,
    health: HealthScore,
    client: LLMClient | None = None,
) -> dict[str, Any]:
    """Return the personalized 7-day plan for *playbook*, cached by profile hash (caller must commit).

    LLM failures and unusable replies fall back to the deterministic plan.
    """
    item_key = f"playbook:{playbook.slug}"
    digest = profile_hash(metrics, subject.category, health)
    result = {"slug": playbook.slug, "title": playbook.title, "trigger_reason": reason, "profile_hash": digest}

    cached = _load_cached(session, subject.id, item_key, digest, "personalized_steps")
    if cached is not None:
        return {**result, "expanded": cached, "cached": True}

    expanded, model = None, ""
    client = _default_client(client)
    if client is not None:
        try:
            reply = await client.call(EXPAND_SYSTEM_PROMPT, build_expand_prompt(playbook, reason, health))
        except LLMCallError as exc:
            log.warning("Playbook expansion for %s failed, using fallback: %s", playbook.slug, exc)
        else:
            expanded = clean_expansion(reply)
            if expanded is None:
                log.warning("LLM plan for %s had no usable steps, using fallback", playbook.slug)
            else:
                model = client.model
    if expanded is None:
        expanded = fallback_expansion(playbook, reason, health.category)

    _store(session, subject.id, item_key, digest, expanded, model)
    return {**result, "expanded": expanded, "cached": False}
