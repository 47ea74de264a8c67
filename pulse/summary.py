"""Natural-language health summaries, regenerated after significant score changes.

Regeneration runs as a detached asyncio task: the recalculation that
triggered it never awaits it, and its failures are logged, not raised.
Without LLM credentials every entry point here is a no-op.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any

from pulse.db import session_scope
from pulse.metrics import DIMENSION_LABELS, DIMENSIONS, METRIC_LABELS
from pulse.models import Subject
from pulse.utils import utcnow

log = logging.getLogger(__name__)


class LLMCallError(Exception):
    """The LLM request failed or the reply was not a JSON object."""


# ---------------------------------------------------------------------------
# LLM Client
# ---------------------------------------------------------------------------

OPENAI_PROVIDERS = ("openai", "openai_compatible")

DEFAULT_MODELS = {"anthropic": "claude-haiku-4-5-20251001", "openai": "gpt-4o-mini"}

MAX_REPLY_TOKENS = 1024

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def has_credentials(provider: str | None = None) -> bool:
    """True when the configured LLM provider has credentials in the environment."""
    provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
    if provider == "anthropic":
        return bool(os.environ.get("ANTHROPIC_API_KEY"))
    if provider in OPENAI_PROVIDERS:
        return bool(os.environ.get("OPENAI_API_KEY") or os.environ.get("OPENAI_BASE_URL"))
    return False


class LLMClient:
    """JSON-reply client over Anthropic or an OpenAI-compatible endpoint, configured from the environment."""

    def __init__(self, provider: str | None = None, model: str | None = None):
        self.provider = provider or os.environ.get("LLM_PROVIDER", "anthropic")
        if self.provider == "anthropic":
            import anthropic
            self._client: Any = anthropic.AsyncAnthropic()
        elif self.provider in OPENAI_PROVIDERS:
            import openai
            # Local OpenAI-compatible servers accept any key.
            self._client = openai.AsyncOpenAI(
                api_key=os.environ.get("OPENAI_API_KEY") or "local",
                base_url=os.environ.get("OPENAI_BASE_URL") or None,
            )
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")
        family = "anthropic" if self.provider == "anthropic" else "openai"
        self.model = model or os.environ.get("LLM_MODEL") or DEFAULT_MODELS[family]

    async def _complete(self, system: str, user: str) -> str:
        if self.provider == "anthropic":
            response = await self._client.messages.create(
                model=self.model, max_tokens=MAX_REPLY_TOKENS, system=system,
                messages=[{"role": "user", "content": user}],
            )
            text = response.content[0].text.strip()
            m = _FENCED_JSON.search(text)
            return m.group(1) if m else text
        response = await self._client.chat.completions.create(
            model=self.model, max_tokens=MAX_REPLY_TOKENS,
            response_format={"type": "json_object"},
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
        )
        return response.choices[0].message.content or "{}"

    async def call(self, system: str, user: str) -> dict[str, Any]:
        """Send one system+user exchange and return the reply parsed as a JSON object."""
        try:
            text = await self._complete(system, user)
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}") from exc
        try:
            reply = json.loads(text)
        except json.JSONDecodeError as exc:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}") from exc
        if not isinstance(reply, dict):
            raise LLMCallError(f"LLM returned {type(reply).__name__}, expected an object")
        return reply


# ---------------------------------------------------------------------------
# Summary prompt
# ---------------------------------------------------------------------------

SUMMARY_SYSTEM_PROMPT = """\
You are a revenue advisor writing a short health summary for a small business owner.

You receive the business category, current and previous metrics, five dimension
scores (revenue, profitability, retention, acquisition, operations) with their
change since the last score, and a note on what changed.

Write 3-4 plain sentences: where the business stands, what moved and why
(mention the data source when one is named), and the one thing to do next.
No headings, no bullet points, no hype.

Respond with ONLY valid JSON:
{
  "summary": "<3-4 sentences>"
}
"""


@dataclass
class SummaryRequest:
    subject_id: int
    category: str
    current_metrics: dict[str, float]
    previous_metrics: dict[str, float]
    dimension_scores: dict[str, int]
    deltas: dict[str, int]
    score: int
    previous_score: int | None
    context: str = ""
    extras: dict[str, Any] = field(default_factory=dict)


def _format_metrics(metrics: dict[str, float]) -> str:
    if not metrics:
        return "  (none)"
    return "\n".join(f"  {METRIC_LABELS.get(k, k)}: {v:g}" for k, v in metrics.items())


def build_summary_prompt(req: SummaryRequest) -> str:
    change = req.score - req.previous_score if req.previous_score is not None else 0
    lines = [
        f"CATEGORY: {req.category}",
        f"SCORE: {req.score}/100 (previous: {req.previous_score if req.previous_score is not None else 'none'}, "
        f"change: {change:+d})",
        "DIMENSIONS:",
    ]
    for d in DIMENSIONS:
        lines.append(f"  {DIMENSION_LABELS[d]}: {req.dimension_scores.get(d, 0)} ({req.deltas.get(d, 0):+d})")
    lines.append("CURRENT METRICS:")
    lines.append(_format_metrics(req.current_metrics))
    lines.append("PREVIOUS METRICS:")
    lines.append(_format_metrics(req.previous_metrics))
    if req.context:
        lines.append(f"CONTEXT: {req.context}")
    return "\n".join(lines)


def change_context(score: int, previous_score: int | None, deltas: dict[str, int], reason: str) -> str:
    if previous_score is None:
        return "This is the first score for this business."
    moved = ", ".join(
        f"{DIMENSION_LABELS[d]} {deltas[d]:+d}"
        for d in sorted(DIMENSIONS, key=lambda d: -abs(deltas.get(d, 0)))
        if deltas.get(d)
    ) or "none"
    return (
        f"The score changed by {score - previous_score:+d} points (from {previous_score} to {score}). "
        f"Dimension changes: {moved}. {reason}".strip()
    )


# ---------------------------------------------------------------------------
# Generation and background scheduling
# ---------------------------------------------------------------------------


async def generate_summary(req: SummaryRequest, client: LLMClient | None = None) -> str | None:
    """Return summary text, or ``None`` when no LLM is configured or it returned nothing."""
    if client is None:
        if not has_credentials():
            log.debug("No LLM credentials, skipping summary for subject %s", req.subject_id)
            return None
        client = LLMClient()
    raw = await client.call(SUMMARY_SYSTEM_PROMPT, build_summary_prompt(req))
    text = str(raw.get("summary") or "").strip()
    return text or None


async def regenerate_summary(req: SummaryRequest, client: LLMClient | None = None) -> bool:
    """Generate and store a fresh summary on the subject. Uses its own session."""
    text = await generate_summary(req, client)
    if not text:
        return False
    with session_scope() as session:
        subject = session.get(Subject, req.subject_id)
        if subject is None:
            return False
        subject.ai_summary = text
        subject.ai_summary_generated_at = utcnow()
        session.commit()
    log.info("Regenerated summary for subject %s", req.subject_id)
    return True


_background_tasks: set[asyncio.Task] = set()


def _on_summary_done(task: asyncio.Task) -> None:
    _background_tasks.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        log.warning("Summary regeneration failed: %s", exc)


def schedule_summary(req: SummaryRequest, client: LLMClient | None = None) -> asyncio.Task | None:
    """Fire-and-forget summary regeneration. Returns the task, or ``None`` if there is nothing to do."""
    if client is None and not has_credentials():
        return None
    task = asyncio.create_task(regenerate_summary(req, client))
    _background_tasks.add(task)
    task.add_done_callback(_on_summary_done)
    return task
