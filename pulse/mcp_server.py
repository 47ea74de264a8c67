from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, contextmanager

from mcp.server.fastmcp import FastMCP
from sqlalchemy import select

from pulse import services
from pulse.db import get_session, init_db
from pulse.errors import PlaybookNotFound, ProfileIncomplete
from pulse.metrics import CATEGORIES, DIMENSION_FIELDS, GOALS
from pulse.models import Subject

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def pulse_lifespan(server: FastMCP) -> AsyncIterator[None]:
    init_db()
    yield


mcp = FastMCP(
    "Pulse",
    instructions=(
        "Pulse scores the health of small businesses on five dimensions. "
        "Use these tools to list subjects, recalculate scores, read score history "
        "and see which playbooks currently apply. Start with get_stats() for an "
        "overview, then list_subjects() and get_subject(id)."
    ),
    lifespan=pulse_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


@contextmanager
def _session():
    session = get_session()
    try:
        yield session
    finally:
        session.close()


def _get_or_error(session, model, entity_id, label="Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        return None, {"error": f"{label} {entity_id} not found"}
    return obj, None


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("pulse://overview")
def pulse_overview() -> str:
    """Overview of Pulse: data model, dimensions and workflow."""
    return json.dumps({
        "system": "Pulse, business health scoring",
        "data_model": {
            "subject": "A business with a category, an optional goal and a metric profile.",
            "metric_profile": "Manually entered metrics, refreshed from connected platforms on recalculation.",
            "connection": "A connected platform (shopify, stripe, google-analytics, quickbooks).",
            "snapshot": "Immutable record of one recalculation: composite score and five dimension scores.",
            "playbook": "Multi-step action plan triggered by a low dimension score or a metric threshold.",
        },
        "dimensions": {d: list(fields) for d, fields in DIMENSION_FIELDS.items()},
        "categories": list(CATEGORIES),
        "goals": list(GOALS),
        "workflow": [
            "1. get_stats() for coverage.",
            "2. list_subjects() to browse.",
            "3. recalculate_subject(id) to pull sources and rescore.",
            "4. score_history(id) to see how the score moved.",
            "5. triggered_playbooks(id) for ranked recommendations.",
            "6. expand_playbook(id, slug) for a 7-day plan.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools: Subjects
# ---------------------------------------------------------------------------


@mcp.tool()
def list_subjects(category: str | None = None, limit: int = 50) -> list[dict]:
    """List scored businesses.

    Args:
        category: Optional filter, one of subscription-software, online-retail,
                  service-agency, content-creator, local-business.
        limit: Maximum number of results.
    """
    with _session() as session:
        query = select(Subject).order_by(Subject.id)
        if category:
            query = query.where(Subject.category == category)
        return [services.subject_summary(s) for s in session.execute(query.limit(limit)).scalars().all()]


@mcp.tool()
def get_subject(subject_id: int) -> dict:
    """Full detail for one subject: metrics, source attribution, summary, latest snapshot."""
    with _session() as session:
        subject, err = _get_or_error(session, Subject, subject_id, "Subject")
        if err:
            return err
        return services.subject_detail(subject)


# ---------------------------------------------------------------------------
# Tools: Scoring
# ---------------------------------------------------------------------------


@mcp.tool()
async def recalculate_subject(subject_id: int, reason: str = "manual") -> dict:
    """Pull connected sources, rescore the subject and record a snapshot.

    Args:
        subject_id: The subject to recalculate.
        reason: manual, automated-pull or scheduled-sweep.
    """
    with _session() as session:
        _, err = _get_or_error(session, Subject, subject_id, "Subject")
        if err:
            return err
        try:
            return await services.recalculate_subject(session, subject_id, reason)
        except ProfileIncomplete as exc:
            return {"error": "Profile incomplete", "missing_inputs": exc.missing_inputs}
        except Exception as exc:
            session.rollback()
            log.warning("MCP recalculation failed for subject %s: %s", subject_id, exc)
            return {"error": f"Recalculation failed: {exc}"}


@mcp.tool()
def score_history(subject_id: int, limit: int = 20) -> list[dict] | dict:
    """Score snapshots for a subject, newest first."""
    with _session() as session:
        _, err = _get_or_error(session, Subject, subject_id, "Subject")
        if err:
            return err
        return services.score_history(session, subject_id, limit)


@mcp.tool()
async def run_sweep() -> dict:
    """Recalculate every subject that has a connected source."""
    with _session() as session:
        return await services.run_sweep(session)


# ---------------------------------------------------------------------------
# Tools: Playbooks
# ---------------------------------------------------------------------------


@mcp.tool()
def triggered_playbooks(subject_id: int) -> dict:
    """Playbooks that currently apply to a subject, most relevant first."""
    with _session() as session:
        _, err = _get_or_error(session, Subject, subject_id, "Subject")
        if err:
            return err
        return services.evaluate_subject_playbooks(session, subject_id)


@mcp.tool()
async def expand_playbook(subject_id: int, slug: str) -> dict:
    """Personalized 7-day plan for one playbook, with KPIs, risks and a ready-to-paste prompt.

    Args:
        subject_id: The subject the plan is for.
        slug: Playbook slug from triggered_playbooks.
    """
    with _session() as session:
        _, err = _get_or_error(session, Subject, subject_id, "Subject")
        if err:
            return err
        try:
            result = await services.expand_subject_playbook(session, subject_id, slug)
        except ProfileIncomplete as exc:
            return {"error": "Profile incomplete", "missing_inputs": exc.missing_inputs}
        except PlaybookNotFound as exc:
            return {"error": str(exc)}
        session.commit()
        return result


# ---------------------------------------------------------------------------
# Tools: Stats
# ---------------------------------------------------------------------------


@mcp.tool()
def get_stats() -> dict:
    """Summary statistics across all subjects."""
    with _session() as session:
        return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the Pulse MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
