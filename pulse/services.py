"""Shared business logic for the Pulse API and MCP server."""
from __future__ import annotations

import json
import logging
import math
from collections import Counter
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse.connectors import all_connectors, get_connector
from pulse.errors import PlaybookNotFound, ProfileIncomplete, PulseError, SubjectNotFound
from pulse.explainer import DEFAULT_TRIGGER_REASON, expand_playbook, explain_item
from pulse.metrics import CATEGORIES, DIMENSIONS, METRIC_FIELDS, RECALC_REASONS, MetricSet, normalize_category
from pulse.models import CategoryWeights, Connection, MetricProfile, Playbook, ScoreSnapshot, Subject
from pulse.playbooks import PlaybookDefinition, evaluate_playbooks, evaluate_rule, validate_catalog
from pulse.reconciler import MANUAL_SOURCE, Attribution, reconcile
from pulse.scorer import DEFAULT_WEIGHTS, HealthScore, compute_health_score, resolve_weights
from pulse.summary import LLMClient, SummaryRequest, change_context, schedule_summary
from pulse.tracker import track_change
from pulse.utils import json_parse, utcnow

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Shared field tuples
# ---------------------------------------------------------------------------

SUBJECT_FIELDS = ("name", "goal")

CONNECTION_FIELDS = ("access_token", "refresh_token", "external_id", "store_domain")

# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def subject_summary(subject: Subject) -> dict:
    return {
        "id": subject.id, "name": subject.name, "category": subject.category,
        "goal": subject.goal or None,
        "latest_score": subject.latest_score, "previous_score": subject.previous_score,
        "score_change": subject.score_change, "score_change_reason": subject.score_change_reason,
        "last_recalculated_at": _iso(subject.last_recalculated_at),
        "has_profile": subject.profile is not None,
        "connections": len([c for c in subject.connections if c.status != "disconnected"]),
    }


def subject_detail(subject: Subject) -> dict:
    base = subject_summary(subject)
    base.update({
        "metrics": MetricSet.from_object(subject.profile).as_dict(),
        "metric_sources": json_parse(subject.metric_sources_json, {}),
        "ai_summary": subject.ai_summary or None,
        "ai_summary_generated_at": _iso(subject.ai_summary_generated_at),
        "category_changed_at": _iso(subject.category_changed_at),
        "last_recalc_reason": subject.last_recalc_reason or None,
        "connection_list": [connection_dict(c) for c in subject.connections],
        "latest_snapshot": snapshot_dict(subject.snapshots[-1]) if subject.snapshots else None,
    })
    return base


def snapshot_dict(snap: ScoreSnapshot) -> dict:
    return {
        "id": snap.id, "score": snap.score, "category": snap.category, "reason": snap.reason,
        "dimension_scores": snap.dimension_scores,
        "confidence": json_parse(snap.confidence_json, {}),
        "primary_risk": snap.primary_risk, "fastest_lever": snap.fastest_lever,
        "next_steps": json_parse(snap.next_steps_json, []),
        "missing_inputs": json_parse(snap.missing_inputs_json, []),
        "created_at": _iso(snap.created_at),
    }


def connection_dict(conn: Connection) -> dict:
    return {
        "id": conn.id, "provider": conn.provider, "status": conn.status,
        "external_id": conn.external_id, "store_domain": conn.store_domain,
        "last_sync_at": _iso(conn.last_sync_at), "last_sync_status": conn.last_sync_status or None,
        "last_sync_error": conn.last_sync_error or None,
    }


# ---------------------------------------------------------------------------
# Mutation helpers
# ---------------------------------------------------------------------------


def apply_updates(obj, updates: dict[str, Any], fields: tuple[str, ...]) -> None:
    """Apply non-None values from updates dict to an ORM object."""
    for field in fields:
        val = updates.get(field)
        if val is not None:
            setattr(obj, field, val)


def get_subject(session: Session, subject_id: int) -> Subject:
    subject = session.get(Subject, subject_id)
    if subject is None:
        raise SubjectNotFound(subject_id)
    return subject


def set_category(subject: Subject, category: str) -> bool:
    """Change the subject's category. Returns True if it actually changed."""
    category = normalize_category(category)
    if category == subject.category:
        return False
    subject.category = category
    subject.category_changed_at = utcnow()
    return True


def create_subject(session: Session, name: str, category: str | None = None, goal: str | None = None,
                   metrics: dict[str, float | None] | None = None) -> Subject:
    """Create a subject, with a metric profile when *metrics* is given (caller must commit)."""
    subject = Subject(name=name, category=normalize_category(category), goal=goal or "")
    session.add(subject)
    session.flush()
    if metrics is not None:
        update_manual_metrics(session, subject, metrics)
    return subject


def update_manual_metrics(session: Session, subject: Subject, updates: dict[str, float | None]) -> MetricProfile:
    """Store manually entered values, creating the profile on first use (caller must commit).

    Keys present in *updates* are written, ``None`` clears a field. Each
    written field is attributed to ``manual`` at the time of entry.
    """
    profile = subject.profile
    if profile is None:
        profile = MetricProfile(subject_id=subject.id, field_sources_json="{}")
        session.add(profile)
        subject.profile = profile
    now = utcnow()
    sources = json_parse(profile.field_sources_json, {})
    if not isinstance(sources, dict):
        sources = {}
    for name, value in updates.items():
        if name not in METRIC_FIELDS:
            continue
        setattr(profile, name, value)
        if value is None:
            sources.pop(name, None)
        else:
            sources[name] = Attribution(MANUAL_SOURCE, now).to_dict()
    profile.field_sources_json = json.dumps(sources, sort_keys=True)
    profile.updated_at = now
    return profile


# ---------------------------------------------------------------------------
# Category weights & playbook catalog
# ---------------------------------------------------------------------------


def get_category_weights(session: Session, category: str) -> dict[str, float]:
    """Stored weights for *category*, or the built-in defaults."""
    category = normalize_category(category)
    row = session.execute(
        select(CategoryWeights).where(CategoryWeights.category == category)
    ).scalars().first()
    return row.as_dict() if row else dict(DEFAULT_WEIGHTS[category])


def all_category_weights(session: Session) -> dict[str, dict[str, float]]:
    return {c: get_category_weights(session, c) for c in CATEGORIES}


def update_category_weights(session: Session, category: str, weights: dict[str, float]) -> dict[str, float]:
    """Normalize and store *weights* for *category* (caller must commit)."""
    if category not in CATEGORIES:
        raise PulseError(f"Unknown category {category!r}")
    if any(d not in weights for d in DIMENSIONS):
        raise PulseError("Weights must be given for all five dimensions")
    values = [weights[d] for d in DIMENSIONS]
    if not all(math.isfinite(v) and v >= 0 for v in values) or not 0 < sum(values) < math.inf:
        raise PulseError("Weights must be finite and non-negative with a positive sum")
    normalized = resolve_weights(category, weights)
    row = session.execute(
        select(CategoryWeights).where(CategoryWeights.category == category)
    ).scalars().first()
    if row is None:
        row = CategoryWeights(category=category, **normalized)
        session.add(row)
    else:
        apply_updates(row, normalized, DIMENSIONS)
    return normalized


def load_catalog(session: Session) -> list[PlaybookDefinition]:
    rows = session.execute(select(Playbook).order_by(Playbook.sort_order, Playbook.id)).scalars().all()
    return [PlaybookDefinition.from_model(r) for r in rows]


def catalog_problems(session: Session) -> list[str]:
    return validate_catalog(load_catalog(session))


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def latest_snapshot(session: Session, subject_id: int) -> ScoreSnapshot | None:
    return session.execute(
        select(ScoreSnapshot)
        .where(ScoreSnapshot.subject_id == subject_id)
        .order_by(ScoreSnapshot.created_at.desc(), ScoreSnapshot.id.desc())
    ).scalars().first()


def _snapshot_from(subject: Subject, health: HealthScore, metrics: MetricSet, reason: str) -> ScoreSnapshot:
    return ScoreSnapshot(
        subject_id=subject.id,
        category=health.category,
        reason=reason,
        score=health.score,
        **{f"{d}_score": health.dimensions[d].score for d in DIMENSIONS},
        confidence_json=json.dumps(health.confidence),
        primary_risk=health.primary_risk,
        fastest_lever=health.fastest_lever,
        next_steps_json=json.dumps(health.to_dict()["next_steps"]),
        missing_inputs_json=json.dumps(health.missing_inputs),
        metrics_json=json.dumps(metrics.as_dict()),
        created_at=utcnow(),
    )


def score_history(session: Session, subject_id: int, limit: int = 50) -> list[dict]:
    get_subject(session, subject_id)
    snaps = session.execute(
        select(ScoreSnapshot)
        .where(ScoreSnapshot.subject_id == subject_id)
        .order_by(ScoreSnapshot.created_at.desc(), ScoreSnapshot.id.desc())
        .limit(limit)
    ).scalars().all()
    return [snapshot_dict(s) for s in snaps]


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


async def recalculate_subject(
    session: Session, subject_id: int, reason: str = "manual", client: LLMClient | None = None,
) -> dict:
    """Reconcile, score, persist a snapshot and track the change for one subject.

    Commits before scheduling the summary task, which reads the subject from
    its own session. Raises ``SubjectNotFound`` or ``ProfileIncomplete``.
    """
    if reason not in RECALC_REASONS:
        raise PulseError(f"Unknown recalculation reason {reason!r}")
    subject = get_subject(session, subject_id)
    previous = latest_snapshot(session, subject.id)
    previous_metrics = json_parse(previous.metrics_json, {}) if previous else {}
    if previous is not None and previous.category != normalize_category(subject.category):
        log.info("Category changed for subject %s, not comparing against previous snapshot", subject.id)
        previous = None

    reconciliation = await reconcile(session, subject)
    health = compute_health_score(
        reconciliation.metrics, subject.category, get_category_weights(session, subject.category),
    )
    snapshot = _snapshot_from(subject, health, reconciliation.metrics, reason)
    session.add(snapshot)
    session.flush()

    report = track_change(snapshot, previous, reconciliation.attribution)

    subject.previous_score = report.previous_score
    subject.latest_score = report.score
    subject.score_change = report.score_change
    subject.score_change_reason = report.reason
    subject.last_recalculated_at = snapshot.created_at
    subject.last_recalc_reason = reason
    session.commit()

    task = None
    if report.significant:
        task = schedule_summary(SummaryRequest(
            subject_id=subject.id,
            category=health.category,
            current_metrics=reconciliation.metrics.as_dict(),
            previous_metrics=previous_metrics,
            dimension_scores=health.dimension_scores,
            deltas=report.deltas,
            score=report.score,
            previous_score=report.previous_score,
            context=change_context(report.score, report.previous_score, report.deltas, report.reason),
        ), client)

    return {
        "subject_id": subject.id,
        "new_score": report.score,
        "previous_score": report.previous_score,
        "score_change": report.score_change,
        "deltas": report.deltas,
        "significant": report.significant,
        "reason": report.reason,
        "attribution": reconciliation.sources_dict(),
        "pulled": reconciliation.pulled,
        "failed_sources": reconciliation.failed,
        "missing_inputs": health.missing_inputs,
        "summary_scheduled": task is not None,
    }


def evaluate_subject_playbooks(session: Session, subject_id: int) -> dict:
    """Triggered playbooks for the subject's stored metrics and latest snapshot."""
    subject = get_subject(session, subject_id)
    if subject.profile is None:
        return {"subject_id": subject.id, "has_profile": False, "triggered": []}
    snapshot = latest_snapshot(session, subject.id)
    triggered = evaluate_playbooks(
        load_catalog(session),
        MetricSet.from_object(subject.profile),
        normalize_category(subject.category),
        snapshot.dimension_scores if snapshot else None,
        goal=subject.goal or None,
    )
    return {"subject_id": subject.id, "has_profile": True, "triggered": [t.to_dict() for t in triggered]}


def sweep_candidates(session: Session) -> list[int]:
    """Ids of subjects with at least one live connection."""
    return list(session.execute(
        select(Subject.id)
        .join(Connection, Connection.subject_id == Subject.id)
        .where(Connection.status != "disconnected")
        .distinct()
        .order_by(Subject.id)
    ).scalars().all())


async def run_sweep(session: Session, client: LLMClient | None = None) -> dict:
    """Recalculate every connected subject sequentially. One failure never stops the sweep."""
    results: list[dict] = []
    succeeded = failed = 0
    changes: list[int] = []
    for subject_id in sweep_candidates(session):
        try:
            result = await recalculate_subject(session, subject_id, "scheduled-sweep", client)
        except Exception as exc:
            session.rollback()
            log.warning("Sweep failed for subject %s: %s", subject_id, exc)
            failed += 1
            results.append({"subject_id": subject_id, "ok": False, "error": str(exc)})
            continue
        succeeded += 1
        changes.append(abs(result["score_change"]))
        results.append({"subject_id": subject_id, "ok": True, "new_score": result["new_score"],
                        "score_change": result["score_change"], "significant": result["significant"]})
    average = round(sum(changes) / len(changes), 2) if changes else 0.0
    log.info("Sweep done: %d succeeded, %d failed, average change %.2f", succeeded, failed, average)
    return {"succeeded": succeeded, "failed": failed, "average_change": average, "results": results}


async def explain(
    session: Session, subject_id: int, item_key: str, client: LLMClient | None = None,
) -> dict:
    """Explain one item of the subject's current score (caller must commit)."""
    subject = get_subject(session, subject_id)
    if subject.profile is None:
        raise ProfileIncomplete(subject.id, list(METRIC_FIELDS))
    metrics = MetricSet.from_object(subject.profile)
    health = compute_health_score(metrics, subject.category, get_category_weights(session, subject.category))
    return await explain_item(session, subject, item_key, metrics, health, client)


async def expand_subject_playbook(
    session: Session, subject_id: int, slug: str, client: LLMClient | None = None,
) -> dict:
    """Personalized 7-day plan for one catalog playbook (caller must commit).

    The trigger reason is re-derived from the current score; a playbook that
    no longer matches still expands with a generic reason.
    """
    subject = get_subject(session, subject_id)
    if subject.profile is None:
        raise ProfileIncomplete(subject.id, list(METRIC_FIELDS))
    playbook = next((p for p in load_catalog(session) if p.slug == slug), None)
    if playbook is None:
        raise PlaybookNotFound(slug)
    metrics = MetricSet.from_object(subject.profile)
    health = compute_health_score(metrics, subject.category, get_category_weights(session, subject.category))
    matched, reason, _ = evaluate_rule(playbook.trigger_rule, metrics, health.category, health.dimension_scores)
    if not matched:
        reason = DEFAULT_TRIGGER_REASON
    return await expand_playbook(session, subject, playbook, reason, metrics, health, client)


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


def add_connection(session: Session, subject: Subject, provider: str, values: dict[str, Any]) -> Connection:
    """Attach a connected platform, reusing a disconnected row for the same provider (caller must commit)."""
    if get_connector(provider) is None:
        raise PulseError(f"Unknown provider {provider!r}")
    conn = next((c for c in subject.connections if c.provider == provider), None)
    if conn is None:
        conn = Connection(subject_id=subject.id, provider=provider)
        session.add(conn)
        subject.connections.append(conn)
    apply_updates(conn, values, CONNECTION_FIELDS)
    conn.status = "connected"
    conn.last_sync_error = ""
    return conn


async def disconnect_connection(session: Session, conn: Connection) -> Connection:
    """Revoke access at the provider (best effort) and mark disconnected (caller must commit)."""
    connector = get_connector(conn.provider)
    if connector is not None:
        try:
            await connector.disconnect(conn)
        except Exception as exc:
            log.warning("Revoking %s access for connection %s failed: %s", conn.provider, conn.id, exc)
    conn.status = "disconnected"
    conn.access_token = ""
    conn.refresh_token = ""
    return conn


def provider_catalog() -> list[dict]:
    return [c.describe() for c in all_connectors()]


def compute_stats(session: Session) -> dict:
    subjects = session.execute(select(Subject)).scalars().all()
    by_category: Counter[str] = Counter()
    connections: Counter[str] = Counter()
    scored = 0
    scores: list[int] = []
    for subject in subjects:
        by_category[subject.category] += 1
        if subject.latest_score is not None:
            scored += 1
            scores.append(subject.latest_score)
        for conn in subject.connections:
            connections[conn.status] += 1
    return {
        "total": len(subjects), "scored": scored,
        "average_score": round(sum(scores) / len(scores), 1) if scores else None,
        "by_category": dict(by_category), "connections_by_status": dict(connections),
    }
