from __future__ import annotations

import logging
import os
import secrets
from contextlib import asynccontextmanager
from typing import Generator

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from pulse import services
from pulse.db import get_session, init_db
from pulse.errors import PlaybookNotFound, ProfileIncomplete, PulseError, SubjectNotFound
from pulse.metrics import CATEGORIES
from pulse.models import Connection, Subject
from pulse.schemas import (
    ConnectionCreate,
    ExplainIn,
    MetricsIn,
    RecalculateIn,
    RecalculateOut,
    StatsOut,
    SubjectCreate,
    SubjectUpdate,
    SweepOut,
    WeightsIn,
)

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Pulse",
    version="0.1.0",
    description=(
        "Business health scoring API. Merges manually entered metrics with pulls "
        "from connected platforms, scores five dimensions, tracks changes between "
        "snapshots and ranks the playbooks that currently apply. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Subjects", "description": "Create, browse and update scored businesses."},
        {"name": "Metrics", "description": "Manual metric entry and connected data sources."},
        {"name": "Scoring", "description": "Recalculation, score history and the scheduled sweep."},
        {"name": "Playbooks", "description": "Triggered recommendations and the playbook catalog."},
        {"name": "Explanations", "description": "Per-item score explanations. Uses an LLM when credentials are set."},
        {"name": "Settings", "description": "Category weights."},
        {"name": "Stats", "description": "Aggregate statistics."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def db_session() -> Generator[Session, None, None]:
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _get_or_404(session: Session, model, entity_id: int, label: str = "Entity"):
    obj = session.execute(select(model).where(model.id == entity_id)).scalars().first()
    if not obj:
        raise HTTPException(404, f"{label} not found")
    return obj


@app.exception_handler(ProfileIncomplete)
async def profile_incomplete_handler(request: Request, exc: ProfileIncomplete):
    return JSONResponse(status_code=409, content={
        "detail": "Profile incomplete", "subject_id": exc.subject_id, "missing_inputs": exc.missing_inputs,
    })


@app.exception_handler(SubjectNotFound)
async def subject_not_found_handler(request: Request, exc: SubjectNotFound):
    return JSONResponse(status_code=404, content={"detail": "Subject not found"})


def _check_cron_secret(authorization: str | None) -> None:
    expected = os.environ.get("PULSE_CRON_SECRET")
    if not expected:
        return
    token = (authorization or "").removeprefix("Bearer ").strip()
    if not secrets.compare_digest(token, expected):
        raise HTTPException(401, "Invalid sweep token")


# ---------------------------------------------------------------------------
# Routes: Subjects
# ---------------------------------------------------------------------------


class SubjectListResponse(BaseModel):
    items: list[dict]
    total: int


@app.get("/api/subjects", response_model=SubjectListResponse,
         tags=["Subjects"], summary="List subjects, optionally filtered by category")
async def list_subjects(
    category: str | None = Query(None, description="One of: " + ", ".join(CATEGORIES)),
    session: Session = Depends(db_session),
):
    query = select(Subject).order_by(Subject.id)
    if category:
        query = query.where(Subject.category == category)
    items = [services.subject_summary(s) for s in session.execute(query).scalars().all()]
    return {"items": items, "total": len(items)}


@app.post("/api/subjects", status_code=201, tags=["Subjects"], summary="Create a subject, optionally with metrics")
async def create_subject(body: SubjectCreate, session: Session = Depends(db_session)):
    metrics = body.metrics.model_dump(exclude_unset=True) if body.metrics is not None else None
    subject = services.create_subject(session, body.name, body.category, body.goal, metrics)
    session.commit()
    return services.subject_detail(subject)


@app.get("/api/subjects/{subject_id}", tags=["Subjects"],
         summary="Get subject detail with metrics, attribution, summary and latest snapshot")
async def get_subject(subject_id: int, session: Session = Depends(db_session)):
    return services.subject_detail(_get_or_404(session, Subject, subject_id, "Subject"))


@app.put("/api/subjects/{subject_id}", tags=["Subjects"],
         summary="Update subject fields (partial update, null fields ignored)")
async def update_subject(subject_id: int, body: SubjectUpdate, session: Session = Depends(db_session)):
    subject = _get_or_404(session, Subject, subject_id, "Subject")
    services.apply_updates(subject, body.model_dump(), services.SUBJECT_FIELDS)
    if body.category is not None:
        services.set_category(subject, body.category)
    session.commit()
    return services.subject_detail(subject)


@app.delete("/api/subjects/{subject_id}", tags=["Subjects"],
            summary="Delete a subject with its metrics, connections and snapshots")
async def delete_subject(subject_id: int, session: Session = Depends(db_session)):
    subject = _get_or_404(session, Subject, subject_id, "Subject")
    session.delete(subject)
    session.commit()
    return {"ok": True}


# ---------------------------------------------------------------------------
# Routes: Metrics & Connections
# ---------------------------------------------------------------------------


@app.put("/api/subjects/{subject_id}/metrics", tags=["Metrics"],
         summary="Enter metrics manually (omitted fields unchanged, null clears)")
async def update_metrics(subject_id: int, body: MetricsIn, session: Session = Depends(db_session)):
    subject = _get_or_404(session, Subject, subject_id, "Subject")
    services.update_manual_metrics(session, subject, body.model_dump(exclude_unset=True))
    session.commit()
    return services.subject_detail(subject)


@app.get("/api/providers", tags=["Metrics"], summary="List supported data providers and their metric mappings")
async def list_providers():
    return services.provider_catalog()


@app.post("/api/subjects/{subject_id}/connections", status_code=201, tags=["Metrics"],
          summary="Connect a data provider using an already-issued access token")
async def create_connection(subject_id: int, body: ConnectionCreate, session: Session = Depends(db_session)):
    subject = _get_or_404(session, Subject, subject_id, "Subject")
    try:
        conn = services.add_connection(session, subject, body.provider, body.model_dump())
    except PulseError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return services.connection_dict(conn)


@app.delete("/api/connections/{connection_id}", tags=["Metrics"],
            summary="Disconnect a data provider and revoke its access")
async def delete_connection(connection_id: int, session: Session = Depends(db_session)):
    conn = _get_or_404(session, Connection, connection_id, "Connection")
    await services.disconnect_connection(session, conn)
    session.commit()
    return services.connection_dict(conn)


# ---------------------------------------------------------------------------
# Routes: Scoring (sweep before parameterized routes)
# ---------------------------------------------------------------------------


@app.post("/api/sweep", response_model=SweepOut, tags=["Scoring"],
          summary="Recalculate every subject with a connected source")
async def sweep(authorization: str | None = Header(None), session: Session = Depends(db_session)):
    _check_cron_secret(authorization)
    return await services.run_sweep(session)


@app.post("/api/subjects/{subject_id}/recalculate", response_model=RecalculateOut, tags=["Scoring"],
          summary="Pull sources, rescore and record a snapshot")
async def recalculate(subject_id: int, body: RecalculateIn | None = None, session: Session = Depends(db_session)):
    reason = body.reason if body is not None else "manual"
    return await services.recalculate_subject(session, subject_id, reason)


@app.get("/api/subjects/{subject_id}/history", tags=["Scoring"], summary="Score snapshots, newest first")
async def history(subject_id: int, limit: int = Query(50, ge=1, le=500), session: Session = Depends(db_session)):
    return services.score_history(session, subject_id, limit)


# ---------------------------------------------------------------------------
# Routes: Playbooks
# ---------------------------------------------------------------------------


@app.get("/api/subjects/{subject_id}/playbooks", tags=["Playbooks"],
         summary="Playbooks triggered for this subject, most relevant first")
async def triggered_playbooks(subject_id: int, session: Session = Depends(db_session)):
    return services.evaluate_subject_playbooks(session, subject_id)


@app.get("/api/playbooks", tags=["Playbooks"], summary="List the playbook catalog")
async def list_playbooks(session: Session = Depends(db_session)):
    return [p.to_dict() for p in services.load_catalog(session)]


@app.get("/api/playbooks/validate", tags=["Playbooks"], summary="Report configuration problems in the catalog")
async def validate_playbooks(session: Session = Depends(db_session)):
    problems = services.catalog_problems(session)
    return {"ok": not problems, "problems": problems}


@app.post("/api/subjects/{subject_id}/playbooks/{slug}/expand", tags=["Playbooks"],
          summary="Personalized 7-day plan for one playbook, cached until the score changes")
async def expand_playbook(subject_id: int, slug: str, session: Session = Depends(db_session)):
    try:
        result = await services.expand_subject_playbook(session, subject_id, slug)
    except PlaybookNotFound as exc:
        raise HTTPException(404, "Playbook not found") from exc
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Explanations
# ---------------------------------------------------------------------------


@app.post("/api/subjects/{subject_id}/explain", tags=["Explanations"],
          summary="Explain one score item (dimension:<name>, risk, lever, step:<n>)")
async def explain(subject_id: int, body: ExplainIn, session: Session = Depends(db_session)):
    try:
        result = await services.explain(session, subject_id, body.item_key)
    except ValueError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return result


# ---------------------------------------------------------------------------
# Routes: Settings
# ---------------------------------------------------------------------------


@app.get("/api/settings/weights", tags=["Settings"], summary="Dimension weights per category")
async def get_weights(session: Session = Depends(db_session)):
    return services.all_category_weights(session)


@app.put("/api/settings/weights/{category}", tags=["Settings"],
         summary="Replace a category's dimension weights (normalized to sum 1)")
async def put_weights(category: str, body: WeightsIn, session: Session = Depends(db_session)):
    try:
        weights = services.update_category_weights(session, category, body.model_dump())
    except PulseError as exc:
        raise HTTPException(400, str(exc)) from exc
    session.commit()
    return {"category": category, "weights": weights}


# ---------------------------------------------------------------------------
# Routes: Stats
# ---------------------------------------------------------------------------


@app.get("/api/stats", response_model=StatsOut, tags=["Stats"], summary="Get aggregate statistics")
async def get_stats(session: Session = Depends(db_session)):
    return services.compute_stats(session)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("pulse.app:app", host="127.0.0.1", port=8001, reload=True)


if __name__ == "__main__":
    main()
