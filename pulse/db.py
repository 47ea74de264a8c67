from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine, inspect as sa_inspect, text
from sqlalchemy.orm import Session, sessionmaker

from pulse.models import Base

log = logging.getLogger(__name__)

_lock = threading.Lock()
_engine = None
_SessionLocal = None

DATA_DIR = Path(__file__).parent / "data"


def default_db_path() -> Path:
    env = os.environ.get("PULSE_DB_PATH")
    return Path(env) if env else DATA_DIR / "pulse.db"


def init_db(db_path: str | Path | None = None) -> None:
    global _engine, _SessionLocal
    with _lock:
        if _engine is not None:
            _engine.dispose()
        db_path = Path(db_path) if db_path is not None else default_db_path()
        db_path.parent.mkdir(parents=True, exist_ok=True)
        url = f"sqlite:///{db_path}"
        _engine = create_engine(url, connect_args={"check_same_thread": False})
        Base.metadata.create_all(_engine)
        _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
        _migrate_existing_db(_engine)
    log.info("Database ready at %s", db_path)


# Columns added after the first release: (table, column, DDL type + default).
_ADDED_COLUMNS = (
    ("subjects", "goal", "VARCHAR(50) DEFAULT ''"),
    ("subjects", "category_changed_at", "DATETIME"),
    ("subjects", "last_recalc_reason", "VARCHAR(30) DEFAULT ''"),
    ("metric_profiles", "field_sources_json", "TEXT DEFAULT '{}'"),
)


def _migrate_existing_db(engine) -> None:
    """Add columns that may be missing in older databases, then seed reference data."""
    inspector = sa_inspect(engine)
    for table, column, ddl in _ADDED_COLUMNS:
        if not inspector.has_table(table):
            continue
        columns = {col["name"] for col in inspector.get_columns(table)}
        if column not in columns:
            with engine.begin() as conn:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            log.info("Added column %s.%s", table, column)
    seed_reference_data(engine)


def seed_reference_data(engine) -> None:
    _seed_category_weights(engine)
    _seed_playbooks(engine)


def get_session() -> Session:
    with _lock:
        if _SessionLocal is None:
            raise RuntimeError("init_db() has not been called")
        factory = _SessionLocal
    return factory()  # type: ignore[misc]


@contextmanager
def session_scope() -> Generator[Session, None, None]:
    """Context manager providing a transactional session scope.

    Usage (MCP server, background tasks, scripts)::

        with session_scope() as session:
            ...
    """
    session = get_session()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def _seed_category_weights(engine) -> None:
    """Seed default dimension weights per category if the table is empty."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM category_weights")).scalar()
        if count > 0:
            return
    from pulse.scorer import DEFAULT_WEIGHTS
    with engine.begin() as conn:
        for category, weights in DEFAULT_WEIGHTS.items():
            conn.execute(text(
                "INSERT INTO category_weights (category, revenue, profitability, retention, acquisition, operations) "
                "VALUES (:category, :revenue, :profitability, :retention, :acquisition, :operations)"
            ), {"category": category, **weights})


def _seed_playbooks(engine) -> None:
    """Seed the playbook catalog if the table is empty."""
    with engine.connect() as conn:
        count = conn.execute(text("SELECT COUNT(*) FROM playbooks")).scalar()
        if count > 0:
            return
    from pulse.playbooks import DEFAULT_PLAYBOOKS, default_catalog, validate_catalog
    for problem in validate_catalog(default_catalog()):
        log.warning("Playbook catalog: %s", problem)
    with engine.begin() as conn:
        for order, pb in enumerate(DEFAULT_PLAYBOOKS):
            conn.execute(text(
                "INSERT INTO playbooks (slug, title, topic, categories_json, trigger_rule_json, steps_json, "
                "impact, effort, sort_order) VALUES (:slug, :title, :topic, :categories, :rule, :steps, "
                ":impact, :effort, :sort_order)"
            ), {
                "slug": pb["slug"], "title": pb["title"], "topic": pb["topic"],
                "categories": json.dumps(pb["categories"]), "rule": json.dumps(pb["trigger_rule"]),
                "steps": json.dumps(pb["steps"]), "impact": pb["impact"], "effort": pb["effort"],
                "sort_order": order,
            })
