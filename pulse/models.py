from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from pulse.metrics import DEFAULT_CATEGORY, DIMENSIONS
from pulse.utils import utcnow


class Base(DeclarativeBase):
    pass


class Subject(Base):
    __tablename__ = "subjects"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    category: Mapped[str] = mapped_column(String(50), default=DEFAULT_CATEGORY)
    goal: Mapped[str] = mapped_column(String(50), default="")
    category_changed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    latest_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    previous_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    score_change: Mapped[int] = mapped_column(Integer, default=0)
    score_change_reason: Mapped[str] = mapped_column(Text, default="")
    last_recalculated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_recalc_reason: Mapped[str] = mapped_column(String(30), default="")
    metric_sources_json: Mapped[str] = mapped_column(Text, default="{}")
    ai_summary: Mapped[str] = mapped_column(Text, default="")
    ai_summary_generated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    profile: Mapped[MetricProfile | None] = relationship(
        "MetricProfile", back_populates="subject", uselist=False, cascade="all, delete-orphan",
    )
    connections: Mapped[list[Connection]] = relationship(
        "Connection", back_populates="subject", cascade="all, delete-orphan", order_by="Connection.id",
    )
    snapshots: Mapped[list[ScoreSnapshot]] = relationship(
        "ScoreSnapshot", back_populates="subject", cascade="all, delete-orphan", order_by="ScoreSnapshot.id",
    )
    explanations: Mapped[list[Explanation]] = relationship(
        "Explanation", back_populates="subject", cascade="all, delete-orphan",
    )


class MetricProfile(Base):
    """Manually entered metrics, also refreshed by write-back after each reconciliation."""
    __tablename__ = "metric_profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, ForeignKey("subjects.id"), nullable=False, unique=True)
    revenue_monthly: Mapped[float | None] = mapped_column(Float, nullable=True)
    gross_margin_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    net_profit_monthly: Mapped[float | None] = mapped_column(Float, nullable=True)
    runway_months: Mapped[float | None] = mapped_column(Float, nullable=True)
    churn_monthly_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    conversion_rate_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
    traffic_monthly: Mapped[float | None] = mapped_column(Float, nullable=True)
    avg_order_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    cac: Mapped[float | None] = mapped_column(Float, nullable=True)
    ltv: Mapped[float | None] = mapped_column(Float, nullable=True)
    ops_hours_per_week: Mapped[float | None] = mapped_column(Float, nullable=True)
    fulfillment_days: Mapped[float | None] = mapped_column(Float, nullable=True)
    support_tickets_per_week: Mapped[float | None] = mapped_column(Float, nullable=True)
    # {field: {"source": "manual" | provider, "observed_at": iso timestamp}}
    field_sources_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    subject: Mapped[Subject] = relationship("Subject", back_populates="profile")


class Connection(Base):
    __tablename__ = "connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, ForeignKey("subjects.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)  # shopify | stripe | google-analytics | quickbooks
    status: Mapped[str] = mapped_column(String(20), default="connected")  # connected | error | disconnected
    access_token: Mapped[str] = mapped_column(Text, default="")
    refresh_token: Mapped[str] = mapped_column(Text, default="")
    external_id: Mapped[str] = mapped_column(String(200), default="")
    store_domain: Mapped[str] = mapped_column(String(300), default="")
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_sync_status: Mapped[str] = mapped_column(String(20), default="")
    last_sync_error: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    subject: Mapped[Subject] = relationship("Subject", back_populates="connections")
    sync_logs: Mapped[list[SyncLog]] = relationship("SyncLog", back_populates="connection", cascade="all, delete-orphan")


class SyncLog(Base):
    __tablename__ = "sync_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    connection_id: Mapped[int] = mapped_column(Integer, ForeignKey("connections.id"), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # success | error
    fields_updated: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[str] = mapped_column(Text, default="")
    duration_ms: Mapped[int] = mapped_column(Integer, default=0)
    synced_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    connection: Mapped[Connection] = relationship("Connection", back_populates="sync_logs")


class ScoreSnapshot(Base):
    """Immutable record of one recalculation. Append-only."""
    __tablename__ = "score_snapshots"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, ForeignKey("subjects.id"), nullable=False)
    category: Mapped[str] = mapped_column(String(50), nullable=False)
    reason: Mapped[str] = mapped_column(String(30), default="manual")
    score: Mapped[int] = mapped_column(Integer, nullable=False)
    revenue_score: Mapped[int] = mapped_column(Integer, nullable=False)
    profitability_score: Mapped[int] = mapped_column(Integer, nullable=False)
    retention_score: Mapped[int] = mapped_column(Integer, nullable=False)
    acquisition_score: Mapped[int] = mapped_column(Integer, nullable=False)
    operations_score: Mapped[int] = mapped_column(Integer, nullable=False)
    confidence_json: Mapped[str] = mapped_column(Text, default="{}")
    primary_risk: Mapped[str] = mapped_column(Text, default="")
    fastest_lever: Mapped[str] = mapped_column(Text, default="")
    next_steps_json: Mapped[str] = mapped_column(Text, default="[]")
    missing_inputs_json: Mapped[str] = mapped_column(Text, default="[]")
    metrics_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    subject: Mapped[Subject] = relationship("Subject", back_populates="snapshots")

    @property
    def dimension_scores(self) -> dict[str, int]:
        return {d: getattr(self, f"{d}_score") for d in DIMENSIONS}


class Playbook(Base):
    __tablename__ = "playbooks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    topic: Mapped[str] = mapped_column(String(50), default="")
    categories_json: Mapped[str] = mapped_column(Text, default="[]")
    trigger_rule_json: Mapped[str] = mapped_column(Text, default="{}")
    steps_json: Mapped[str] = mapped_column(Text, default="[]")
    impact: Mapped[str] = mapped_column(Text, default="")
    effort: Mapped[str] = mapped_column(String(20), default="medium")
    sort_order: Mapped[int] = mapped_column(Integer, default=0)


class CategoryWeights(Base):
    __tablename__ = "category_weights"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    revenue: Mapped[float] = mapped_column(Float, nullable=False)
    profitability: Mapped[float] = mapped_column(Float, nullable=False)
    retention: Mapped[float] = mapped_column(Float, nullable=False)
    acquisition: Mapped[float] = mapped_column(Float, nullable=False)
    operations: Mapped[float] = mapped_column(Float, nullable=False)

    def as_dict(self) -> dict[str, float]:
        return {d: getattr(self, d) for d in DIMENSIONS}


class Explanation(Base):
    """Cached explanation content, addressed by the scored profile's hash."""
    __tablename__ = "explanations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    subject_id: Mapped[int] = mapped_column(Integer, ForeignKey("subjects.id"), nullable=False)
    item_key: Mapped[str] = mapped_column(String(200), nullable=False)
    profile_hash: Mapped[str] = mapped_column(String(16), nullable=False)
    content_json: Mapped[str] = mapped_column(Text, default="{}")
    llm_model: Mapped[str] = mapped_column(String(100), default="")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    subject: Mapped[Subject] = relationship("Subject", back_populates="explanations")
