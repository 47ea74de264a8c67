"""Tests for freshest-wins reconciliation of manual and pulled metrics."""
from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from pulse.connectors import MetricMapping, PullResult
from pulse.errors import ProfileIncomplete
from pulse.metrics import MetricSet
from pulse.models import Base, Connection, MetricProfile, Subject, SyncLog
from pulse.reconciler import Attribution, merge_pulls, overlay_manual, reconcile

T0 = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)
T1 = T0 + timedelta(hours=1)
T2 = T0 + timedelta(hours=2)

REVENUE = (MetricMapping("rev", "revenue", "revenue_monthly"),)
CHURN = (MetricMapping("churn", "retention", "churn_monthly_pct", ("percentage",)),)


@pytest.fixture()
def engine():
    eng = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(eng)
    return eng


@pytest.fixture()
def session(engine):
    sess = sessionmaker(bind=engine, expire_on_commit=False)()
    yield sess
    sess.close()


def _fake_connector(mappings, *, result=None, error=None):
    pull = AsyncMock(return_value=result) if error is None else AsyncMock(side_effect=error)
    return SimpleNamespace(mappings=mappings, pull=pull)


def _subject(session, manual: dict | None = None, providers=(), entered_at=T0):
    subject = Subject(name="Acme", category="online-retail")
    session.add(subject)
    session.flush()
    if manual is not None:
        sources = {k: {"source": "manual", "observed_at": entered_at.isoformat()} for k in manual}
        session.add(MetricProfile(subject_id=subject.id, field_sources_json=json.dumps(sources),
                                  updated_at=entered_at, **manual))
    for provider in providers:
        session.add(Connection(subject_id=subject.id, provider=provider, access_token="tok"))
    session.commit()
    session.refresh(subject)
    return subject


class TestMergePulls:
    def test_newer_pull_wins(self):
        values, held = merge_pulls([
            ("a", REVENUE, PullResult({"rev": 100}, T1)),
            ("b", REVENUE, PullResult({"rev": 200}, T2)),
        ])
        assert values["revenue_monthly"] == 200
        assert held["revenue_monthly"] == Attribution("b", T2)

    def test_order_of_sources_does_not_matter(self):
        values, held = merge_pulls([
            ("b", REVENUE, PullResult({"rev": 200}, T2)),
            ("a", REVENUE, PullResult({"rev": 100}, T1)),
        ])
        assert values["revenue_monthly"] == 200
        assert held["revenue_monthly"].source == "b"

    def test_equal_timestamp_keeps_first(self):
        values, _ = merge_pulls([
            ("a", REVENUE, PullResult({"rev": 100}, T1)),
            ("b", REVENUE, PullResult({"rev": 200}, T1)),
        ])
        assert values["revenue_monthly"] == 100

    def test_non_numeric_and_absent_values_are_skipped(self):
        values, held = merge_pulls([
            ("a", REVENUE + CHURN, PullResult({"rev": "n/a"}, T1)),
        ])
        assert values == {}
        assert held == {}

    def test_transform_applied(self):
        values, _ = merge_pulls([("a", CHURN, PullResult({"churn": 0.08}, T1))])
        assert values["churn_monthly_pct"] == pytest.approx(8)


class TestOverlayManual:
    def test_manual_fills_gaps_only_when_older(self):
        values, held = merge_pulls([("a", REVENUE, PullResult({"rev": 500}, T1))])
        manual = MetricSet(revenue_monthly=100, ltv=900)
        attribution = {"revenue_monthly": Attribution("manual", T0), "ltv": Attribution("manual", T0)}
        overlay_manual(values, held, manual, attribution)
        assert values == {"revenue_monthly": 500, "ltv": 900}
        assert held["revenue_monthly"].source == "a"
        assert held["ltv"].source == "manual"

    def test_manual_entered_later_wins(self):
        values, held = merge_pulls([("a", REVENUE, PullResult({"rev": 500}, T1))])
        overlay_manual(values, held, MetricSet(revenue_monthly=100),
                       {"revenue_monthly": Attribution("manual", T2)})
        assert values["revenue_monthly"] == 100
        assert held["revenue_monthly"] == Attribution("manual", T2)

    def test_field_absent_everywhere_stays_absent(self):
        values, held = merge_pulls([("a", REVENUE, PullResult({"rev": 500}, T1))])
        overlay_manual(values, held, MetricSet(), {})
        assert "cac" not in values
        assert MetricSet.from_mapping(values).cac is None


class TestReconcile:
    @pytest.mark.asyncio
    async def test_no_profile_raises(self, session):
        subject = _subject(session)
        with pytest.raises(ProfileIncomplete) as exc_info:
            await reconcile(session, subject)
        assert "revenue_monthly" in exc_info.value.missing_inputs

    @pytest.mark.asyncio
    async def test_manual_only(self, session):
        subject = _subject(session, {"revenue_monthly": 1000.0, "cac": 40.0})
        result = await reconcile(session, subject)
        assert result.metrics.revenue_monthly == 1000
        assert result.metrics.ltv is None
        assert result.attribution["cac"].source == "manual"
        assert result.pulled == [] and result.failed == []

    @pytest.mark.asyncio
    async def test_two_sources_freshest_wins_and_writes_back(self, session):
        subject = _subject(session, {"revenue_monthly": 1000.0}, providers=("shopify", "stripe"))
        connectors = {
            "shopify": _fake_connector(REVENUE, result=PullResult({"rev": 2000}, T1)),
            "stripe": _fake_connector(REVENUE, result=PullResult({"rev": 3000}, T2)),
        }
        with patch("pulse.reconciler.get_connector", side_effect=connectors.get):
            result = await reconcile(session, subject)
        session.commit()

        assert result.metrics.revenue_monthly == 3000
        assert result.attribution["revenue_monthly"].source == "stripe"
        assert result.pulled == ["shopify", "stripe"]
        assert subject.profile.revenue_monthly == 3000
        sources = json.loads(subject.metric_sources_json)
        assert sources["revenue_monthly"]["source"] == "stripe"
        stored = json.loads(subject.profile.field_sources_json)
        assert stored["revenue_monthly"]["source"] == "stripe"

    @pytest.mark.asyncio
    async def test_failing_source_is_logged_and_skipped(self, session):
        subject = _subject(session, {"revenue_monthly": 1000.0}, providers=("shopify", "stripe"))
        connectors = {
            "shopify": _fake_connector(REVENUE, error=RuntimeError("rate limited")),
            "stripe": _fake_connector(REVENUE, result=PullResult({"rev": 3000}, T2)),
        }
        with patch("pulse.reconciler.get_connector", side_effect=connectors.get):
            result = await reconcile(session, subject)
        session.commit()

        assert result.metrics.revenue_monthly == 3000
        assert result.failed == ["shopify"]
        shopify = next(c for c in subject.connections if c.provider == "shopify")
        assert shopify.status == "error"
        assert "rate limited" in shopify.last_sync_error
        logs = session.execute(select(SyncLog).order_by(SyncLog.id)).scalars().all()
        assert [(log.provider, log.status) for log in logs] == [("shopify", "error"), ("stripe", "success")]

    @pytest.mark.asyncio
    async def test_disconnected_and_unknown_providers_are_skipped(self, session):
        subject = _subject(session, {"revenue_monthly": 1000.0}, providers=("mystery",))
        subject.connections[0].status = "disconnected"
        session.add(Connection(subject_id=subject.id, provider="mystery-2", access_token="tok"))
        session.commit()
        session.refresh(subject)
        with patch("pulse.reconciler.get_connector", return_value=None):
            result = await reconcile(session, subject)
        assert result.pulled == [] and result.failed == []
        assert result.metrics.revenue_monthly == 1000
