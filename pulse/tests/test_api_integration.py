"""Integration tests for the FastAPI endpoints.

Uses TestClient against an in-memory database seeded with reference data.
"""
from __future__ import annotations

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from pulse.connectors import PullResult
from pulse.db import seed_reference_data
from pulse.models import Base, ScoreSnapshot, Subject
from pulse.schemas import WeightsIn
from pulse.utils import utcnow


@pytest.fixture()
def test_db():
    """Create a temporary SQLite in-memory database for testing.

    Uses StaticPool so all connections share the same in-memory database.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    seed_reference_data(engine)
    TestSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return engine, TestSession


@pytest.fixture()
def client(test_db, tmp_path, monkeypatch):
    """FastAPI TestClient using in-memory database."""
    monkeypatch.setenv("PULSE_DB_PATH", str(tmp_path / "pulse.db"))
    monkeypatch.setenv("LLM_PROVIDER", "none")
    monkeypatch.delenv("PULSE_CRON_SECRET", raising=False)
    engine, TestSession = test_db
    from pulse.app import app, db_session

    def override_db_session():
        session = TestSession()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    app.dependency_overrides[db_session] = override_db_session
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c, TestSession
    app.dependency_overrides.clear()


@pytest.fixture()
def seeded_client(client):
    """Client with one scored-ready subject."""
    c, TestSession = client
    resp = c.post("/api/subjects", json={
        "name": "Acme Goods", "category": "online-retail", "goal": "grow_revenue",
        "metrics": {"revenue_monthly": 60000, "gross_margin_pct": 15},
    })
    assert resp.status_code == 201
    return c, TestSession, resp.json()["id"]


class TestSubjectEndpoints:
    def test_create_and_get(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.get(f"/api/subjects/{subject_id}")
        assert resp.status_code == 200
        data = resp.json()
        assert data["name"] == "Acme Goods"
        assert data["goal"] == "grow_revenue"
        assert data["has_profile"] is True
        assert data["metrics"] == {"revenue_monthly": 60000, "gross_margin_pct": 15}
        assert data["latest_snapshot"] is None

    def test_list_and_filter(self, seeded_client):
        c, _, _ = seeded_client
        c.post("/api/subjects", json={"name": "Corner Cafe", "category": "local-business"})
        assert c.get("/api/subjects").json()["total"] == 2
        resp = c.get("/api/subjects", params={"category": "local-business"})
        assert [s["name"] for s in resp.json()["items"]] == ["Corner Cafe"]

    def test_create_defaults_category(self, client):
        c, _ = client
        resp = c.post("/api/subjects", json={"name": "Plain"})
        assert resp.status_code == 201
        assert resp.json()["category"] == "online-retail"
        assert resp.json()["has_profile"] is False

    def test_create_rejects_bad_input(self, client):
        c, _ = client
        assert c.post("/api/subjects", json={"name": "X", "category": "spaceship"}).status_code == 422
        assert c.post("/api/subjects", json={"name": "X", "goal": "world_domination"}).status_code == 422
        assert c.post("/api/subjects", json={"name": "   "}).status_code == 422

    def test_update_category(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.put(f"/api/subjects/{subject_id}", json={"category": "local-business", "name": None})
        assert resp.status_code == 200
        assert resp.json()["category"] == "local-business"
        assert resp.json()["name"] == "Acme Goods"
        assert resp.json()["category_changed_at"] is not None

    def test_delete(self, seeded_client):
        c, TestSession, subject_id = seeded_client
        c.post(f"/api/subjects/{subject_id}/recalculate")
        assert c.delete(f"/api/subjects/{subject_id}").json() == {"ok": True}
        assert c.get(f"/api/subjects/{subject_id}").status_code == 404
        session = TestSession()
        assert session.execute(select(ScoreSnapshot)).scalars().first() is None
        session.close()

    def test_missing_subject(self, client):
        c, _ = client
        assert c.get("/api/subjects/999").status_code == 404
        assert c.post("/api/subjects/999/recalculate").status_code == 404
        assert c.get("/api/subjects/999/history").status_code == 404


class TestMetricsEndpoints:
    def test_manual_update_and_clear(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.put(f"/api/subjects/{subject_id}/metrics", json={"cac": 40, "gross_margin_pct": None})
        assert resp.status_code == 200
        metrics = resp.json()["metrics"]
        assert metrics["cac"] == 40
        assert "gross_margin_pct" not in metrics
        assert metrics["revenue_monthly"] == 60000

    def test_percentage_out_of_range(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.put(f"/api/subjects/{subject_id}/metrics", json={"churn_monthly_pct": 140})
        assert resp.status_code == 422

    def test_providers(self, client):
        c, _ = client
        providers = [p["provider"] for p in c.get("/api/providers").json()]
        assert providers == sorted(providers)
        assert {"shopify", "stripe", "google-analytics", "quickbooks"} <= set(providers)

    def test_connection_lifecycle(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.post(f"/api/subjects/{subject_id}/connections", json={
            "provider": "shopify", "access_token": "tok", "store_domain": "acme.myshopify.com",
        })
        assert resp.status_code == 201
        conn = resp.json()
        assert conn["status"] == "connected"
        assert "access_token" not in conn
        assert c.get(f"/api/subjects/{subject_id}").json()["connections"] == 1

        with patch("pulse.connectors.ShopifyConnector.disconnect", new_callable=AsyncMock):
            resp = c.delete(f"/api/connections/{conn['id']}")
        assert resp.json()["status"] == "disconnected"
        assert c.get(f"/api/subjects/{subject_id}").json()["connections"] == 0

    def test_unknown_provider(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.post(f"/api/subjects/{subject_id}/connections", json={"provider": "myspace", "access_token": "t"})
        assert resp.status_code == 400


class TestScoringEndpoints:
    def test_recalculate_without_profile(self, client):
        c, _ = client
        subject_id = c.post("/api/subjects", json={"name": "Empty"}).json()["id"]
        resp = c.post(f"/api/subjects/{subject_id}/recalculate")
        assert resp.status_code == 409
        body = resp.json()
        assert body["detail"] == "Profile incomplete"
        assert body["subject_id"] == subject_id
        assert "revenue_monthly" in body["missing_inputs"]

    def test_recalculate_and_history(self, seeded_client):
        c, _, subject_id = seeded_client
        first = c.post(f"/api/subjects/{subject_id}/recalculate")
        assert first.status_code == 200
        data = first.json()
        assert data["previous_score"] is None
        assert data["significant"] is False
        assert data["attribution"]["revenue_monthly"]["source"] == "manual"
        assert "cac" in data["missing_inputs"]

        c.put(f"/api/subjects/{subject_id}/metrics", json={"revenue_monthly": 500})
        second = c.post(f"/api/subjects/{subject_id}/recalculate", json={"reason": "manual"}).json()
        assert second["previous_score"] == data["new_score"]
        assert second["significant"] is True
        assert second["reason"].startswith("Revenue dropped")
        assert second["summary_scheduled"] is False

        history = c.get(f"/api/subjects/{subject_id}/history").json()
        assert [h["score"] for h in history] == [second["new_score"], data["new_score"]]
        assert history[0]["dimension_scores"]["revenue"] == 20

        detail = c.get(f"/api/subjects/{subject_id}").json()
        assert detail["latest_score"] == second["new_score"]
        assert detail["score_change_reason"] == second["reason"]
        assert detail["last_recalc_reason"] == "manual"

    def test_recalculate_rejects_unknown_reason(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.post(f"/api/subjects/{subject_id}/recalculate", json={"reason": "whim"})
        assert resp.status_code == 422

    def test_sweep_requires_secret_when_set(self, seeded_client, monkeypatch):
        c, _, subject_id = seeded_client
        c.post(f"/api/subjects/{subject_id}/connections", json={"provider": "stripe", "access_token": "sk"})
        monkeypatch.setenv("PULSE_CRON_SECRET", "s3cret")
        assert c.post("/api/sweep").status_code == 401
        assert c.post("/api/sweep", headers={"Authorization": "Bearer nope"}).status_code == 401

        pull = AsyncMock(return_value=PullResult({"totalRevenue": 5_000_000, "churnRate": 0.02}, utcnow()))
        with patch("pulse.connectors.StripeConnector.pull", pull):
            resp = c.post("/api/sweep", headers={"Authorization": "Bearer s3cret"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["succeeded"] == 1
        assert body["failed"] == 0
        assert body["results"][0]["subject_id"] == subject_id

    def test_sweep_reports_failures(self, seeded_client):
        c, TestSession, subject_id = seeded_client
        c.post(f"/api/subjects/{subject_id}/connections", json={"provider": "stripe", "access_token": "sk"})
        empty_id = c.post("/api/subjects", json={"name": "Empty"}).json()["id"]
        c.post(f"/api/subjects/{empty_id}/connections", json={"provider": "stripe", "access_token": "sk"})

        pull = AsyncMock(side_effect=RuntimeError("stripe down"))
        with patch("pulse.connectors.StripeConnector.pull", pull):
            body = c.post("/api/sweep").json()
        assert body["succeeded"] == 1
        assert body["failed"] == 1
        session = TestSession()
        assert session.get(Subject, subject_id).latest_score is not None
        session.close()


class TestPlaybookEndpoints:
    def test_catalog_and_validation(self, client):
        c, _ = client
        catalog = c.get("/api/playbooks").json()
        assert len(catalog) == 6
        assert catalog[0]["slug"] == "revenue_surge"
        assert c.get("/api/playbooks/validate").json() == {"ok": True, "problems": []}

    def test_triggered_for_subject(self, seeded_client):
        c, _, subject_id = seeded_client
        c.post(f"/api/subjects/{subject_id}/recalculate")
        body = c.get(f"/api/subjects/{subject_id}/playbooks").json()
        assert body["has_profile"] is True
        slugs = [t["slug"] for t in body["triggered"]]
        assert "pricing_power" in slugs
        assert "reduce_churn" not in slugs
        assert all(t["trigger_reason"] for t in body["triggered"])

    def test_no_profile(self, client):
        c, _ = client
        subject_id = c.post("/api/subjects", json={"name": "Empty"}).json()["id"]
        body = c.get(f"/api/subjects/{subject_id}/playbooks").json()
        assert body == {"subject_id": subject_id, "has_profile": False, "triggered": []}

    def test_expand_cached_on_second_call(self, seeded_client):
        c, _, subject_id = seeded_client
        first = c.post(f"/api/subjects/{subject_id}/playbooks/pricing_power/expand")
        assert first.status_code == 200
        body = first.json()
        assert body["cached"] is False
        assert len(body["expanded"]["personalized_steps"]) == 7
        assert "gross margin %" in body["trigger_reason"]
        second = c.post(f"/api/subjects/{subject_id}/playbooks/pricing_power/expand")
        assert second.json()["cached"] is True
        assert second.json()["expanded"] == body["expanded"]

    def test_expand_unknown_playbook(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.post(f"/api/subjects/{subject_id}/playbooks/moonshot/expand")
        assert resp.status_code == 404
        assert resp.json()["detail"] == "Playbook not found"

    def test_expand_without_profile(self, client):
        c, _ = client
        subject_id = c.post("/api/subjects", json={"name": "Empty"}).json()["id"]
        assert c.post(f"/api/subjects/{subject_id}/playbooks/pricing_power/expand").status_code == 409
        assert c.post("/api/subjects/9999/playbooks/pricing_power/expand").status_code == 404


class TestExplainEndpoints:
    def test_explain_cached_on_second_call(self, seeded_client):
        c, _, subject_id = seeded_client
        first = c.post(f"/api/subjects/{subject_id}/explain", json={"item_key": "dimension:profitability"})
        assert first.status_code == 200
        assert first.json()["cached"] is False
        second = c.post(f"/api/subjects/{subject_id}/explain", json={"item_key": "dimension:profitability"})
        assert second.json()["cached"] is True
        assert second.json()["explanation"] == first.json()["explanation"]

    def test_bad_item_key(self, seeded_client):
        c, _, subject_id = seeded_client
        resp = c.post(f"/api/subjects/{subject_id}/explain", json={"item_key": "horoscope"})
        assert resp.status_code == 400

    def test_explain_without_profile(self, client):
        c, _ = client
        subject_id = c.post("/api/subjects", json={"name": "Empty"}).json()["id"]
        resp = c.post(f"/api/subjects/{subject_id}/explain", json={"item_key": "risk"})
        assert resp.status_code == 409


class TestSettingsAndStats:
    def test_weights_roundtrip(self, client):
        c, _ = client
        weights = c.get("/api/settings/weights").json()
        assert set(weights) == {"online-retail", "subscription-software", "service-agency",
                                "content-creator", "local-business"}
        resp = c.put("/api/settings/weights/local-business", json={
            "revenue": 1, "profitability": 1, "retention": 1, "acquisition": 1, "operations": 0,
        })
        assert resp.status_code == 200
        assert resp.json()["weights"]["revenue"] == pytest.approx(0.25)
        assert c.get("/api/settings/weights").json()["local-business"]["operations"] == 0

    def test_weights_validation(self, client):
        c, _ = client
        zero = {"revenue": 0, "profitability": 0, "retention": 0, "acquisition": 0, "operations": 0}
        assert c.put("/api/settings/weights/local-business", json=zero).status_code == 400
        assert c.put("/api/settings/weights/moon-base", json={**zero, "revenue": 1}).status_code == 400
        assert c.put("/api/settings/weights/local-business", json={**zero, "revenue": -1}).status_code == 422

    def test_weights_schema_rejects_non_finite(self):
        with pytest.raises(ValidationError):
            WeightsIn(revenue=float("inf"), profitability=1, retention=1, acquisition=1, operations=1)
        with pytest.raises(ValidationError):
            WeightsIn(revenue=float("nan"), profitability=1, retention=1, acquisition=1, operations=1)

    def test_stats(self, seeded_client):
        c, _, subject_id = seeded_client
        c.post(f"/api/subjects/{subject_id}/recalculate")
        stats = c.get("/api/stats").json()
        assert stats["total"] == 1
        assert stats["scored"] == 1
        assert stats["by_category"] == {"online-retail": 1}
        assert stats["average_score"] is not None
