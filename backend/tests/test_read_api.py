from __future__ import annotations

import importlib
from datetime import date, datetime, timezone

from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from funnelwatch.core.database import Base, get_db
from funnelwatch.models.models import Alert, Funnel, FunnelDailyAggregate, FunnelStep, StepDailyAggregate

alerts_api = importlib.import_module("funnelwatch.api.alerts")
funnels_api = importlib.import_module("funnelwatch.api.funnels")

DAY_ONE = date(2026, 3, 2)
DAY_TWO = date(2026, 3, 3)


def _make_session():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, future=True)()


def _client(session) -> TestClient:
    app = FastAPI()
    app.include_router(funnels_api.router, prefix="/api/funnels")
    app.include_router(alerts_api.router, prefix="/api/alerts")

    def _override_db():
        yield session

    app.dependency_overrides[get_db] = _override_db
    return TestClient(app)


def _seed(session) -> int:
    funnel = Funnel(source_project_id="proj-1", name="Quiz", total_steps=2, status="active")
    session.add(funnel)
    session.flush()
    first = FunnelStep(funnel_id=funnel.id, step_number=1, step_key="a", step_name="A", category="question")
    second = FunnelStep(funnel_id=funnel.id, step_number=2, step_key="b", step_name="B", category="question")
    session.add_all([first, second])
    session.flush()
    session.add_all(
        [
            FunnelDailyAggregate(funnel_id=funnel.id, day_key=DAY_ONE, total_starts=10, total_completions=2, total_dropoffs=8, conversion_rate=20.0),
            FunnelDailyAggregate(funnel_id=funnel.id, day_key=DAY_TWO, total_starts=10, total_completions=3, total_dropoffs=7, conversion_rate=30.0),
            StepDailyAggregate(step_id=first.id, day_key=DAY_ONE, views=10, exits=2, continues=8, drop_off_rate=20.0, conversion_rate=80.0, avg_time_on_step=10.0),
            StepDailyAggregate(step_id=first.id, day_key=DAY_TWO, views=30, exits=3, continues=27, drop_off_rate=10.0, conversion_rate=90.0, avg_time_on_step=20.0),
        ]
    )
    session.commit()
    return funnel.id


def _alert(funnel_id: int, *, severity: str, status: str = "active", hour: int = 12) -> Alert:
    return Alert(
        funnel_id=funnel_id,
        step_number=1,
        step_name="A",
        severity=severity,
        alert_type="drop_off",
        current_value=40.0,
        previous_day_value=20.0,
        percentage_change=100.0,
        message="Drop-off rate at Step 1 (A) increased by 100.0%",
        status=status,
        created_at=datetime(2026, 3, 3, hour, 0, tzinfo=timezone.utc),
    )


def test_list_funnels_includes_latest_metrics():
    session = _make_session()
    _seed(session)

    response = _client(session).get("/api/funnels")

    assert response.status_code == 200
    funnels = response.json()["funnels"]
    assert len(funnels) == 1
    assert funnels[0]["metrics"]["day"] == "2026-03-03"
    assert funnels[0]["metrics"]["conversion_rate"] == 30.0
    session.close()


def test_analytics_sums_window_and_fills_trend_gaps():
    session = _make_session()
    _seed(session)

    response = _client(session).get(
        "/api/funnels/analytics", params={"start_date": "2026-03-01", "end_date": "2026-03-03"}
    )

    assert response.status_code == 200
    body = response.json()
    assert body["metrics"]["total_starts"] == 20
    assert body["metrics"]["total_completions"] == 5
    assert body["metrics"]["conversion_rate"] == 25.0
    assert body["date_range"]["days"] == 3
    assert [point["total_starts"] for point in body["trends"]] == [0, 10, 10]

    first_step = body["steps"][0]
    assert (first_step["views"], first_step["exits"], first_step["continues"]) == (40, 5, 35)
    assert first_step["drop_off_rate"] == 12.5
    # (10*10 + 20*30) / 40
    assert first_step["avg_time_on_step"] == 18
    assert body["steps"][1]["views"] == 0
    session.close()


def test_analytics_rejects_inverted_window():
    session = _make_session()

    response = _client(session).get(
        "/api/funnels/analytics", params={"start_date": "2026-03-03", "end_date": "2026-03-01"}
    )

    assert response.status_code == 400
    session.close()


def test_analytics_without_funnel_returns_empty_payload():
    session = _make_session()

    body = _client(session).get("/api/funnels/analytics").json()

    assert body["success"] is True
    assert body["total_entries"] == 0
    assert body["steps"] == []
    session.close()


def test_get_funnel_detail_and_404():
    session = _make_session()
    funnel_id = _seed(session)
    client = _client(session)

    detail = client.get(f"/api/funnels/{funnel_id}")
    assert detail.status_code == 200
    assert [step["step_key"] for step in detail.json()["steps"]] == ["a", "b"]

    assert client.get("/api/funnels/9999").status_code == 404
    session.close()


def test_list_alerts_filters_and_summarizes_active():
    session = _make_session()
    funnel_id = _seed(session)
    session.add_all(
        [
            _alert(funnel_id, severity="critical", hour=10),
            _alert(funnel_id, severity="warning", hour=11),
            _alert(funnel_id, severity="warning", status="resolved", hour=12),
        ]
    )
    session.commit()
    client = _client(session)

    body = client.get("/api/alerts").json()
    assert [alert["status"] for alert in body["alerts"]] == ["resolved", "active", "active"]
    assert body["alerts"][0]["type"] == "drop_off"
    assert body["summary"] == {"critical": 1, "warning": 1, "info": 0, "total": 2}

    warnings = client.get("/api/alerts", params={"severity": "warning", "status": "active"}).json()
    assert len(warnings["alerts"]) == 1
    session.close()


def test_patch_alert_status():
    session = _make_session()
    funnel_id = _seed(session)
    alert = _alert(funnel_id, severity="critical")
    session.add(alert)
    session.commit()
    client = _client(session)

    response = client.patch(f"/api/alerts/{alert.id}", json={"status": "acknowledged", "actor": "ops"})
    assert response.status_code == 200
    assert response.json()["status"] == "acknowledged"
    assert response.json()["acknowledged_by"] == "ops"

    assert client.patch(f"/api/alerts/{alert.id}", json={"status": "closed"}).status_code == 400
    assert client.patch("/api/alerts/9999", json={"status": "resolved"}).status_code == 404
    session.close()


def test_analytics_days_window_is_inclusive_of_today(monkeypatch):
    monkeypatch.setattr(funnels_api, "now_utc", lambda: datetime(2026, 3, 3, 9, 0, tzinfo=timezone.utc))
    session = _make_session()
    _seed(session)

    body = _client(session).get("/api/funnels/analytics", params={"days": 2}).json()

    assert body["date_range"] == {"start": "2026-03-02", "end": "2026-03-03", "days": 2}
    assert len(body["trends"]) == 2
    assert body["metrics"]["total_starts"] == 20
    session.close()


def test_analytics_rejects_lone_date_bound():
    session = _make_session()
    client = _client(session)

    assert client.get("/api/funnels/analytics", params={"start_date": "2026-03-01"}).status_code == 400
    assert client.get("/api/funnels/analytics", params={"end_date": "2026-03-03"}).status_code == 400
    session.close()
