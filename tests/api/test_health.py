from __future__ import annotations

from fastapi.testclient import TestClient


def test_health_returns_ok(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    # In tests neither PostgreSQL nor Redis is configured
    assert data["checks"] == {"database": "not_configured", "redis": "not_configured"}


def test_health_reports_notification_backlog(client: TestClient) -> None:
    data = client.get("/health").json()
    assert data["queues"] == {"notifications": 0}


def test_ready_returns_200(client: TestClient) -> None:
    resp = client.get("/ready")
    assert resp.status_code == 200


def test_metrics_endpoint_exposes_course_counters(client: TestClient) -> None:
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "course_transitions_total" in resp.text
