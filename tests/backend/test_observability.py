from __future__ import annotations

from backend.app.observability import MetricsRegistry


def test_metrics_endpoint_exposes_counters(client) -> None:
    health = client.get("/health")
    assert health.status_code == 200

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    body = metrics.text
    assert "campaign_sender_requests_total" in body
    assert "campaign_sender_requests_5xx_total" in body
    assert "campaign_sender_emails_sent_total 0" in body
    assert 'campaign_sender_route_requests_total{route="/health",status="200"} 1' in body


def test_readiness_endpoint(client) -> None:
    response = client.get("/health/ready")
    assert response.status_code == 200
    assert response.json()["status"] == "ready"


def test_batch_counts_ignore_negative_values() -> None:
    registry = MetricsRegistry()
    registry.record_batch(sent=3, failed=1)
    registry.record_batch(sent=-2, failed=0)

    snapshot = registry.snapshot()
    assert (snapshot.emails_sent, snapshot.emails_failed) == (3, 1)
