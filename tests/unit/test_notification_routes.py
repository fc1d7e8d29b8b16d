from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import anyio
import pytest
from fastapi.testclient import TestClient

from herald.api.deps import get_engine
from herald.config import get_settings
from herald.main import app
from herald.notifications.contracts import CircuitOpenError, QueueFullError, SendResult, TransientPushProviderError
from tests.factories import make_item

_AUTH = {"x-herald-service-secret": "s3cret"}


@pytest.fixture
def client(engine, settings):
  app.dependency_overrides[get_engine] = lambda: engine
  app.dependency_overrides[get_settings] = lambda: settings
  try:
    yield TestClient(app)
  finally:
    app.dependency_overrides.clear()


def _send_body(**overrides) -> dict:
  body = {"userId": "u1", "title": "Deploy finished", "body": "Build 42 is live", "data": {"type": "GENERAL"}}
  body.update(overrides)
  return body


def test_missing_secret_is_rejected(client):
  response = client.post("/v1/notifications/send", json=_send_body())
  assert response.status_code == 403
  assert response.json()["detail"] == "Invalid service secret."


def test_unconfigured_secret_denies_every_call(client, settings):
  app.dependency_overrides[get_settings] = lambda: replace(settings, service_secret=None)
  response = client.get("/v1/notifications/health", headers=_AUTH)
  assert response.status_code == 403


def test_bearer_token_is_accepted(client, transport):
  response = client.post("/v1/notifications/send", json=_send_body(), headers={"authorization": "Bearer s3cret"})
  assert response.status_code == 200
  assert response.json()["outcome"] == "sent"
  assert len(transport.calls) == 1


def test_send_batches_task_deadlines(client, transport):
  response = client.post("/v1/notifications/send", json=_send_body(data={"type": "TASK_DEADLINE", "taskName": "Taxes"}), headers=_AUTH)
  payload = response.json()
  assert response.status_code == 200
  assert payload["success"] is True
  assert payload["queued"] is True
  assert payload["outcome"] == "queued"
  assert payload["batchId"]
  assert transport.calls == []


def test_send_with_future_schedule_is_queued(client, transport):
  response = client.post("/v1/notifications/send", json=_send_body(options={"scheduleFor": "2023-11-14T01:00:00Z"}), headers=_AUTH)
  assert response.json()["outcome"] == "queued"
  assert transport.calls == []


def test_duplicate_send_returns_first_id(client):
  body = _send_body(data={"type": "TASK_DEADLINE"}, options={"dedupKey": "task-7"})
  first = client.post("/v1/notifications/send", json=body, headers=_AUTH).json()
  second = client.post("/v1/notifications/send", json=body, headers=_AUTH).json()
  assert second["outcome"] == "duplicate"
  assert second["batchId"] == first["batchId"]


def test_queue_full_maps_to_503():
  engine = MagicMock()
  engine.send = AsyncMock(return_value=SendResult(success=False, outcome="queue_full", error="Notification queue is full (10 items)"))
  app.dependency_overrides[get_engine] = lambda: engine
  app.dependency_overrides[get_settings] = lambda: MagicMock(service_secret="s3cret")
  client = TestClient(app)

  try:
    response = client.post("/v1/notifications/send", json=_send_body(), headers=_AUTH)
    assert response.status_code == 503
    assert response.json()["outcome"] == "queue_full"
  finally:
    app.dependency_overrides.clear()


def test_validation_errors_carry_request_id(client):
  response = client.post("/v1/notifications/send", json=_send_body(title="", unknown=True), headers=_AUTH)
  payload = response.json()
  assert response.status_code == 422
  assert payload["requestId"] == response.headers["x-request-id"]
  assert all("input" not in error for error in payload["detail"])


def test_more_than_three_actions_are_rejected(client):
  actions = [{"action": f"a{index}", "title": f"A{index}"} for index in range(4)]
  response = client.post("/v1/notifications/send", json=_send_body(actions=actions), headers=_AUTH)
  assert response.status_code == 422


def test_metrics_report_snapshot_and_breakdown(client):
  client.post("/v1/notifications/send", json=_send_body(), headers=_AUTH)
  response = client.get("/v1/notifications/metrics", params={"periodHours": 1}, headers=_AUTH)
  payload = response.json()
  assert response.status_code == 200
  assert payload["metrics"]["successful"] == 1
  assert payload["metrics"]["periodHours"] == 1
  assert payload["typeBreakdown"] == {"GENERAL": 1}
  assert isinstance(payload["insights"], list)


def test_metrics_period_is_bounded(client):
  assert client.get("/v1/notifications/metrics", params={"periodHours": 169}, headers=_AUTH).status_code == 422


def test_prometheus_metrics(client):
  response = client.get("/v1/notifications/metrics/prometheus", headers=_AUTH)
  assert response.status_code == 200
  assert response.headers["content-type"].startswith("text/plain; version=0.0.4")
  assert "herald_queue_depth" in response.text


def test_health_reports_unhealthy_with_503(client, transport):
  assert client.get("/v1/notifications/health", headers=_AUTH).json()["status"] == "healthy"

  transport.error = TransientPushProviderError("503")
  for index in range(5):
    client.post("/v1/notifications/send", json=_send_body(userId=f"user-{index}"), headers=_AUTH)

  response = client.get("/v1/notifications/health", headers=_AUTH)
  assert response.status_code == 503
  assert response.json()["circuitBreaker"]["state"] == "OPEN"


def test_failed_items_are_listed(client, engine, clock):
  async def _seed():
    await engine.queue.mark_failed(make_item(clock, attempts=3), error="TransientPushProviderError: 503")

  anyio.run(_seed)
  payload = client.get("/v1/notifications/failed", params={"limit": 10}, headers=_AUTH).json()
  assert payload["count"] == 1
  assert payload["items"][0]["last_error"] == "TransientPushProviderError: 503"


def test_rate_limit_status(client):
  client.post("/v1/notifications/send", json=_send_body(), headers=_AUTH)
  payload = client.get("/v1/notifications/rate-limits/u1", headers=_AUTH).json()
  assert payload["userId"] == "u1"
  assert payload["windows"]["minute"]["count"] == 1
  assert payload["blockedUntil"] is None


def test_liveness_needs_no_secret():
  response = TestClient(app).get("/health")
  assert response.status_code == 200
  assert response.json()["status"] == "ok"
  assert response.headers["x-content-type-options"] == "nosniff"


def test_request_ids_are_generated_or_forwarded(client):
  generated = client.get("/v1/notifications/health", headers=_AUTH)
  assert generated.headers["x-request-id"].startswith("req_")

  forwarded = client.get("/v1/notifications/health", headers={**_AUTH, "x-request-id": "tasks-svc:7f3a"})
  assert forwarded.headers["x-request-id"] == "tasks-svc:7f3a"

  rejected = client.get("/v1/notifications/health", headers={**_AUTH, "x-request-id": "x" * 200})
  assert rejected.headers["x-request-id"].startswith("req_")


@pytest.mark.parametrize(("error", "retry_after"), [(CircuitOpenError(retry_after_ms=12500), "13"), (QueueFullError("full"), "30")])
def test_engine_errors_escaping_a_route_are_retryable(error, retry_after):
  engine = MagicMock()
  engine.rate_limit_status = AsyncMock(side_effect=error)
  app.dependency_overrides[get_engine] = lambda: engine
  app.dependency_overrides[get_settings] = lambda: MagicMock(service_secret="s3cret")
  client = TestClient(app)

  try:
    response = client.get("/v1/notifications/rate-limits/u1", headers=_AUTH)
    assert response.status_code == 503
    assert response.headers["retry-after"] == retry_after
    assert response.json()["detail"] == "Notification delivery temporarily unavailable"
    assert response.json()["requestId"] == response.headers["x-request-id"]
  finally:
    app.dependency_overrides.clear()
