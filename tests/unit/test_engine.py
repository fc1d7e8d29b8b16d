from __future__ import annotations

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from herald.notifications.contracts import DigestMode, Priority, TransientPushProviderError
from herald.notifications.factory import build_notification_engine
from herald.notifications.preferences import StaticPreferenceStore, UserNotificationPreferences
from herald.notifications.push_sender import NullTransport
from herald.storage.memory_store import MemoryKeyValueStore
from tests.factories import make_payload


@pytest.mark.anyio
async def test_system_health_is_healthy_when_idle(engine):
  health = await engine.system_health()
  assert health["status"] == "healthy"
  assert health["store"] == {"ok": True}
  assert health["queue"]["queueSize"] == 0
  assert health["circuitBreaker"]["state"] == "CLOSED"
  assert health["memoryUsageMb"] == 10.0


@pytest.mark.anyio
async def test_system_health_is_unhealthy_when_circuit_opens(engine, transport):
  transport.error = TransientPushProviderError("503")
  for index in range(5):
    await engine.send(f"user-{index}", make_payload("GENERAL"))
  health = await engine.system_health()
  assert health["status"] == "unhealthy"
  assert health["circuitBreaker"]["state"] == "OPEN"


@pytest.mark.anyio
async def test_metrics_snapshot_includes_queue_and_circuit(engine):
  await engine.send("u1", make_payload("TASK_DEADLINE"))
  await engine.send("u1", make_payload("GENERAL"), priority=Priority.HIGH)
  snapshot = await engine.metrics_snapshot()
  assert snapshot.queue_depth == 1
  assert snapshot.circuit_state == "CLOSED"
  assert snapshot.successful == 1


@pytest.mark.anyio
async def test_start_and_stop_manage_background_work(settings, clock):
  store = MemoryKeyValueStore(clock=clock)
  store.close = AsyncMock()
  engine = build_notification_engine(replace(settings, scheduler_enabled=True, scheduler_interval_seconds=3600), store=store, preference_store=StaticPreferenceStore(), clock=clock, memory_probe=lambda: 1.0)

  await engine.start()
  assert engine.scheduler.running
  await engine.stop()
  assert engine.scheduler.running is False
  store.close.assert_awaited_once()


def test_factory_uses_null_transport_when_push_disabled(settings):
  engine = build_notification_engine(settings, store=MemoryKeyValueStore(), preference_store=StaticPreferenceStore())
  assert isinstance(engine.dispatcher._transport, NullTransport)


def test_factory_builds_web_push_transport_when_enabled(settings, monkeypatch):
  web_push = MagicMock()
  monkeypatch.setattr("herald.notifications.factory.WebPushTransport", web_push)
  push_settings = replace(settings, push_enabled=True, push_vapid_public_key="pub", push_vapid_private_key="priv", push_vapid_sub="mailto:ops@example.com")

  build_notification_engine(push_settings, store=MemoryKeyValueStore(), preference_store=StaticPreferenceStore())

  web_push.assert_called_once()
  vapid = web_push.call_args.kwargs["vapid_config"]
  assert vapid.sub == "mailto:ops@example.com"


def test_factory_uses_http_preferences_when_url_configured(settings, monkeypatch):
  http_store = MagicMock()
  monkeypatch.setattr("herald.notifications.factory.HttpPreferenceStore", http_store)

  build_notification_engine(replace(settings, preferences_url="http://prefs.internal"), store=MemoryKeyValueStore())

  http_store.assert_called_once_with("http://prefs.internal", service_secret="s3cret", timeout_seconds=settings.preferences_timeout_seconds)


@pytest.mark.anyio
async def test_send_survives_malformed_digest_time(settings, transport, clock):
  preferences = StaticPreferenceStore({"u1": UserNotificationPreferences(user_id="u1", digest_mode=DigestMode.DAILY, digest_time="8am")})
  engine = build_notification_engine(settings, store=MemoryKeyValueStore(clock=clock), transport=transport, preference_store=preferences, clock=clock, memory_probe=lambda: 10.0)

  result = await engine.send("u1", make_payload("TASK_DEADLINE"))

  assert result.success is True
  assert result.outcome == "queued"
