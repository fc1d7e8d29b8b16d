"""Shared fixtures for the notification engine tests."""

from __future__ import annotations

import sys
from dataclasses import replace
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
  sys.path.insert(0, str(ROOT))

import pytest  # noqa: E402

from herald.config import Settings, get_settings  # noqa: E402
from herald.notifications.batching import AdaptiveBatchSizer  # noqa: E402
from herald.notifications.dedup import Deduplicator  # noqa: E402
from herald.notifications.engine import NotificationEngine  # noqa: E402
from herald.notifications.factory import build_notification_engine  # noqa: E402
from herald.notifications.preferences import StaticPreferenceStore  # noqa: E402
from herald.notifications.queue import NotificationQueue, QueueConfig  # noqa: E402
from herald.storage.memory_store import MemoryKeyValueStore  # noqa: E402
from herald.utils.clock import ManualClock  # noqa: E402
from tests.factories import RecordingTransport  # noqa: E402


@pytest.fixture
def anyio_backend():
  return "asyncio"


@pytest.fixture
def clock() -> ManualClock:
  return ManualClock()


@pytest.fixture
def store(clock: ManualClock) -> MemoryKeyValueStore:
  return MemoryKeyValueStore(clock=clock)


@pytest.fixture
def deduplicator(store: MemoryKeyValueStore) -> Deduplicator:
  return Deduplicator(store, ttl_seconds=300)


@pytest.fixture
def sizer() -> AdaptiveBatchSizer:
  return AdaptiveBatchSizer(base_size=10, memory_probe=lambda: 50.0)


@pytest.fixture
def queue(store: MemoryKeyValueStore, deduplicator: Deduplicator, sizer: AdaptiveBatchSizer, clock: ManualClock) -> NotificationQueue:
  return NotificationQueue(store, deduplicator=deduplicator, sizer=sizer, config=QueueConfig(max_queue_size=100, partition_spill_threshold=20), clock=clock)


@pytest.fixture(autouse=True)
def _reset_settings_cache():
  get_settings.cache_clear()
  yield
  get_settings.cache_clear()


@pytest.fixture
def settings(monkeypatch) -> Settings:
  for name in ("HERALD_SERVICE_SECRET", "HERALD_STORE_BACKEND", "HERALD_PUSH_ENABLED", "HERALD_PREFERENCES_URL", "HERALD_ALLOWED_ORIGINS"):
    monkeypatch.delenv(name, raising=False)
  return replace(get_settings(), scheduler_enabled=False, rate_burst_limit=100, rate_max_per_minute=100, service_secret="s3cret")


@pytest.fixture
def transport() -> RecordingTransport:
  return RecordingTransport()


@pytest.fixture
def engine(settings: Settings, store: MemoryKeyValueStore, transport: RecordingTransport, clock: ManualClock) -> NotificationEngine:
  return build_notification_engine(settings, store=store, transport=transport, preference_store=StaticPreferenceStore(), clock=clock, memory_probe=lambda: 10.0)
