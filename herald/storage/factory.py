"""Factory helpers for the shared store."""

from __future__ import annotations

from herald.config import Settings
from herald.storage.kv_store import KeyValueStore
from herald.storage.memory_store import MemoryKeyValueStore
from herald.storage.redis_store import RedisKeyValueStore
from herald.utils.clock import Clock


def build_store(settings: Settings, *, clock: Clock | None = None) -> KeyValueStore:
  """Construct the configured store backend."""
  # Redis is required once more than one engine instance shares queues and counters.
  if settings.store_backend == "redis":
    return RedisKeyValueStore.from_url(settings.redis_url or "")

  return MemoryKeyValueStore(clock=clock)
