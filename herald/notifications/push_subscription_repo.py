"""Repository helpers for Web Push subscription persistence."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import msgspec

from herald.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushSubscriptionEntry:
  """Capture a single web push subscription for storage."""

  user_id: str
  endpoint: str
  p256dh: str
  auth: str
  user_agent: str | None = None


class _StoredSubscription(msgspec.Struct):
  p256dh: str
  auth: str
  user_agent: str | None = None


class PushSubscriptionRepository:
  """Persist push subscriptions as one hash per user keyed by endpoint."""

  def __init__(self, store: KeyValueStore) -> None:
    self._store = store

  async def upsert(self, entry: PushSubscriptionEntry) -> None:
    """Insert or replace a subscription keyed by endpoint."""
    # Keying by endpoint lets a browser refresh rotate keys cleanly.
    stored = _StoredSubscription(p256dh=entry.p256dh, auth=entry.auth, user_agent=entry.user_agent)
    await self._store.hset(self._key(entry.user_id), entry.endpoint, msgspec.json.encode(stored).decode("utf-8"))

  async def delete_for_user_endpoint(self, *, user_id: str, endpoint: str) -> bool:
    """Delete a subscription for a specific user and endpoint."""
    return await self._store.hdel(self._key(user_id), endpoint)

  async def list_for_user(self, *, user_id: str) -> list[PushSubscriptionEntry]:
    """List all push subscriptions for a user."""
    entries: list[PushSubscriptionEntry] = []
    for endpoint, raw in (await self._store.hgetall(self._key(user_id))).items():
      try:
        stored = msgspec.json.decode(raw, type=_StoredSubscription)
      except msgspec.DecodeError:
        logger.warning("Dropping unreadable push subscription user_id=%s", user_id)
        await self._store.hdel(self._key(user_id), endpoint)
        continue
      entries.append(PushSubscriptionEntry(user_id=user_id, endpoint=endpoint, p256dh=stored.p256dh, auth=stored.auth, user_agent=stored.user_agent))
    return entries

  @staticmethod
  def _key(user_id: str) -> str:
    return f"push:subscriptions:{user_id}"
