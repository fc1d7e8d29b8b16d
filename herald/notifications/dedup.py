"""Sliding-window deduplication of notification requests."""

from __future__ import annotations

import logging

from herald.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)

_MAX_ATTEMPTS = 3


class Deduplicator:
  """Collapse requests that share a dedup key into the first admitted item id.

  Admission is a single `set_if_absent` against the shared store, so two concurrent requests with
  the same key cannot both win. Every check refreshes the entry TTL, which makes the window slide
  while duplicates keep arriving.
  """

  def __init__(self, store: KeyValueStore, *, ttl_seconds: float = 300, key_prefix: str = "dedup:") -> None:
    self._store = store
    self._ttl_seconds = ttl_seconds
    self._key_prefix = key_prefix

  async def check_and_register(self, dedup_key: str | None, new_id: str) -> tuple[bool, str]:
    """Return `(is_duplicate, effective_id)` for a request carrying `dedup_key`."""
    # Deduplication is opt-in; requests without a key are always new.
    if not dedup_key:
      return False, new_id

    key = f"{self._key_prefix}{dedup_key}"
    for _ in range(_MAX_ATTEMPTS):
      if await self._store.set_if_absent(key, new_id, ttl_seconds=self._ttl_seconds):
        return False, new_id

      existing = await self._store.get(key)
      # The entry can expire between the CAS and the read; retry the CAS in that case.
      if existing is None:
        continue

      await self._store.expire(key, self._ttl_seconds)
      # Re-registering the id that already owns the key is not a duplicate.
      if existing == new_id:
        return False, new_id

      logger.debug("Duplicate notification collapsed dedup_key=%s effective_id=%s", dedup_key, existing)
      return True, existing

    logger.warning("Dedup entry churned during admission; admitting as new dedup_key=%s", dedup_key)
    return False, new_id

  async def release(self, dedup_key: str | None, item_id: str) -> None:
    """Drop the entry for `dedup_key` if `item_id` still owns it."""
    if not dedup_key:
      return
    await self._store.delete_if_equals(f"{self._key_prefix}{dedup_key}", item_id)
