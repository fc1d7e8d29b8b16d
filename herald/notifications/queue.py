"""Partitioned, priority-ordered notification queue on the shared store."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import msgspec

from herald.notifications.batching import AdaptiveBatchSizer
from herald.notifications.contracts import DeliveryStatus, DequeuedBatch, Priority, QueueFullError, QueueItem
from herald.notifications.dedup import Deduplicator
from herald.storage.kv_store import KeyValueStore
from herald.utils.clock import Clock, SystemClock
from herald.utils.ids import generate_batch_id

logger = logging.getLogger(__name__)

GLOBAL_PARTITION = "global"
LANE_PRIORITIES = (Priority.HIGH, Priority.NORMAL, Priority.LOW)

_KEY_PREFIX = "notifications"
_DEPTH_KEY = f"{_KEY_PREFIX}:depth"
_SEQUENCE_KEY = f"{_KEY_PREFIX}:seq"
_PARTITIONS_KEY = f"{_KEY_PREFIX}:partitions"
_CRITICAL_LANE = f"{_KEY_PREFIX}:critical"
_FAILED_KEY = f"{_KEY_PREFIX}:failed"


@dataclass(frozen=True)
class QueueConfig:
  """Capacity and partitioning limits for the queue."""

  max_queue_size: int = 10000
  partition_spill_threshold: int = 100
  high_water_mark: int = 500
  scan_limit: int = 200
  failed_retention_seconds: int = 7 * 86400


def _encode(item: QueueItem) -> str:
  return msgspec.json.encode(item).decode("utf-8")


def _decode(raw: str) -> QueueItem:
  return msgspec.json.decode(raw, type=QueueItem)


class NotificationQueue:
  """Store admitted items in per-user or global partitions with one due-ordered lane per priority.

  Each lane is a sorted set scored by `scheduled_for`; members are `<sequence>:<item id>` with a
  zero-padded sequence, so sorting members restores insertion order within a priority. Items are
  claimed by removing their member from the lane: whichever worker's ZREM succeeds owns the item.
  CRITICAL items never enter these lanes; failed CRITICAL sends wait in a dedicated retry lane.
  """

  def __init__(self, store: KeyValueStore, *, deduplicator: Deduplicator, sizer: AdaptiveBatchSizer, config: QueueConfig | None = None, clock: Clock | None = None, on_trigger: Callable[[str], None] | None = None) -> None:
    self._store = store
    self._deduplicator = deduplicator
    self._sizer = sizer
    self._config = config or QueueConfig()
    self._clock = clock or SystemClock()
    self._on_trigger = on_trigger

  def set_trigger(self, callback: Callable[[str], None] | None) -> None:
    """Register the callback notified when a user partition should be drained."""
    self._on_trigger = callback

  async def enqueue(self, item: QueueItem) -> str:
    """Admit an item and return its id, or the canonical id of an earlier duplicate.

    Duplicates resolve before capacity is checked, so a full queue still answers them. On
    `QueueFullError` the dedup registration stays with the caller, which decides whether to release it.
    """
    if item.priority is Priority.CRITICAL:
      raise ValueError("CRITICAL notifications are dispatched directly and never enter the general queue.")

    is_duplicate, effective_id = await self._deduplicator.check_and_register(item.dedup_key, item.id)
    if is_duplicate:
      return effective_id

    # Reserve capacity with an atomic increment and give it back on overflow.
    depth = await self._store.incr(_DEPTH_KEY)
    if depth > self._config.max_queue_size:
      await self._store.incr(_DEPTH_KEY, -1)
      logger.warning("Notification queue full depth=%s max=%s user_id=%s", depth - 1, self._config.max_queue_size, item.user_id)
      raise QueueFullError(f"Notification queue is full ({self._config.max_queue_size} items)")

    sequence = await self._store.incr(_SEQUENCE_KEY)
    stored = msgspec.structs.replace(item, sequence=sequence, status=DeliveryStatus.PENDING)
    partition = await self._choose_partition(item.user_id)
    await self._place(stored, partition)
    await self._maybe_trigger(item.user_id, partition, depth)
    return item.id

  async def requeue(self, item: QueueItem, *, delay_seconds: float) -> None:
    """Put a claimed item back for a later attempt, skipping dedup and capacity checks."""
    scheduled_for = self._clock.now() + max(0.0, delay_seconds)
    retry = msgspec.structs.replace(item, scheduled_for=scheduled_for, status=DeliveryStatus.PENDING)
    if item.priority is Priority.CRITICAL:
      await self._store.incr(_DEPTH_KEY)
      await self._store.set(self._item_key(item.id), _encode(retry))
      await self._store.zadd(_CRITICAL_LANE, self._member(retry), scheduled_for)
      return

    await self._store.incr(_DEPTH_KEY)
    partition = await self._choose_partition(item.user_id)
    await self._place(retry, partition)

  async def dequeue_batch(self, user_id: str | None = None, *, limit: int | None = None) -> DequeuedBatch | None:
    """Claim up to the adaptive batch size of due items, highest priority and oldest first."""
    now = self._clock.now()
    size = limit or self._sizer.batch_size(await self.depth())
    if user_id is not None:
      partitions = [f"user:{user_id}"]
    else:
      registered = await self._store.smembers(_PARTITIONS_KEY)
      partitions = [GLOBAL_PARTITION, *sorted(partition for partition in registered if partition != GLOBAL_PARTITION)]

    # Share capacity across partitions so one noisy partition cannot fill every batch.
    claimed: list[QueueItem] = []
    active = list(partitions)
    while active and len(claimed) < size:
      quota = max(1, math.ceil((size - len(claimed)) / len(active)))
      for partition in list(active):
        wanted = min(quota, size - len(claimed))
        if wanted <= 0:
          break
        items = await self._claim_partition(partition, wanted, now)
        claimed.extend(items)
        if len(items) < wanted:
          active.remove(partition)

    if not claimed:
      return None
    return DequeuedBatch(id=generate_batch_id(), items=tuple(claimed), created_at=now)

  async def dequeue_critical(self, *, limit: int = 50) -> list[QueueItem]:
    """Claim due items from the CRITICAL retry lane."""
    now = self._clock.now()
    claimed: list[QueueItem] = []
    for member, _ in sorted(await self._store.zrange_by_score(_CRITICAL_LANE, float("-inf"), now, limit=limit)):
      if not await self._store.zrem(_CRITICAL_LANE, member):
        continue
      await self._store.incr(_DEPTH_KEY, -1)
      item = await self._load(member)
      if item is not None:
        claimed.append(item)
    return claimed

  async def complete(self, item: QueueItem) -> None:
    """Forget a delivered item."""
    await self._store.delete(self._item_key(item.id))

  async def mark_failed(self, item: QueueItem, *, error: str | None = None) -> QueueItem:
    """Retain an item whose retries are exhausted for inspection."""
    now = self._clock.now()
    failed = msgspec.structs.replace(item, status=DeliveryStatus.FAILED, last_error=error or item.last_error)
    retention = self._config.failed_retention_seconds
    await self._store.set(self._item_key(item.id), _encode(failed), ttl_seconds=retention)
    await self._store.zadd(_FAILED_KEY, item.id, now)
    for expired_id, _ in await self._store.zrange_by_score(_FAILED_KEY, float("-inf"), now - retention):
      await self._store.zrem(_FAILED_KEY, expired_id)
    return failed

  async def list_failed(self, *, limit: int = 50) -> list[QueueItem]:
    """Return retained FAILED items, newest first."""
    rows = await self._store.zrange_by_score(_FAILED_KEY, float("-inf"), float("inf"))
    failed: list[QueueItem] = []
    for item_id, _ in reversed(rows):
      raw = await self._store.get(self._item_key(item_id))
      if raw is None:
        await self._store.zrem(_FAILED_KEY, item_id)
        continue
      failed.append(_decode(raw))
      if len(failed) >= limit:
        break
    return failed

  async def depth(self) -> int:
    return max(0, int(await self._store.get(_DEPTH_KEY) or 0))

  async def partition_depth(self, user_id: str) -> int:
    return max(0, int(await self._store.get(self._partition_depth_key(f"user:{user_id}")) or 0))

  async def health(self) -> dict[str, Any]:
    now = self._clock.now()
    depth = await self.depth()
    partitions = await self._store.smembers(_PARTITIONS_KEY)
    oldest: float | None = None
    for partition in partitions:
      first = await self._oldest_score(partition)
      if first is not None and (oldest is None or first < oldest):
        oldest = first
    critical_first = await self._store.zfirst(_CRITICAL_LANE)
    if critical_first is not None and (oldest is None or critical_first[1] < oldest):
      oldest = critical_first[1]

    return {
      "queueSize": depth,
      "criticalSize": await self._store.zcard(_CRITICAL_LANE),
      "partitions": len(partitions),
      "oldestItemAgeMs": int(max(0.0, now - oldest) * 1000) if oldest is not None else 0,
      "backlog": max(0, depth - self._config.high_water_mark),
      "maxQueueSize": self._config.max_queue_size,
    }

  async def _choose_partition(self, user_id: str) -> str:
    own = f"user:{user_id}"
    depth = int(await self._store.get(self._partition_depth_key(own)) or 0)
    if depth >= self._config.partition_spill_threshold:
      logger.debug("User partition over threshold; spilling to global user_id=%s depth=%s", user_id, depth)
      return GLOBAL_PARTITION
    return own

  async def _place(self, item: QueueItem, partition: str) -> None:
    await self._store.incr(self._partition_depth_key(partition))
    await self._store.set(self._item_key(item.id), _encode(item))
    await self._store.zadd(self._lane_key(partition, item.priority), self._member(item), item.scheduled_for)
    await self._store.sadd(_PARTITIONS_KEY, partition)

  async def _claim_partition(self, partition: str, count: int, now: float) -> list[QueueItem]:
    claimed: list[QueueItem] = []
    for priority in LANE_PRIORITIES:
      if len(claimed) >= count:
        break
      lane = self._lane_key(partition, priority)
      candidates = await self._store.zrange_by_score(lane, float("-inf"), now, limit=self._config.scan_limit)
      for member, _ in sorted(candidates):
        if len(claimed) >= count:
          break
        # Losing the ZREM means another worker already owns this item.
        if not await self._store.zrem(lane, member):
          continue
        await self._store.incr(self._partition_depth_key(partition), -1)
        await self._store.incr(_DEPTH_KEY, -1)
        item = await self._load(member)
        if item is not None:
          claimed.append(item)

    await self._prune_partition(partition)
    return claimed

  async def _load(self, member: str) -> QueueItem | None:
    item_id = member.split(":", 1)[1]
    raw = await self._store.get(self._item_key(item_id))
    if raw is None:
      logger.warning("Queue member without stored item; dropping item_id=%s", item_id)
      return None
    return _decode(raw)

  async def _prune_partition(self, partition: str) -> None:
    if partition == GLOBAL_PARTITION:
      return
    key = self._partition_depth_key(partition)
    if int(await self._store.get(key) or 0) > 0:
      return
    await self._store.srem(_PARTITIONS_KEY, partition)
    # Re-register if an enqueue landed between the depth read and the removal.
    if int(await self._store.get(key) or 0) > 0:
      await self._store.sadd(_PARTITIONS_KEY, partition)

  async def _oldest_score(self, partition: str) -> float | None:
    oldest: float | None = None
    for priority in LANE_PRIORITIES:
      first = await self._store.zfirst(self._lane_key(partition, priority))
      if first is not None and (oldest is None or first[1] < oldest):
        oldest = first[1]
    return oldest

  async def _maybe_trigger(self, user_id: str, partition: str, total_depth: int) -> None:
    if self._on_trigger is None:
      return

    trigger_size, max_wait_seconds = self._sizer.trigger_thresholds(total_depth)
    partition_depth = int(await self._store.get(self._partition_depth_key(partition)) or 0)
    fire = partition == GLOBAL_PARTITION or partition_depth >= trigger_size
    if not fire:
      oldest = await self._oldest_score(partition)
      now = self._clock.now()
      fire = oldest is not None and oldest <= now and now - oldest >= max_wait_seconds

    if fire:
      self._on_trigger(user_id)

  @staticmethod
  def _item_key(item_id: str) -> str:
    return f"{_KEY_PREFIX}:item:{item_id}"

  @staticmethod
  def _lane_key(partition: str, priority: Priority) -> str:
    return f"{_KEY_PREFIX}:{partition}:{priority.value.lower()}"

  @staticmethod
  def _partition_depth_key(partition: str) -> str:
    return f"{_KEY_PREFIX}:{partition}:depth"

  @staticmethod
  def _member(item: QueueItem) -> str:
    return f"{item.sequence:015d}:{item.id}"
