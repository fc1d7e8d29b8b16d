"""Adaptive batch sizing and composition of queued items into deliverable batches."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

import psutil

from herald.notifications.contracts import Batch, Priority, QueueItem
from herald.notifications.summaries import DEFAULT_SUMMARIZERS, Summarizer, summarize_generic
from herald.utils.clock import Clock, SystemClock
from herald.utils.ids import generate_batch_id

logger = logging.getLogger(__name__)

MIN_BATCH_SIZE = 5
MAX_BATCH_SIZE = 30
GROUPING_WINDOW_SECONDS = 15 * 60
MAX_SCHEDULE_SPREAD_SECONDS = 5 * 60


def process_memory_mb() -> float:
  """Return resident memory of this process in megabytes."""
  return psutil.Process().memory_info().rss / 1024 / 1024


class AdaptiveBatchSizer:
  """Scale batch size and trigger thresholds with queue depth and memory pressure."""

  def __init__(self, *, base_size: int = 10, high_water_mark: int = 500, memory_pressure_mb: float = 200, memory_limit_mb: float = 256, max_batch_wait_ms: int = 30000, memory_probe: Callable[[], float] = process_memory_mb) -> None:
    self._base_size = base_size
    self._high_water_mark = high_water_mark
    self._memory_pressure_mb = memory_pressure_mb
    self._memory_limit_mb = memory_limit_mb
    self._max_batch_wait_seconds = max_batch_wait_ms / 1000
    self._memory_probe = memory_probe

  def batch_size(self, queue_depth: int) -> int:
    size = self._base_size
    # Drain backlog faster once the queue passes the high-water mark.
    if queue_depth > self._high_water_mark:
      size *= 2
    if self._memory_probe() > self._memory_pressure_mb:
      size //= 2
    return max(MIN_BATCH_SIZE, min(MAX_BATCH_SIZE, size))

  def system_load(self, queue_depth: int) -> float:
    queue_load = queue_depth / (self._high_water_mark * 2)
    memory_load = self._memory_probe() / self._memory_limit_mb
    return min(1.0, max(queue_load, memory_load))

  def trigger_thresholds(self, queue_depth: int) -> tuple[int, float]:
    """Return `(partition_size, max_wait_seconds)` that should fire a reactive pass."""
    size = self._base_size
    max_wait = self._max_batch_wait_seconds
    load = self.system_load(queue_depth)
    if load > 0.8:
      size = max(1, size // 2)
      max_wait /= 2
    elif load < 0.3:
      size *= 2
      max_wait *= 1.5
    return size, max_wait


class BatchComposer:
  """Group items by user, type, priority and scheduled time window, and summarize qualifying groups.

  A group becomes one synthesized batch only when it holds at least two batchable, non-CRITICAL
  items of one priority scheduled within five minutes of each other. Everything else is passed
  through as single-item batches carrying the original payload.
  """

  def __init__(self, *, clock: Clock | None = None, summarizers: Mapping[str, Summarizer] | None = None, default_summarizer: Summarizer = summarize_generic) -> None:
    self._clock = clock or SystemClock()
    self._summarizers = dict(DEFAULT_SUMMARIZERS if summarizers is None else summarizers)
    self._default_summarizer = default_summarizer

  def register(self, notification_type: str, summarizer: Summarizer) -> None:
    """Register a summarizer for a notification type."""
    self._summarizers[notification_type] = summarizer

  def compose(self, items: Sequence[QueueItem]) -> list[Batch]:
    now = self._clock.now()
    groups: dict[tuple[str, str, Priority, int], list[QueueItem]] = {}
    for item in sorted(items, key=lambda entry: (-entry.priority.rank, entry.sequence)):
      key = (item.user_id, item.notification_type, item.priority, int(item.scheduled_for // GROUPING_WINDOW_SECONDS))
      groups.setdefault(key, []).append(item)

    batches: list[Batch] = []
    for (user_id, notification_type, priority, _), members in groups.items():
      if not _qualifies(priority, members):
        batches.extend(self.singletons(members, now=now))
        continue
      batches.append(self._summarize(user_id, notification_type, priority, members, now=now))

    return batches

  def singletons(self, items: Sequence[QueueItem], *, now: float | None = None) -> list[Batch]:
    """Wrap each item in its own batch with the original payload."""
    created_at = self._clock.now() if now is None else now
    return [Batch(id=generate_batch_id(), user_id=item.user_id, priority=item.priority, notification_type=item.notification_type, items=(item,), payload=item.payload, created_at=created_at) for item in items]

  def _summarize(self, user_id: str, notification_type: str, priority: Priority, items: list[QueueItem], *, now: float) -> Batch:
    summarizer = self._summarizers.get(notification_type, self._default_summarizer)
    payload = summarizer(items)
    logger.debug("Composed batch user_id=%s type=%s size=%s", user_id, notification_type, len(items))
    return Batch(id=generate_batch_id(), user_id=user_id, priority=priority, notification_type=notification_type, items=tuple(items), payload=payload, created_at=now, synthesized=True)


def _qualifies(priority: Priority, members: Sequence[QueueItem]) -> bool:
  """A group is summarized as a whole or not at all."""
  if len(members) < 2 or priority is Priority.CRITICAL:
    return False
  if not all(item.batchable for item in members):
    return False
  scheduled = [item.scheduled_for for item in members]
  return max(scheduled) - min(scheduled) <= MAX_SCHEDULE_SPREAD_SECONDS
