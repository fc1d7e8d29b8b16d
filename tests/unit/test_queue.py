from __future__ import annotations

import asyncio

import pytest

from herald.notifications.contracts import DeliveryStatus, Priority, QueueFullError
from herald.notifications.queue import NotificationQueue, QueueConfig
from tests.factories import make_item


@pytest.mark.anyio
async def test_enqueue_then_dequeue_returns_items_in_fifo_order(queue, clock):
  items = [make_item(clock) for _ in range(3)]
  for item in items:
    clock.advance(1)
    assert await queue.enqueue(item) == item.id

  batch = await queue.dequeue_batch("user-1")
  assert [entry.id for entry in batch.items] == [item.id for item in items]
  assert [entry.sequence for entry in batch.items] == sorted(entry.sequence for entry in batch.items)
  assert await queue.depth() == 0


@pytest.mark.anyio
async def test_higher_priority_lanes_drain_first(queue, clock):
  low = make_item(clock, priority=Priority.LOW)
  normal = make_item(clock, priority=Priority.NORMAL)
  high = make_item(clock, priority=Priority.HIGH)
  for item in (low, normal, high):
    await queue.enqueue(item)

  batch = await queue.dequeue_batch("user-1")
  assert [entry.priority for entry in batch.items] == [Priority.HIGH, Priority.NORMAL, Priority.LOW]


@pytest.mark.anyio
async def test_items_are_not_dequeued_before_they_are_due(queue, clock):
  future = make_item(clock, delay=120)
  await queue.enqueue(future)
  assert await queue.dequeue_batch("user-1") is None

  clock.advance(121)
  batch = await queue.dequeue_batch("user-1")
  assert batch is not None and batch.items[0].id == future.id


@pytest.mark.anyio
async def test_duplicate_enqueue_returns_original_id_without_storing(queue, clock):
  first = make_item(clock, dedup_key="task-42")
  second = make_item(clock, dedup_key="task-42")
  assert await queue.enqueue(first) == first.id
  assert await queue.enqueue(second) == first.id
  assert await queue.depth() == 1


@pytest.mark.anyio
async def test_enqueue_fails_fast_when_full(store, deduplicator, sizer, clock):
  queue = NotificationQueue(store, deduplicator=deduplicator, sizer=sizer, config=QueueConfig(max_queue_size=2), clock=clock)
  await queue.enqueue(make_item(clock))
  await queue.enqueue(make_item(clock))
  with pytest.raises(QueueFullError):
    await queue.enqueue(make_item(clock))
  assert await queue.depth() == 2


@pytest.mark.anyio
async def test_duplicate_resolves_to_canonical_id_while_full(store, deduplicator, sizer, clock):
  queue = NotificationQueue(store, deduplicator=deduplicator, sizer=sizer, config=QueueConfig(max_queue_size=1), clock=clock)
  first = make_item(clock, dedup_key="task-42")
  await queue.enqueue(first)

  assert await queue.enqueue(make_item(clock, dedup_key="task-42")) == first.id
  with pytest.raises(QueueFullError):
    await queue.enqueue(make_item(clock, dedup_key="task-43"))
  assert await queue.depth() == 1


@pytest.mark.anyio
async def test_critical_items_are_rejected(queue, clock):
  with pytest.raises(ValueError):
    await queue.enqueue(make_item(clock, priority=Priority.CRITICAL))


@pytest.mark.anyio
async def test_partition_spills_to_global_over_threshold(store, deduplicator, sizer, clock):
  queue = NotificationQueue(store, deduplicator=deduplicator, sizer=sizer, config=QueueConfig(partition_spill_threshold=2), clock=clock)
  for _ in range(3):
    await queue.enqueue(make_item(clock))

  assert await queue.partition_depth("user-1") == 2
  assert await queue.depth() == 3
  # The user partition holds two; the third is only reachable through a global dequeue.
  assert (await queue.dequeue_batch("user-1")).size == 2
  assert (await queue.dequeue_batch()).size == 1


@pytest.mark.anyio
async def test_global_dequeue_shares_capacity_across_partitions(queue, clock):
  for _ in range(8):
    await queue.enqueue(make_item(clock, user_id="noisy"))
  await queue.enqueue(make_item(clock, user_id="quiet"))

  batch = await queue.dequeue_batch(limit=4)
  users = [item.user_id for item in batch.items]
  assert batch.size == 4
  assert "quiet" in users


@pytest.mark.anyio
async def test_concurrent_dequeues_never_share_an_item(queue, clock):
  for _ in range(20):
    await queue.enqueue(make_item(clock))

  batches = await asyncio.gather(*(queue.dequeue_batch("user-1", limit=5) for _ in range(6)))
  claimed = [item.id for batch in batches if batch is not None for item in batch.items]
  assert len(claimed) == 20
  assert len(set(claimed)) == 20


@pytest.mark.anyio
async def test_requeue_bypasses_dedup_and_delays(queue, clock):
  item = make_item(clock, dedup_key="task-1")
  await queue.enqueue(item)
  claimed = (await queue.dequeue_batch("user-1")).items[0]

  await queue.requeue(claimed, delay_seconds=30)
  assert await queue.dequeue_batch("user-1") is None
  clock.advance(30)
  again = await queue.dequeue_batch("user-1")
  assert again.items[0].id == item.id


@pytest.mark.anyio
async def test_critical_requeue_goes_to_critical_lane(queue, clock):
  item = make_item(clock, priority=Priority.CRITICAL, batchable=False)
  await queue.requeue(item, delay_seconds=5)
  assert await queue.dequeue_batch() is None
  assert await queue.dequeue_critical() == []

  clock.advance(5)
  claimed = await queue.dequeue_critical()
  assert [entry.id for entry in claimed] == [item.id]
  assert await queue.depth() == 0


@pytest.mark.anyio
async def test_failed_items_are_retained_for_inspection(queue, clock):
  item = make_item(clock, attempts=3)
  failed = await queue.mark_failed(item, error="TransientPushProviderError: 503")
  assert failed.status is DeliveryStatus.FAILED

  listed = await queue.list_failed()
  assert [entry.id for entry in listed] == [item.id]
  assert listed[0].last_error == "TransientPushProviderError: 503"

  clock.advance(7 * 86400 + 1)
  assert await queue.list_failed() == []


@pytest.mark.anyio
async def test_trigger_fires_when_partition_reaches_threshold(queue, clock):
  fired: list[str] = []
  queue.set_trigger(fired.append)
  # Low load doubles the base size of 10, so the 20th item fires.
  for _ in range(19):
    await queue.enqueue(make_item(clock))
  assert fired == []
  await queue.enqueue(make_item(clock))
  assert fired == ["user-1"]


@pytest.mark.anyio
async def test_trigger_fires_when_oldest_item_waited_too_long(queue, clock):
  fired: list[str] = []
  queue.set_trigger(fired.append)
  await queue.enqueue(make_item(clock))
  clock.advance(46)
  await queue.enqueue(make_item(clock))
  assert fired == ["user-1"]


@pytest.mark.anyio
async def test_health_reports_depth_and_age(queue, clock):
  await queue.enqueue(make_item(clock))
  clock.advance(2)
  health = await queue.health()
  assert health["queueSize"] == 1
  assert health["partitions"] == 1
  assert health["oldestItemAgeMs"] == 2000
  assert health["backlog"] == 0
