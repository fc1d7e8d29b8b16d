"""Background loops that drain the queue into composed batches."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Sequence
from dataclasses import dataclass
from typing import Any

from herald.notifications.batching import BatchComposer
from herald.notifications.contracts import QueueItem
from herald.notifications.dispatcher import Dispatcher
from herald.notifications.queue import NotificationQueue
from herald.storage.kv_store import KeyValueStore
from herald.utils.ids import generate_nanoid

logger = logging.getLogger(__name__)

_PERIODIC_GUARD = "__periodic__"


@dataclass(frozen=True)
class SchedulerConfig:
  interval_seconds: float = 15.0
  guard_ttl_seconds: float = 60.0
  max_batches_per_pass: int = 10


class BatchScheduler:
  """Run batch passes reactively per user and periodically across all partitions.

  A pass claims a batch from the queue, composes it and hands the result to the dispatcher. Each
  user has a guard entry in the shared store; a pass that cannot take the guard returns without
  doing anything. Errors inside a pass are logged and never escape the loops.
  """

  def __init__(self, *, store: KeyValueStore, queue: NotificationQueue, composer: BatchComposer, dispatcher: Dispatcher, config: SchedulerConfig | None = None) -> None:
    self._store = store
    self._queue = queue
    self._composer = composer
    self._dispatcher = dispatcher
    self._config = config or SchedulerConfig()
    self._triggers: asyncio.Queue[str] = asyncio.Queue()
    self._pending: set[str] = set()
    self._stopping = asyncio.Event()
    self._loops: list[asyncio.Task[None]] = []
    self._passes: set[asyncio.Task[int]] = set()

  @property
  def running(self) -> bool:
    return bool(self._loops) and not self._stopping.is_set()

  def signal(self, user_id: str) -> None:
    """Request a pass for `user_id`; repeated signals before it runs collapse into one."""
    if self._stopping.is_set() or user_id in self._pending:
      return
    self._pending.add(user_id)
    self._triggers.put_nowait(user_id)

  def start(self) -> None:
    if self._loops:
      return
    self._stopping.clear()
    self._loops = [asyncio.create_task(self._periodic_loop(), name="herald-periodic"), asyncio.create_task(self._trigger_loop(), name="herald-triggers")]
    logger.info("Batch scheduler started interval_s=%s", self._config.interval_seconds)

  async def stop(self) -> None:
    """Stop issuing passes and wait for passes already running to finish."""
    self._stopping.set()
    for task in self._loops:
      task.cancel()
    await asyncio.gather(*self._loops, return_exceptions=True)
    self._loops = []
    if self._passes:
      await asyncio.gather(*self._passes, return_exceptions=True)
    logger.info("Batch scheduler stopped")

  async def process_user(self, user_id: str) -> int:
    """Run one batch pass for a user; returns the number of batches delivered."""
    guard_key, token = await self._acquire_guard(user_id)
    if token is None:
      logger.debug("Batch pass already running; skipping user_id=%s", user_id)
      return 0

    try:
      batch = await self._queue.dequeue_batch(user_id)
      if batch is None:
        return 0
      return await self._dispatch(batch.items)
    except Exception:  # noqa: BLE001
      logger.error("Batch pass failed user_id=%s", user_id, exc_info=True)
      return 0
    finally:
      await self._release_guard(guard_key, token)

  async def run_periodic_pass(self) -> int:
    """Drain due CRITICAL retries, then up to `max_batches_per_pass` batches across partitions."""
    guard_key, token = await self._acquire_guard(_PERIODIC_GUARD)
    if token is None:
      return 0

    delivered = 0
    try:
      critical = await self._queue.dequeue_critical()
      if critical:
        delivered += await self._dispatch(critical)

      for _ in range(self._config.max_batches_per_pass):
        batch = await self._queue.dequeue_batch()
        if batch is None:
          break
        delivered += await self._dispatch(batch.items)
    except Exception:  # noqa: BLE001
      logger.error("Periodic batch pass failed", exc_info=True)
    finally:
      await self._release_guard(guard_key, token)
    return delivered

  async def _dispatch(self, items: Sequence[QueueItem]) -> int:
    try:
      batches = self._composer.compose(items)
    except Exception:  # noqa: BLE001
      # Fall back to single-item delivery so a composition bug never drops claimed items.
      logger.error("Batch composition failed; dispatching %s items individually", len(items), exc_info=True)
      batches = self._composer.singletons(items)

    results = await self._dispatcher.dispatch_batches(batches)
    return sum(1 for result in results if result.success)

  async def _periodic_loop(self) -> None:
    while not self._stopping.is_set():
      try:
        await asyncio.wait_for(self._stopping.wait(), timeout=self._config.interval_seconds)
        return
      except TimeoutError:
        pass
      self._spawn(self.run_periodic_pass())

  async def _trigger_loop(self) -> None:
    while not self._stopping.is_set():
      user_id = await self._triggers.get()
      self._pending.discard(user_id)
      self._spawn(self.process_user(user_id))

  def _spawn(self, coro: Coroutine[Any, Any, int]) -> None:
    task = asyncio.create_task(coro)
    self._passes.add(task)
    task.add_done_callback(self._passes.discard)
    task.add_done_callback(self._log_task_error)

  async def _acquire_guard(self, name: str) -> tuple[str, str | None]:
    key = f"notifications:guard:{name}"
    token = generate_nanoid()
    if await self._store.set_if_absent(key, token, ttl_seconds=self._config.guard_ttl_seconds):
      return key, token
    return key, None

  async def _release_guard(self, key: str, token: str) -> None:
    # A guard that outlived its TTL may belong to another worker by now.
    await self._store.delete_if_equals(key, token)

  @staticmethod
  def _log_task_error(task: asyncio.Task[int]) -> None:
    """Log background pass exceptions to avoid silent delivery failures."""
    if task.cancelled():
      return
    try:
      _ = task.result()
    except Exception as exc:  # noqa: BLE001
      logger.error("Background batch pass failed: %s", exc, exc_info=True)
