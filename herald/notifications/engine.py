"""Facade tying the engine components together for the API and the process lifecycle."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from herald.notifications.batching import process_memory_mb
from herald.notifications.circuit_breaker import CircuitBreaker
from herald.notifications.contracts import NotificationPayload, Priority, QueueItem, SendOptions, SendResult
from herald.notifications.dispatcher import Dispatcher
from herald.notifications.metrics import MetricsSnapshot, NotificationMetrics
from herald.notifications.push_subscription_repo import PushSubscriptionRepository
from herald.notifications.queue import NotificationQueue
from herald.notifications.rate_limiter import RateLimiter
from herald.notifications.scheduler import BatchScheduler
from herald.storage.kv_store import KeyValueStore

logger = logging.getLogger(__name__)


class NotificationEngine:
  """Entry point for sending notifications and inspecting engine health."""

  def __init__(
    self,
    *,
    store: KeyValueStore,
    queue: NotificationQueue,
    dispatcher: Dispatcher,
    scheduler: BatchScheduler,
    metrics: NotificationMetrics,
    circuit_breaker: CircuitBreaker,
    rate_limiter: RateLimiter,
    subscriptions: PushSubscriptionRepository,
    scheduler_enabled: bool = True,
    metrics_interval_seconds: float = 30.0,
    memory_probe: Callable[[], float] = process_memory_mb,
    closers: Sequence[Callable[[], Awaitable[None]]] = (),
  ) -> None:
    self.store = store
    self.queue = queue
    self.dispatcher = dispatcher
    self.scheduler = scheduler
    self.metrics = metrics
    self.circuit_breaker = circuit_breaker
    self.rate_limiter = rate_limiter
    self.subscriptions = subscriptions
    self._scheduler_enabled = scheduler_enabled
    self._metrics_interval_seconds = metrics_interval_seconds
    self._memory_probe = memory_probe
    self._closers = tuple(closers)
    self._metrics_task: asyncio.Task[None] | None = None

  async def send(self, user_id: str, payload: NotificationPayload, *, priority: Priority | None = None, options: SendOptions | None = None) -> SendResult:
    return await self.dispatcher.send(user_id, payload, priority=priority, options=options)

  async def metrics_snapshot(self, *, period_hours: int = 24) -> MetricsSnapshot:
    return await self.metrics.snapshot(period_hours=period_hours, queue_depth=await self.queue.depth(), circuit_state=self.circuit_breaker.state.value)

  async def list_failed(self, *, limit: int = 50) -> list[QueueItem]:
    return await self.queue.list_failed(limit=limit)

  async def rate_limit_status(self, user_id: str) -> dict[str, Any]:
    return await self.rate_limiter.get_user_status(user_id)

  async def system_health(self) -> dict[str, Any]:
    """Combine store, queue and breaker health into one status."""
    store_ok = await self.store.ping()
    queue_health = await self.queue.health()
    breaker_health = self.circuit_breaker.health()

    if not store_ok or breaker_health["status"] == "unhealthy":
      status = "unhealthy"
    elif breaker_health["status"] == "degraded" or queue_health["backlog"] > 0:
      status = "degraded"
    else:
      status = "healthy"

    return {
      "status": status,
      "store": {"ok": store_ok},
      "queue": queue_health,
      "circuitBreaker": breaker_health,
      "scheduler": {"running": self.scheduler.running},
      "memoryUsageMb": round(self._memory_probe(), 2),
    }

  async def start(self) -> None:
    if self._scheduler_enabled:
      self.scheduler.start()
    if self._metrics_task is None:
      self._metrics_task = asyncio.create_task(self._metrics_loop(), name="herald-metrics")

  async def stop(self) -> None:
    await self.scheduler.stop()
    if self._metrics_task is not None:
      self._metrics_task.cancel()
      await asyncio.gather(self._metrics_task, return_exceptions=True)
      self._metrics_task = None
    for closer in self._closers:
      try:
        await closer()
      except Exception as exc:  # noqa: BLE001
        logger.warning("Failed to close engine resource: %s", exc)

  async def _metrics_loop(self) -> None:
    while True:
      await asyncio.sleep(self._metrics_interval_seconds)
      try:
        snapshot = await self.metrics_snapshot(period_hours=1)
      except Exception:  # noqa: BLE001
        logger.error("Failed to collect metrics snapshot", exc_info=True)
        continue
      logger.info(
        "Notification metrics delivery_rate=%.1f error_rate=%.1f avg_latency_ms=%.1f throughput_per_hour=%.1f batch_efficiency=%.2f queue_depth=%s circuit=%s memory_mb=%.1f",
        snapshot.delivery_rate,
        snapshot.error_rate,
        snapshot.average_latency_ms,
        snapshot.throughput_per_hour,
        snapshot.batch_efficiency,
        snapshot.queue_depth,
        snapshot.circuit_state,
        snapshot.memory_usage_mb,
      )
