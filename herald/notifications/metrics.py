"""Delivery metrics aggregated in hourly buckets on the shared store."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from herald.notifications.batching import process_memory_mb
from herald.notifications.contracts import QueueItem
from herald.storage.kv_store import KeyValueStore
from herald.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

_BUCKET_SECONDS = 3600
_COUNTERS = ("total", "success", "failed", "latency_ms", "items", "suppressed", "exhausted")


@dataclass(frozen=True)
class MetricsSnapshot:
  """Aggregated delivery health over a reporting period."""

  period_hours: int
  generated_at: float
  total: int
  successful: int
  failed: int
  suppressed: int
  exhausted: int
  delivery_rate: float
  error_rate: float
  average_latency_ms: float
  throughput_per_hour: float
  batch_efficiency: float
  queue_depth: int
  circuit_state: str
  memory_usage_mb: float

  def to_dict(self) -> dict[str, Any]:
    return {
      "periodHours": self.period_hours,
      "generatedAt": self.generated_at,
      "total": self.total,
      "successful": self.successful,
      "failed": self.failed,
      "suppressed": self.suppressed,
      "exhausted": self.exhausted,
      "deliveryRate": round(self.delivery_rate, 2),
      "errorRate": round(self.error_rate, 2),
      "averageLatency": round(self.average_latency_ms, 2),
      "throughput": round(self.throughput_per_hour, 2),
      "batchEfficiency": round(self.batch_efficiency, 2),
      "queueDepth": self.queue_depth,
      "circuitState": self.circuit_state,
      "memoryUsage": round(self.memory_usage_mb, 2),
    }


@dataclass(frozen=True)
class PerformanceInsight:
  severity: str
  metric: str
  message: str

  def to_dict(self) -> dict[str, str]:
    return {"severity": self.severity, "metric": self.metric, "message": self.message}


class NotificationMetrics:
  """Record delivery outcomes and derive rates, latency and batching efficiency."""

  def __init__(self, store: KeyValueStore, *, clock: Clock | None = None, memory_probe: Callable[[], float] = process_memory_mb, retention_seconds: int = 7 * 86400) -> None:
    self._store = store
    self._clock = clock or SystemClock()
    self._memory_probe = memory_probe
    self._retention_seconds = retention_seconds

  async def record_delivery(self, notification_type: str, *, success: bool, latency_ms: float, batch_size: int = 1) -> None:
    bucket = self._bucket(self._clock.now())
    await self._incr(bucket, "total")
    await self._incr(bucket, "success" if success else "failed")
    await self._incr(bucket, "latency_ms", int(round(latency_ms)))
    if success:
      await self._incr(bucket, "items", batch_size)
    await self._incr(bucket, f"type:{notification_type}")
    types_key = f"metrics:{bucket}:types"
    await self._store.sadd(types_key, notification_type)
    await self._store.expire(types_key, self._retention_seconds)

  async def record_suppressed(self, notification_type: str) -> None:
    bucket = self._bucket(self._clock.now())
    await self._incr(bucket, "suppressed")
    await self._incr(bucket, f"suppressed:{notification_type}")

  async def record_exhausted(self, item: QueueItem) -> None:
    """Count an item whose retries ran out; this is the hook alerting keys off."""
    await self._incr(self._bucket(self._clock.now()), "exhausted")
    logger.error("Notification retries exhausted item_id=%s user_id=%s type=%s attempts=%s error=%s", item.id, item.user_id, item.notification_type, item.attempts, item.last_error)

  async def snapshot(self, *, period_hours: int = 24, queue_depth: int = 0, circuit_state: str = "CLOSED") -> MetricsSnapshot:
    now = self._clock.now()
    totals = dict.fromkeys(_COUNTERS, 0)
    for bucket in self._buckets(now, period_hours):
      for name in _COUNTERS:
        totals[name] += int(await self._store.get(f"metrics:{bucket}:{name}") or 0)

    total = totals["total"]
    return MetricsSnapshot(
      period_hours=period_hours,
      generated_at=now,
      total=total,
      successful=totals["success"],
      failed=totals["failed"],
      suppressed=totals["suppressed"],
      exhausted=totals["exhausted"],
      delivery_rate=totals["success"] / total * 100 if total else 100.0,
      error_rate=totals["failed"] / total * 100 if total else 0.0,
      average_latency_ms=totals["latency_ms"] / total if total else 0.0,
      throughput_per_hour=total / period_hours,
      batch_efficiency=totals["items"] / totals["success"] if totals["success"] else 0.0,
      queue_depth=queue_depth,
      circuit_state=circuit_state,
      memory_usage_mb=self._memory_probe(),
    )

  async def type_breakdown(self, *, period_hours: int = 24) -> dict[str, int]:
    """Return delivery attempts per notification type, most frequent first."""
    counts: dict[str, int] = {}
    for bucket in self._buckets(self._clock.now(), period_hours):
      for notification_type in await self._store.smembers(f"metrics:{bucket}:types"):
        counts[notification_type] = counts.get(notification_type, 0) + int(await self._store.get(f"metrics:{bucket}:type:{notification_type}") or 0)
    return dict(sorted(counts.items(), key=lambda row: row[1], reverse=True))

  def insights(self, snapshot: MetricsSnapshot) -> list[PerformanceInsight]:
    """Flag metrics that fall outside healthy operating ranges."""
    insights: list[PerformanceInsight] = []
    if snapshot.total:
      if snapshot.delivery_rate < 90:
        insights.append(PerformanceInsight("critical", "deliveryRate", f"Delivery rate is {snapshot.delivery_rate:.1f}%; investigate transport failures."))
      elif snapshot.delivery_rate < 95:
        insights.append(PerformanceInsight("warning", "deliveryRate", f"Delivery rate is {snapshot.delivery_rate:.1f}%, below the 95% target."))

      if snapshot.average_latency_ms > 1000:
        insights.append(PerformanceInsight("critical", "averageLatency", f"Average latency is {snapshot.average_latency_ms:.0f}ms."))
      elif snapshot.average_latency_ms > 500:
        insights.append(PerformanceInsight("warning", "averageLatency", f"Average latency is {snapshot.average_latency_ms:.0f}ms, above 500ms."))

      if snapshot.batch_efficiency < 2:
        insights.append(PerformanceInsight("info", "batchEfficiency", f"Batches average {snapshot.batch_efficiency:.1f} items; batching has little effect."))

    if snapshot.queue_depth > 1000:
      insights.append(PerformanceInsight("critical", "queueDepth", f"Queue depth is {snapshot.queue_depth}; dispatch is falling behind."))
    elif snapshot.queue_depth > 500:
      insights.append(PerformanceInsight("warning", "queueDepth", f"Queue depth is {snapshot.queue_depth}."))

    if snapshot.memory_usage_mb > 200:
      insights.append(PerformanceInsight("warning", "memoryUsage", f"Process memory is {snapshot.memory_usage_mb:.0f}MB."))

    if snapshot.circuit_state != "CLOSED":
      insights.append(PerformanceInsight("critical", "circuitState", f"Circuit breaker is {snapshot.circuit_state}."))
    return insights

  def render_prometheus(self, snapshot: MetricsSnapshot) -> str:
    """Render a snapshot in the Prometheus text exposition format."""
    gauges = (
      ("herald_delivery_rate_percent", "Percentage of successful deliveries in the reporting period.", snapshot.delivery_rate),
      ("herald_error_rate_percent", "Percentage of failed deliveries in the reporting period.", snapshot.error_rate),
      ("herald_average_latency_ms", "Average transport latency in milliseconds.", snapshot.average_latency_ms),
      ("herald_throughput_per_hour", "Delivery attempts per hour.", snapshot.throughput_per_hour),
      ("herald_batch_efficiency", "Average items carried per successful delivery.", snapshot.batch_efficiency),
      ("herald_queue_depth", "Items waiting in the notification queue.", snapshot.queue_depth),
      ("herald_memory_usage_mb", "Resident memory of the engine process in megabytes.", snapshot.memory_usage_mb),
      ("herald_deliveries_total", "Delivery attempts in the reporting period.", snapshot.total),
      ("herald_exhausted_total", "Items that exhausted their retries in the reporting period.", snapshot.exhausted),
    )
    lines: list[str] = []
    for name, help_text, value in gauges:
      lines.append(f"# HELP {name} {help_text}")
      lines.append(f"# TYPE {name} gauge")
      lines.append(f"{name} {float(value)}")

    lines.append("# HELP herald_circuit_state Circuit breaker state (1 for the current state).")
    lines.append("# TYPE herald_circuit_state gauge")
    for state in ("CLOSED", "OPEN", "HALF_OPEN"):
      lines.append(f'herald_circuit_state{{state="{state}"}} {1 if snapshot.circuit_state == state else 0}')
    return "\n".join(lines) + "\n"

  async def _incr(self, bucket: int, name: str, amount: int = 1) -> None:
    await self._store.incr(f"metrics:{bucket}:{name}", amount, ttl_seconds=self._retention_seconds)

  @staticmethod
  def _bucket(now: float) -> int:
    return int(now // _BUCKET_SECONDS)

  @staticmethod
  def _buckets(now: float, period_hours: int) -> range:
    current = int(now // _BUCKET_SECONDS)
    return range(current - period_hours + 1, current + 1)
