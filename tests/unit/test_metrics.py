from __future__ import annotations

import pytest

from herald.notifications.metrics import NotificationMetrics
from tests.factories import make_item


@pytest.fixture
def metrics(store, clock):
  return NotificationMetrics(store, clock=clock, memory_probe=lambda: 64.0)


@pytest.mark.anyio
async def test_snapshot_derives_rates_and_batch_efficiency(metrics):
  await metrics.record_delivery("TASK_DEADLINE", success=True, latency_ms=100, batch_size=3)
  await metrics.record_delivery("TASK_DEADLINE", success=True, latency_ms=300, batch_size=1)
  await metrics.record_delivery("GENERAL", success=False, latency_ms=200)
  await metrics.record_suppressed("GENERAL")

  snapshot = await metrics.snapshot(period_hours=1, queue_depth=7, circuit_state="CLOSED")

  assert snapshot.total == 3
  assert snapshot.successful == 2
  assert snapshot.failed == 1
  assert snapshot.suppressed == 1
  assert snapshot.delivery_rate == pytest.approx(200 / 3)
  assert snapshot.error_rate == pytest.approx(100 / 3)
  assert snapshot.average_latency_ms == pytest.approx(200.0)
  assert snapshot.batch_efficiency == pytest.approx(2.0)
  assert snapshot.queue_depth == 7
  assert snapshot.memory_usage_mb == 64.0


@pytest.mark.anyio
async def test_empty_period_reports_full_delivery_rate(metrics):
  snapshot = await metrics.snapshot()
  assert snapshot.total == 0
  assert snapshot.delivery_rate == 100.0
  assert snapshot.error_rate == 0.0
  assert snapshot.batch_efficiency == 0.0


@pytest.mark.anyio
async def test_snapshot_only_counts_buckets_inside_the_period(metrics, clock):
  await metrics.record_delivery("GENERAL", success=True, latency_ms=10)
  clock.advance(3 * 3600)
  await metrics.record_delivery("GENERAL", success=True, latency_ms=10)

  assert (await metrics.snapshot(period_hours=1)).total == 1
  assert (await metrics.snapshot(period_hours=4)).total == 2
  assert (await metrics.snapshot(period_hours=4)).throughput_per_hour == pytest.approx(0.5)


@pytest.mark.anyio
async def test_type_breakdown_orders_by_volume(metrics):
  for _ in range(3):
    await metrics.record_delivery("HABIT_REMINDER", success=True, latency_ms=5)
  await metrics.record_delivery("GENERAL", success=False, latency_ms=5)

  assert await metrics.type_breakdown(period_hours=1) == {"HABIT_REMINDER": 3, "GENERAL": 1}


@pytest.mark.anyio
async def test_exhausted_items_are_counted(metrics, clock):
  await metrics.record_exhausted(make_item(clock, attempts=3, last_error="boom"))
  assert (await metrics.snapshot()).exhausted == 1


@pytest.mark.anyio
async def test_insights_flag_unhealthy_operation(metrics):
  await metrics.record_delivery("GENERAL", success=True, latency_ms=1500)
  await metrics.record_delivery("GENERAL", success=False, latency_ms=1500)
  snapshot = await metrics.snapshot(queue_depth=1200, circuit_state="OPEN")

  flagged = {(insight.metric, insight.severity) for insight in metrics.insights(snapshot)}

  assert ("deliveryRate", "critical") in flagged
  assert ("averageLatency", "critical") in flagged
  assert ("batchEfficiency", "info") in flagged
  assert ("queueDepth", "critical") in flagged
  assert ("circuitState", "critical") in flagged


@pytest.mark.anyio
async def test_insights_are_quiet_when_healthy(metrics):
  await metrics.record_delivery("TASK_DEADLINE", success=True, latency_ms=50, batch_size=4)
  assert metrics.insights(await metrics.snapshot()) == []


@pytest.mark.anyio
async def test_prometheus_rendering(metrics):
  await metrics.record_delivery("GENERAL", success=True, latency_ms=40)
  text = metrics.render_prometheus(await metrics.snapshot(queue_depth=2, circuit_state="HALF_OPEN"))

  assert "# TYPE herald_queue_depth gauge" in text
  assert "herald_queue_depth 2.0" in text
  assert "herald_deliveries_total 1.0" in text
  assert 'herald_circuit_state{state="HALF_OPEN"} 1' in text
  assert 'herald_circuit_state{state="CLOSED"} 0' in text
  assert text.endswith("\n")
