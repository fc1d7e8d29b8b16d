"""Factory helpers for the notification engine."""

from __future__ import annotations

from collections.abc import Awaitable, Callable

from herald.config import Settings
from herald.notifications.batching import AdaptiveBatchSizer, BatchComposer, process_memory_mb
from herald.notifications.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from herald.notifications.contracts import Transport
from herald.notifications.dedup import Deduplicator
from herald.notifications.dispatcher import DispatchConfig, Dispatcher
from herald.notifications.engine import NotificationEngine
from herald.notifications.metrics import NotificationMetrics
from herald.notifications.preferences import HttpPreferenceStore, PreferenceGate, PreferenceStore, StaticPreferenceStore
from herald.notifications.push_sender import NullTransport, VapidConfig, WebPushTransport
from herald.notifications.push_subscription_repo import PushSubscriptionRepository
from herald.notifications.queue import NotificationQueue, QueueConfig
from herald.notifications.rate_limiter import RateLimitConfig, RateLimiter
from herald.notifications.scheduler import BatchScheduler, SchedulerConfig
from herald.storage.factory import build_store
from herald.storage.kv_store import KeyValueStore
from herald.utils.clock import Clock, SystemClock


def build_notification_engine(
  settings: Settings,
  *,
  store: KeyValueStore | None = None,
  transport: Transport | None = None,
  preference_store: PreferenceStore | None = None,
  clock: Clock | None = None,
  memory_probe: Callable[[], float] = process_memory_mb,
) -> NotificationEngine:
  """Construct a notification engine based on environment configuration."""
  clock = clock or SystemClock()
  store = store or build_store(settings, clock=clock)
  closers: list[Callable[[], Awaitable[None]]] = [store.close]

  # Preferences come from the preference service when configured, otherwise static defaults.
  if preference_store is None:
    if settings.preferences_url:
      http_store = HttpPreferenceStore(settings.preferences_url, service_secret=settings.service_secret, timeout_seconds=settings.preferences_timeout_seconds)
      closers.append(http_store.aclose)
      preference_store = http_store
    else:
      preference_store = StaticPreferenceStore()

  subscriptions = PushSubscriptionRepository(store)
  if transport is None:
    if settings.push_enabled and settings.push_vapid_public_key and settings.push_vapid_private_key and settings.push_vapid_sub:
      transport = WebPushTransport(vapid_config=VapidConfig(public_key=settings.push_vapid_public_key, private_key=settings.push_vapid_private_key, sub=settings.push_vapid_sub), subscriptions=subscriptions)
    else:
      transport = NullTransport()

  sizer = AdaptiveBatchSizer(
    base_size=settings.batch_size,
    high_water_mark=settings.queue_high_water_mark,
    memory_pressure_mb=settings.memory_pressure_mb,
    memory_limit_mb=settings.memory_limit_mb,
    max_batch_wait_ms=settings.max_batch_wait_ms,
    memory_probe=memory_probe,
  )
  deduplicator = Deduplicator(store, ttl_seconds=settings.dedup_ttl_seconds)
  queue = NotificationQueue(
    store,
    deduplicator=deduplicator,
    sizer=sizer,
    config=QueueConfig(max_queue_size=settings.max_queue_size, partition_spill_threshold=settings.partition_spill_threshold, high_water_mark=settings.queue_high_water_mark),
    clock=clock,
  )
  rate_limiter = RateLimiter(
    store,
    config=RateLimitConfig(
      max_per_minute=settings.rate_max_per_minute,
      max_per_hour=settings.rate_max_per_hour,
      max_per_day=settings.rate_max_per_day,
      burst_limit=settings.rate_burst_limit,
      burst_window_seconds=settings.rate_burst_window_seconds,
      global_max_per_minute=settings.rate_global_max_per_minute,
      global_max_per_hour=settings.rate_global_max_per_hour,
      backoff_multiplier=settings.rate_backoff_multiplier,
      max_backoff_ms=settings.rate_max_backoff_ms,
      breach_decay_seconds=settings.rate_breach_decay_seconds,
    ),
    clock=clock,
  )
  circuit_breaker = CircuitBreaker(
    config=CircuitBreakerConfig(
      failure_threshold=settings.circuit_failure_threshold,
      reset_timeout_ms=settings.circuit_reset_timeout_ms,
      monitoring_window_ms=settings.circuit_monitoring_window_ms,
      half_open_max_calls=settings.circuit_half_open_max_calls,
      call_timeout_ms=settings.circuit_call_timeout_ms,
    ),
    clock=clock,
  )
  metrics = NotificationMetrics(store, clock=clock, memory_probe=memory_probe)
  gate = PreferenceGate(preference_store, clock=clock, cache_ttl_seconds=settings.preferences_cache_ttl_seconds)
  dispatcher = Dispatcher(
    queue=queue,
    deduplicator=deduplicator,
    rate_limiter=rate_limiter,
    circuit_breaker=circuit_breaker,
    transport=transport,
    gate=gate,
    metrics=metrics,
    config=DispatchConfig(concurrency=settings.dispatch_concurrency, max_retries=settings.max_retries, retry_delay_ms=settings.retry_delay_ms, circuit_open_retry_ms=settings.circuit_open_retry_ms),
    clock=clock,
  )
  scheduler = BatchScheduler(store=store, queue=queue, composer=BatchComposer(clock=clock), dispatcher=dispatcher, config=SchedulerConfig(interval_seconds=settings.scheduler_interval_seconds))

  # Reactive triggers flow from the queue straight into the scheduler's listener.
  queue.set_trigger(scheduler.signal)

  return NotificationEngine(
    store=store,
    queue=queue,
    dispatcher=dispatcher,
    scheduler=scheduler,
    metrics=metrics,
    circuit_breaker=circuit_breaker,
    rate_limiter=rate_limiter,
    subscriptions=subscriptions,
    scheduler_enabled=settings.scheduler_enabled,
    metrics_interval_seconds=settings.metrics_interval_seconds,
    memory_probe=memory_probe,
    closers=closers,
  )
