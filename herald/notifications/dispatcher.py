"""Routing of send requests and delivery of batches through the guarded transport."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

import msgspec

from herald.notifications.circuit_breaker import CircuitBreaker
from herald.notifications.contracts import Batch, CircuitOpenError, NotificationPayload, Priority, QueueFullError, QueueItem, SendOptions, SendResult, Transport
from herald.notifications.dedup import Deduplicator
from herald.notifications.metrics import NotificationMetrics
from herald.notifications.preferences import PreferenceGate, digest_release_time, should_batch
from herald.notifications.priority import PriorityClassifier
from herald.notifications.queue import NotificationQueue
from herald.notifications.rate_limiter import RateLimitDecision, RateLimiter
from herald.utils.clock import Clock, SystemClock
from herald.utils.ids import generate_notification_id

logger = logging.getLogger(__name__)

_UNAVAILABLE_MESSAGE = "Service temporarily unavailable, queued for retry"


@dataclass(frozen=True)
class DispatchConfig:
  """Concurrency and retry policy for deliveries."""

  concurrency: int = 5
  max_retries: int = 3
  retry_delay_ms: int = 5000
  circuit_open_retry_ms: int = 60000


def _error_text(exc: BaseException) -> str:
  message = str(exc)
  return f"{type(exc).__name__}: {message}" if message else type(exc).__name__


class Dispatcher:
  """Decide how each notification travels and perform the guarded delivery.

  `send` filters through user preferences, sends CRITICAL items straight through the breaker,
  defers batchable or future-scheduled items into the queue, and otherwise delivers immediately
  once rate limits admit it. `dispatch_batches` delivers what the scheduler composed, with bounded
  concurrency. Every failure path ends in a `SendResult`; nothing is raised to the caller.
  """

  def __init__(
    self,
    *,
    queue: NotificationQueue,
    deduplicator: Deduplicator,
    rate_limiter: RateLimiter,
    circuit_breaker: CircuitBreaker,
    transport: Transport,
    gate: PreferenceGate,
    metrics: NotificationMetrics,
    classifier: PriorityClassifier | None = None,
    config: DispatchConfig | None = None,
    clock: Clock | None = None,
  ) -> None:
    self._queue = queue
    self._deduplicator = deduplicator
    self._rate_limiter = rate_limiter
    self._breaker = circuit_breaker
    self._transport = transport
    self._gate = gate
    self._metrics = metrics
    self._classifier = classifier or PriorityClassifier()
    self._config = config or DispatchConfig()
    self._clock = clock or SystemClock()
    self._semaphore = asyncio.Semaphore(self._config.concurrency)

  async def send(self, user_id: str, payload: NotificationPayload, *, priority: Priority | None = None, options: SendOptions | None = None) -> SendResult:
    """Route one notification and report what happened to it."""
    options = options or SendOptions()
    now = self._clock.now()
    effective_priority = self._classifier.classify(payload, priority)

    decision = await self._gate.evaluate(user_id, payload, effective_priority)
    if not decision.allowed:
      await self._metrics.record_suppressed(payload.notification_type)
      return SendResult(success=False, outcome="suppressed", error=f"Blocked by user preferences ({decision.reason})")

    item = QueueItem(
      id=generate_notification_id(),
      user_id=user_id,
      payload=payload,
      priority=effective_priority,
      batchable=False,
      scheduled_for=options.scheduled_for if options.scheduled_for is not None else now,
      created_at=now,
      dedup_key=options.dedup_key,
      bypass_rate_limit=options.bypass_rate_limit,
    )

    is_duplicate, effective_id = await self._deduplicator.check_and_register(item.dedup_key, item.id)
    if is_duplicate:
      return SendResult(success=True, outcome="duplicate", queued=True, batch_id=effective_id)

    if effective_priority is Priority.CRITICAL:
      return await self._send_critical(item)

    # An explicit `batchable=False` forces immediate handling; otherwise preferences decide.
    batchable = options.batchable is not False and should_batch(decision.preferences, payload, effective_priority)
    if batchable and options.scheduled_for is None and decision.preferences is not None:
      release_at = digest_release_time(decision.preferences, now)
      if release_at is not None:
        item = msgspec.structs.replace(item, scheduled_for=release_at)
    item = msgspec.structs.replace(item, batchable=batchable)

    if batchable or item.scheduled_for > now:
      try:
        queued_id = await self._queue.enqueue(item)
      except QueueFullError as exc:
        if not options.immediate_on_queue_full:
          await self._deduplicator.release(item.dedup_key, item.id)
          return SendResult(success=False, outcome="queue_full", error=str(exc))
        logger.warning("Queue full; dispatching immediately instead user_id=%s item_id=%s", user_id, item.id)
      else:
        return SendResult(success=True, outcome="queued", queued=True, batch_id=queued_id)

    return await self._send_immediate(item)

  async def dispatch_batches(self, batches: list[Batch]) -> list[SendResult]:
    """Deliver composed batches with bounded concurrency; one failure never stops the others."""

    async def _run(batch: Batch) -> SendResult:
      async with self._semaphore:
        try:
          return await self.dispatch_batch(batch)
        except Exception as exc:  # noqa: BLE001
          logger.error("Batch dispatch failed batch_id=%s user_id=%s", batch.id, batch.user_id, exc_info=True)
          return SendResult(success=False, outcome="failed", batch_id=batch.id, error=_error_text(exc))

    return list(await asyncio.gather(*(_run(batch) for batch in batches)))

  async def dispatch_batch(self, batch: Batch) -> SendResult:
    """Deliver one batch, re-checking rate limits, and settle every member item."""
    if batch.priority is Priority.CRITICAL or all(item.bypass_rate_limit for item in batch.items):
      await self._rate_limiter.increment_counters(batch.user_id)
    else:
      # Limits may have moved since the items were queued.
      denial = await self._check_limits(batch.user_id)
      if denial is not None:
        for item in batch.items:
          await self._queue.requeue(item, delay_seconds=denial.retry_after_seconds)
        return SendResult(success=False, outcome="rate_limited", queued=True, batch_id=batch.id, error=f"Rate limit exceeded; retry after {denial.retry_after_ms}ms")
      await self._rate_limiter.increment_counters(batch.user_id)

    started = time.perf_counter()
    try:
      await self._breaker.execute(lambda: self._transport.deliver(batch.user_id, batch.payload))
    except CircuitOpenError:
      delay_seconds = self._config.circuit_open_retry_ms / 1000
      for item in batch.items:
        await self._queue.requeue(item, delay_seconds=delay_seconds)
      return SendResult(success=False, outcome="unavailable", queued=True, batch_id=batch.id, error=_UNAVAILABLE_MESSAGE)
    except Exception as exc:  # noqa: BLE001
      await self._metrics.record_delivery(batch.notification_type, success=False, latency_ms=_elapsed_ms(started), batch_size=batch.size)
      logger.warning("Delivery failed batch_id=%s user_id=%s size=%s error=%s", batch.id, batch.user_id, batch.size, _error_text(exc))
      results = [await self._retry_or_fail(msgspec.structs.replace(item, attempts=item.attempts + 1, last_error=_error_text(exc))) for item in batch.items]
      outcome = "failed" if all(result.outcome == "failed" for result in results) else "retrying"
      return SendResult(success=False, outcome=outcome, queued=outcome == "retrying", batch_id=batch.id, error=_error_text(exc))

    for item in batch.items:
      await self._queue.complete(item)
    await self._metrics.record_delivery(batch.notification_type, success=True, latency_ms=_elapsed_ms(started), batch_size=batch.size)
    return SendResult(success=True, outcome="sent", batch_id=batch.id)

  async def _send_critical(self, item: QueueItem) -> SendResult:
    # CRITICAL payloads demand interaction and get a unique tag so clients never collapse them.
    payload = msgspec.structs.replace(item.payload, require_interaction=True, tag=f"critical-{item.id}")
    item = msgspec.structs.replace(item, payload=payload, batchable=False)
    await self._rate_limiter.increment_counters(item.user_id)

    started = time.perf_counter()
    try:
      await self._breaker.execute(lambda: self._transport.deliver(item.user_id, payload))
    except CircuitOpenError as exc:
      delay_seconds = max(exc.retry_after_ms, 1000) / 1000
      await self._queue.requeue(item, delay_seconds=delay_seconds)
      logger.warning("CRITICAL notification short-circuited; parked for retry item_id=%s user_id=%s retry_in_s=%.1f", item.id, item.user_id, delay_seconds)
      return SendResult(success=False, outcome="unavailable", queued=True, batch_id=item.id, error=_UNAVAILABLE_MESSAGE)
    except Exception as exc:  # noqa: BLE001
      await self._metrics.record_delivery(item.notification_type, success=False, latency_ms=_elapsed_ms(started))
      return await self._retry_or_fail(msgspec.structs.replace(item, attempts=item.attempts + 1, last_error=_error_text(exc)))

    await self._metrics.record_delivery(item.notification_type, success=True, latency_ms=_elapsed_ms(started))
    return SendResult(success=True, outcome="sent", batch_id=item.id)

  async def _send_immediate(self, item: QueueItem) -> SendResult:
    if not item.bypass_rate_limit:
      denial = await self._check_limits(item.user_id)
      if denial is not None:
        deferred = msgspec.structs.replace(item, scheduled_for=self._clock.now() + denial.retry_after_seconds)
        try:
          queued_id = await self._queue.enqueue(deferred)
        except QueueFullError as exc:
          await self._deduplicator.release(item.dedup_key, item.id)
          return SendResult(success=False, outcome="queue_full", error=str(exc))
        return SendResult(success=False, outcome="rate_limited", queued=True, batch_id=queued_id, error=f"Rate limit exceeded; retry after {denial.retry_after_ms}ms")

    await self._rate_limiter.increment_counters(item.user_id)
    started = time.perf_counter()
    try:
      await self._breaker.execute(lambda: self._transport.deliver(item.user_id, item.payload))
    except CircuitOpenError:
      await self._queue.requeue(item, delay_seconds=self._config.circuit_open_retry_ms / 1000)
      return SendResult(success=False, outcome="unavailable", queued=True, batch_id=item.id, error=_UNAVAILABLE_MESSAGE)
    except Exception as exc:  # noqa: BLE001
      await self._metrics.record_delivery(item.notification_type, success=False, latency_ms=_elapsed_ms(started))
      return await self._retry_or_fail(msgspec.structs.replace(item, attempts=item.attempts + 1, last_error=_error_text(exc)))

    await self._metrics.record_delivery(item.notification_type, success=True, latency_ms=_elapsed_ms(started))
    return SendResult(success=True, outcome="sent", batch_id=item.id)

  async def _check_limits(self, user_id: str) -> RateLimitDecision | None:
    """Return the most restrictive denial across user and global limits, if any."""
    denials = [decision for decision in (await self._rate_limiter.check_user_limit(user_id), await self._rate_limiter.check_global_limit()) if not decision.allowed]
    if not denials:
      return None
    return max(denials, key=lambda decision: decision.retry_after_ms)

  async def _retry_or_fail(self, item: QueueItem) -> SendResult:
    # `attempts` counts failed dispatches, so an item is dispatched at most max_retries times.
    if item.attempts < self._config.max_retries:
      delay_seconds = self._config.retry_delay_ms / 1000 * (2 ** (item.attempts - 1))
      await self._queue.requeue(item, delay_seconds=delay_seconds)
      logger.info("Delivery failed; retry scheduled item_id=%s attempts=%s retry_in_s=%.1f", item.id, item.attempts, delay_seconds)
      return SendResult(success=False, outcome="retrying", queued=True, batch_id=item.id, error=item.last_error)

    failed = await self._queue.mark_failed(item, error=item.last_error)
    await self._metrics.record_exhausted(failed)
    return SendResult(success=False, outcome="failed", batch_id=item.id, error=item.last_error)


def _elapsed_ms(started: float) -> float:
  return (time.perf_counter() - started) * 1000
