"""Circuit breaker guarding the downstream transport."""

from __future__ import annotations

import asyncio
import enum
import logging
import threading
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from herald.notifications.contracts import CircuitOpenError, DeliveryTimeoutError
from herald.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, enum.Enum):
  CLOSED = "CLOSED"
  OPEN = "OPEN"
  HALF_OPEN = "HALF_OPEN"


@dataclass(frozen=True)
class CircuitBreakerConfig:
  """Thresholds and timeouts for a circuit breaker."""

  failure_threshold: int = 5
  reset_timeout_ms: int = 60000
  monitoring_window_ms: int = 300000
  half_open_max_calls: int = 3
  call_timeout_ms: int = 5000


@dataclass(frozen=True)
class CircuitSnapshot:
  """Point-in-time view of breaker state and counters."""

  state: CircuitState
  failure_count: int
  last_failure_at: float | None
  next_attempt_at: float | None
  total_calls: int
  successful_calls: int
  failed_calls: int
  rejected_calls: int

  @property
  def failure_rate(self) -> float:
    attempted = self.successful_calls + self.failed_calls
    return self.failed_calls / attempted if attempted else 0.0

  def to_dict(self) -> dict[str, Any]:
    return {
      "state": self.state.value,
      "failureCount": self.failure_count,
      "lastFailureAt": self.last_failure_at,
      "nextAttemptAt": self.next_attempt_at,
      "totalCalls": self.total_calls,
      "successfulCalls": self.successful_calls,
      "failedCalls": self.failed_calls,
      "rejectedCalls": self.rejected_calls,
      "failureRate": round(self.failure_rate, 4),
    }


class CircuitBreaker:
  """Three-state breaker with a rolling failure window and bounded half-open probing.

  CLOSED counts failures inside the monitoring window and opens once the threshold is reached.
  OPEN short-circuits every call until the reset timeout elapses, then moves to HALF_OPEN on the
  next call. HALF_OPEN admits at most `half_open_max_calls` trial calls: any failure reopens the
  circuit and that many successes close it. Transitions happen under one lock, which is never held
  while the guarded call runs.
  """

  def __init__(self, *, config: CircuitBreakerConfig | None = None, clock: Clock | None = None, name: str = "transport") -> None:
    self._config = config or CircuitBreakerConfig()
    self._clock = clock or SystemClock()
    self._name = name
    self._lock = threading.Lock()
    self._state = CircuitState.CLOSED
    self._failures: deque[float] = deque()
    self._last_failure_at: float | None = None
    self._next_attempt_at: float | None = None
    self._half_open_in_flight = 0
    self._half_open_successes = 0
    self._total_calls = 0
    self._successful_calls = 0
    self._failed_calls = 0
    self._rejected_calls = 0

  @property
  def state(self) -> CircuitState:
    with self._lock:
      self._advance(self._clock.now())
      return self._state

  async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
    """Run `fn` under the breaker; raise `CircuitOpenError` without calling it while OPEN."""
    trial = self._acquire()
    try:
      result = await asyncio.wait_for(fn(), timeout=self._config.call_timeout_ms / 1000)
    except TimeoutError as exc:
      self._record_failure(trial)
      raise DeliveryTimeoutError(f"Call exceeded {self._config.call_timeout_ms}ms timeout") from exc
    except asyncio.CancelledError:
      self._release(trial)
      raise
    except Exception:
      self._record_failure(trial)
      raise

    self._record_success(trial)
    return result

  def snapshot(self) -> CircuitSnapshot:
    with self._lock:
      now = self._clock.now()
      self._advance(now)
      self._prune(now)
      return CircuitSnapshot(
        state=self._state,
        failure_count=len(self._failures),
        last_failure_at=self._last_failure_at,
        next_attempt_at=self._next_attempt_at if self._state is CircuitState.OPEN else None,
        total_calls=self._total_calls,
        successful_calls=self._successful_calls,
        failed_calls=self._failed_calls,
        rejected_calls=self._rejected_calls,
      )

  def health(self) -> dict[str, Any]:
    """Summarize breaker health as healthy, degraded or unhealthy."""
    snapshot = self.snapshot()
    if snapshot.state is CircuitState.OPEN:
      status = "unhealthy"
    elif snapshot.state is CircuitState.HALF_OPEN or snapshot.failure_rate > 0.2:
      status = "degraded"
    else:
      status = "healthy"
    return {"status": status, "name": self._name, **snapshot.to_dict()}

  def _acquire(self) -> bool:
    with self._lock:
      now = self._clock.now()
      self._advance(now)
      self._total_calls += 1

      if self._state is CircuitState.OPEN:
        self._rejected_calls += 1
        retry_after_ms = int(max(0.0, (self._next_attempt_at or now) - now) * 1000)
        raise CircuitOpenError(f"Circuit breaker '{self._name}' is OPEN", retry_after_ms=retry_after_ms)

      if self._state is CircuitState.HALF_OPEN:
        if self._half_open_in_flight + self._half_open_successes >= self._config.half_open_max_calls:
          self._rejected_calls += 1
          raise CircuitOpenError(f"Circuit breaker '{self._name}' is HALF_OPEN and probing", retry_after_ms=0)
        self._half_open_in_flight += 1
        return True

      return False

  def _record_success(self, trial: bool) -> None:
    with self._lock:
      self._successful_calls += 1
      if not trial or self._state is not CircuitState.HALF_OPEN:
        return
      self._half_open_in_flight -= 1
      self._half_open_successes += 1
      if self._half_open_successes >= self._config.half_open_max_calls:
        self._transition(CircuitState.CLOSED, self._clock.now())

  def _record_failure(self, trial: bool) -> None:
    with self._lock:
      now = self._clock.now()
      self._failed_calls += 1
      self._last_failure_at = now

      if self._state is CircuitState.HALF_OPEN:
        if trial:
          self._half_open_in_flight -= 1
        self._transition(CircuitState.OPEN, now)
        return

      if self._state is CircuitState.CLOSED:
        self._failures.append(now)
        self._prune(now)
        if len(self._failures) >= self._config.failure_threshold:
          self._transition(CircuitState.OPEN, now)

  def _release(self, trial: bool) -> None:
    with self._lock:
      if trial and self._state is CircuitState.HALF_OPEN:
        self._half_open_in_flight -= 1

  def _advance(self, now: float) -> None:
    # OPEN moves to HALF_OPEN lazily, on the first observation after the reset timeout.
    if self._state is CircuitState.OPEN and self._next_attempt_at is not None and now >= self._next_attempt_at:
      self._transition(CircuitState.HALF_OPEN, now)

  def _prune(self, now: float) -> None:
    horizon = now - self._config.monitoring_window_ms / 1000
    while self._failures and self._failures[0] < horizon:
      self._failures.popleft()

  def _transition(self, state: CircuitState, now: float) -> None:
    previous = self._state
    self._state = state
    self._half_open_in_flight = 0
    self._half_open_successes = 0

    if state is CircuitState.OPEN:
      self._next_attempt_at = now + self._config.reset_timeout_ms / 1000
      logger.warning("Circuit breaker %s tripped %s -> OPEN failures=%s next_attempt_at=%s", self._name, previous.value, len(self._failures), self._next_attempt_at)
    elif state is CircuitState.HALF_OPEN:
      logger.info("Circuit breaker %s OPEN -> HALF_OPEN; probing with up to %s calls", self._name, self._config.half_open_max_calls)
    else:
      self._failures.clear()
      self._next_attempt_at = None
      logger.info("Circuit breaker %s %s -> CLOSED", self._name, previous.value)
