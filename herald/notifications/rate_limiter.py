"""Sliding-window rate limiting with per-user and global ceilings."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from herald.storage.kv_store import KeyValueStore
from herald.utils.clock import Clock, SystemClock
from herald.utils.ids import generate_nanoid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
  """Ceilings and backoff tuning for the rate limiter."""

  max_per_minute: int = 10
  max_per_hour: int = 100
  max_per_day: int = 500
  burst_limit: int = 5
  burst_window_seconds: int = 30
  global_max_per_minute: int = 1000
  global_max_per_hour: int = 10000
  backoff_multiplier: float = 2.0
  max_backoff_ms: int = 300000
  breach_decay_seconds: int = 3600


@dataclass(frozen=True)
class RateWindow:
  name: str
  window_seconds: int
  limit: int


@dataclass(frozen=True)
class RateLimitDecision:
  """Outcome of a rate-limit check."""

  allowed: bool
  remaining: int
  reset_at: float
  retry_after_ms: int = 0
  window: str | None = None

  @property
  def retry_after_seconds(self) -> float:
    return self.retry_after_ms / 1000


class RateLimiter:
  """Check and count deliveries against minute, hour, day and burst windows.

  Each window is a sliding log: a sorted set `ratelimit:{subject}:{window}` holding one entry per
  delivery, scored by its timestamp. Checks trim entries older than the window and count the rest,
  so no boundary lets a subject through at twice the ceiling. A denial records a `blocked_until`
  marker; later checks honour it first, so a caller told to retry after T is never admitted earlier.
  """

  def __init__(self, store: KeyValueStore, *, config: RateLimitConfig | None = None, clock: Clock | None = None) -> None:
    self._store = store
    self._config = config or RateLimitConfig()
    self._clock = clock or SystemClock()
    cfg = self._config
    self._user_windows = (
      RateWindow("burst", cfg.burst_window_seconds, cfg.burst_limit),
      RateWindow("minute", 60, cfg.max_per_minute),
      RateWindow("hour", 3600, cfg.max_per_hour),
      RateWindow("day", 86400, cfg.max_per_day),
    )
    self._global_windows = (RateWindow("minute", 60, cfg.global_max_per_minute), RateWindow("hour", 3600, cfg.global_max_per_hour))

  @property
  def config(self) -> RateLimitConfig:
    return self._config

  async def check_user_limit(self, user_id: str) -> RateLimitDecision:
    """Return whether one more delivery to `user_id` fits every per-user window."""
    return await self._check(f"user:{user_id}", self._user_windows)

  async def check_global_limit(self) -> RateLimitDecision:
    """Return whether one more delivery fits the system-wide windows."""
    return await self._check("global", self._global_windows)

  async def increment_counters(self, user_id: str) -> None:
    """Count one delivery against the user and global windows."""
    now = self._clock.now()
    member = f"{now!r}:{generate_nanoid()}"
    for subject, windows in ((f"user:{user_id}", self._user_windows), ("global", self._global_windows)):
      for window in windows:
        key = self._window_key(subject, window)
        await self._store.zadd(key, member, now)
        await self._store.expire(key, window.window_seconds)

  async def get_user_status(self, user_id: str) -> dict[str, Any]:
    """Report counters, limits and backoff state for a user."""
    subject = f"user:{user_id}"
    now = self._clock.now()
    windows: dict[str, Any] = {}
    for window in self._user_windows:
      count, reset_at = await self._window_state(subject, window, now)
      windows[window.name] = {"count": count, "limit": window.limit, "remaining": max(0, window.limit - count), "resetAt": reset_at}

    blocked_raw = await self._store.get(self._blocked_key(subject))
    blocked_until = float(blocked_raw) if blocked_raw is not None and float(blocked_raw) > now else None
    breaches = int(await self._store.get(self._breach_key(subject)) or 0)
    return {"userId": user_id, "windows": windows, "blockedUntil": blocked_until, "breaches": breaches}

  async def _check(self, subject: str, windows: tuple[RateWindow, ...]) -> RateLimitDecision:
    now = self._clock.now()

    # An active backoff wins over window counts so retry hints stay monotonic.
    blocked_raw = await self._store.get(self._blocked_key(subject))
    if blocked_raw is not None:
      blocked_until = float(blocked_raw)
      if blocked_until > now:
        return RateLimitDecision(allowed=False, remaining=0, reset_at=blocked_until, retry_after_ms=_ceil_ms(blocked_until - now), window="backoff")

    remaining: int | None = None
    earliest_reset = math.inf
    breached: list[tuple[RateWindow, float]] = []
    for window in windows:
      count, reset_at = await self._window_state(subject, window, now)
      if count >= window.limit:
        breached.append((window, reset_at))
      window_remaining = max(0, window.limit - count)
      remaining = window_remaining if remaining is None else min(remaining, window_remaining)
      earliest_reset = min(earliest_reset, reset_at)

    if not breached:
      return RateLimitDecision(allowed=True, remaining=remaining or 0, reset_at=earliest_reset)

    # Admission resumes only once every breached window has a free slot again.
    window, reset_at = max(breached, key=lambda row: row[1])
    base_seconds = max(reset_at - now, 0.001)
    breaches = await self._store.incr(self._breach_key(subject), ttl_seconds=self._config.breach_decay_seconds)
    scaled = base_seconds * (self._config.backoff_multiplier ** (breaches - 1))
    delay_seconds = max(base_seconds, min(scaled, self._config.max_backoff_ms / 1000))
    blocked_until = now + delay_seconds
    await self._store.set(self._blocked_key(subject), repr(blocked_until), ttl_seconds=delay_seconds)

    logger.info("Rate limit exceeded subject=%s window=%s breaches=%s retry_after_ms=%s", subject, window.name, breaches, _ceil_ms(delay_seconds))
    return RateLimitDecision(allowed=False, remaining=0, reset_at=blocked_until, retry_after_ms=_ceil_ms(delay_seconds), window=window.name)

  async def _window_state(self, subject: str, window: RateWindow, now: float) -> tuple[int, float]:
    """Trim the log and return `(count, reset_at)`, where `reset_at` is when a slot next frees up."""
    key = self._window_key(subject, window)
    await self._store.zremrange_by_score(key, -math.inf, now - window.window_seconds)
    count = await self._store.zcard(key)
    if count == 0:
      return 0, now

    # Over the limit, the entry whose expiry brings the count back under it decides the reset.
    rows = await self._store.zrange_by_score(key, -math.inf, math.inf, limit=max(0, count - window.limit) + 1)
    if not rows:
      return 0, now
    return count, rows[-1][1] + window.window_seconds

  @staticmethod
  def _window_key(subject: str, window: RateWindow) -> str:
    return f"ratelimit:{subject}:{window.name}"

  @staticmethod
  def _blocked_key(subject: str) -> str:
    return f"ratelimit:{subject}:blocked_until"

  @staticmethod
  def _breach_key(subject: str) -> str:
    return f"ratelimit:{subject}:breaches"


def _ceil_ms(seconds: float) -> int:
  return max(1, int(math.ceil(seconds * 1000)))
