"""In-process store used for single-instance deployments and tests."""

from __future__ import annotations

import heapq

from herald.utils.clock import Clock, SystemClock


class MemoryKeyValueStore:
  """Dictionary backed `KeyValueStore`.

  No method awaits anything before it finishes mutating state, so every operation is atomic with
  respect to other tasks on the same event loop. Expiry is evaluated against the injected clock,
  which lets tests move time forward without sleeping. Reads purge their own key, and every call
  also sweeps a heap of deadlines so keys that are never touched again still go away.
  """

  def __init__(self, *, clock: Clock | None = None) -> None:
    self._clock = clock or SystemClock()
    self._strings: dict[str, str] = {}
    self._zsets: dict[str, dict[str, float]] = {}
    self._sets: dict[str, set[str]] = {}
    self._hashes: dict[str, dict[str, str]] = {}
    self._expiry: dict[str, float] = {}
    self._deadlines: list[tuple[float, str]] = []

  def _sweep(self) -> None:
    now = self._clock.now()
    while self._deadlines and self._deadlines[0][0] <= now:
      deadline, key = heapq.heappop(self._deadlines)
      # Entries left behind by a later TTL or a delete no longer match `_expiry`.
      if self._expiry.get(key) == deadline:
        self._drop(key)

  def _purge(self, key: str) -> None:
    self._sweep()
    deadline = self._expiry.get(key)
    if deadline is not None and deadline <= self._clock.now():
      self._drop(key)

  def _drop(self, key: str) -> bool:
    existed = False
    for bucket in (self._strings, self._zsets, self._sets, self._hashes):
      if key in bucket:
        del bucket[key]
        existed = True
    self._expiry.pop(key, None)
    return existed

  def _exists(self, key: str) -> bool:
    self._purge(key)
    return key in self._strings or key in self._zsets or key in self._sets or key in self._hashes

  def _set_ttl(self, key: str, ttl_seconds: float | None) -> None:
    if ttl_seconds is None:
      self._expiry.pop(key, None)
      return
    deadline = self._clock.now() + ttl_seconds
    self._expiry[key] = deadline
    heapq.heappush(self._deadlines, (deadline, key))
    if len(self._deadlines) > 2 * len(self._expiry) + 64:
      self._deadlines = [(value, name) for name, value in self._expiry.items()]
      heapq.heapify(self._deadlines)

  async def get(self, key: str) -> str | None:
    self._purge(key)
    return self._strings.get(key)

  async def set(self, key: str, value: str, *, ttl_seconds: float | None = None) -> None:
    self._sweep()
    self._drop(key)
    self._strings[key] = value
    self._set_ttl(key, ttl_seconds)

  async def set_if_absent(self, key: str, value: str, *, ttl_seconds: float | None = None) -> bool:
    if self._exists(key):
      return False
    self._strings[key] = value
    self._set_ttl(key, ttl_seconds)
    return True

  async def expire(self, key: str, ttl_seconds: float) -> bool:
    if not self._exists(key):
      return False
    self._set_ttl(key, ttl_seconds)
    return True

  async def delete(self, *keys: str) -> int:
    removed = 0
    for key in keys:
      self._purge(key)
      if self._drop(key):
        removed += 1
    return removed

  async def delete_if_equals(self, key: str, value: str) -> bool:
    self._purge(key)
    if self._strings.get(key) != value:
      return False
    self._drop(key)
    return True

  async def incr(self, key: str, amount: int = 1, *, ttl_seconds: float | None = None) -> int:
    created = not self._exists(key)
    try:
      value = int(self._strings.get(key, "0")) + amount
    except ValueError as exc:
      raise ValueError(f"Value at {key!r} is not an integer") from exc
    self._strings[key] = str(value)
    # TTL is applied when the counter is created so bucketed counters expire on schedule.
    if ttl_seconds is not None and (created or key not in self._expiry):
      self._set_ttl(key, ttl_seconds)
    return value

  async def zadd(self, key: str, member: str, score: float) -> None:
    self._purge(key)
    self._zsets.setdefault(key, {})[member] = float(score)

  async def zrem(self, key: str, member: str) -> bool:
    self._purge(key)
    members = self._zsets.get(key)
    if not members or member not in members:
      return False
    del members[member]
    if not members:
      self._drop(key)
    return True

  async def zremrange_by_score(self, key: str, min_score: float, max_score: float) -> int:
    self._purge(key)
    members = self._zsets.get(key)
    if not members:
      return 0
    stale = [member for member, score in members.items() if min_score <= score <= max_score]
    for member in stale:
      del members[member]
    if not members:
      self._drop(key)
    return len(stale)

  async def zcard(self, key: str) -> int:
    self._purge(key)
    return len(self._zsets.get(key, {}))

  async def zrange_by_score(self, key: str, min_score: float, max_score: float, *, limit: int | None = None) -> list[tuple[str, float]]:
    self._purge(key)
    members = self._zsets.get(key, {})
    rows = sorted(((member, score) for member, score in members.items() if min_score <= score <= max_score), key=lambda row: (row[1], row[0]))
    if limit is not None:
      rows = rows[:limit]
    return rows

  async def zfirst(self, key: str) -> tuple[str, float] | None:
    rows = await self.zrange_by_score(key, float("-inf"), float("inf"), limit=1)
    return rows[0] if rows else None

  async def sadd(self, key: str, member: str) -> None:
    self._purge(key)
    self._sets.setdefault(key, set()).add(member)

  async def srem(self, key: str, member: str) -> None:
    self._purge(key)
    members = self._sets.get(key)
    if members is None:
      return
    members.discard(member)
    if not members:
      self._drop(key)

  async def smembers(self, key: str) -> set[str]:
    self._purge(key)
    return set(self._sets.get(key, set()))

  async def hset(self, key: str, field: str, value: str) -> None:
    self._purge(key)
    self._hashes.setdefault(key, {})[field] = value

  async def hdel(self, key: str, field: str) -> bool:
    self._purge(key)
    fields = self._hashes.get(key)
    if not fields or field not in fields:
      return False
    del fields[field]
    if not fields:
      self._drop(key)
    return True

  async def hgetall(self, key: str) -> dict[str, str]:
    self._purge(key)
    return dict(self._hashes.get(key, {}))

  async def ping(self) -> bool:
    return True

  async def close(self) -> None:
    return None
