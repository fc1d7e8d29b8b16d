"""Contract for the shared key/value store behind queues, counters and dedup entries."""

from __future__ import annotations

from typing import Protocol


class KeyValueStore(Protocol):
  """Async store with the atomic primitives the engine relies on.

  Every mutation the engine performs on shared state goes through one of these calls: counters
  use `incr`, admission uses `set_if_absent`, token-guarded releases use `delete_if_equals`, and
  queue claims use `zrem`, whose boolean result tells the caller whether it removed the member (and
  therefore owns the item).
  """

  async def get(self, key: str) -> str | None: ...

  async def set(self, key: str, value: str, *, ttl_seconds: float | None = None) -> None: ...

  async def set_if_absent(self, key: str, value: str, *, ttl_seconds: float | None = None) -> bool: ...

  async def expire(self, key: str, ttl_seconds: float) -> bool: ...

  async def delete(self, *keys: str) -> int: ...

  async def delete_if_equals(self, key: str, value: str) -> bool: ...

  async def incr(self, key: str, amount: int = 1, *, ttl_seconds: float | None = None) -> int: ...

  async def zadd(self, key: str, member: str, score: float) -> None: ...

  async def zrem(self, key: str, member: str) -> bool: ...

  async def zremrange_by_score(self, key: str, min_score: float, max_score: float) -> int: ...

  async def zcard(self, key: str) -> int: ...

  async def zrange_by_score(self, key: str, min_score: float, max_score: float, *, limit: int | None = None) -> list[tuple[str, float]]: ...

  async def zfirst(self, key: str) -> tuple[str, float] | None: ...

  async def sadd(self, key: str, member: str) -> None: ...

  async def srem(self, key: str, member: str) -> None: ...

  async def smembers(self, key: str) -> set[str]: ...

  async def hset(self, key: str, field: str, value: str) -> None: ...

  async def hdel(self, key: str, field: str) -> bool: ...

  async def hgetall(self, key: str) -> dict[str, str]: ...

  async def ping(self) -> bool: ...

  async def close(self) -> None: ...
