"""Redis backed store shared by every engine instance."""

from __future__ import annotations

import logging
import math

from redis.asyncio import Redis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


def _ttl_ms(ttl_seconds: float) -> int:
  return max(1, int(math.ceil(ttl_seconds * 1000)))


# Compare-and-delete, the same shape redis-py uses to release its own locks.
_DELETE_IF_EQUALS = """
if redis.call("get", KEYS[1]) == ARGV[1] then
  return redis.call("del", KEYS[1])
end
return 0
"""


def _score_bound(value: float) -> float | str:
  if math.isinf(value):
    return "+inf" if value > 0 else "-inf"
  return value


class RedisKeyValueStore:
  """`KeyValueStore` over `redis.asyncio` with string responses."""

  def __init__(self, client: Redis) -> None:
    self._client = client
    self._delete_if_equals = client.register_script(_DELETE_IF_EQUALS)

  @classmethod
  def from_url(cls, url: str) -> RedisKeyValueStore:
    """Build a store from a redis:// URL."""
    return cls(Redis.from_url(url, decode_responses=True))

  async def get(self, key: str) -> str | None:
    return await self._client.get(key)

  async def set(self, key: str, value: str, *, ttl_seconds: float | None = None) -> None:
    await self._client.set(key, value, px=_ttl_ms(ttl_seconds) if ttl_seconds is not None else None)

  async def set_if_absent(self, key: str, value: str, *, ttl_seconds: float | None = None) -> bool:
    # SET NX is the compare-and-set primitive for dedup entries and pass guards.
    acquired = await self._client.set(key, value, nx=True, px=_ttl_ms(ttl_seconds) if ttl_seconds is not None else None)
    return bool(acquired)

  async def expire(self, key: str, ttl_seconds: float) -> bool:
    return bool(await self._client.pexpire(key, _ttl_ms(ttl_seconds)))

  async def delete(self, *keys: str) -> int:
    if not keys:
      return 0
    return int(await self._client.delete(*keys))

  async def delete_if_equals(self, key: str, value: str) -> bool:
    return int(await self._delete_if_equals(keys=[key], args=[value])) == 1

  async def incr(self, key: str, amount: int = 1, *, ttl_seconds: float | None = None) -> int:
    async with self._client.pipeline(transaction=True) as pipe:
      pipe.incrby(key, amount)
      pipe.pttl(key)
      value, remaining_ms = await pipe.execute()

    # A PTTL of -1 means the counter exists without expiry; attach the window TTL once.
    if ttl_seconds is not None and remaining_ms == -1:
      await self._client.pexpire(key, _ttl_ms(ttl_seconds))
    return int(value)

  async def zadd(self, key: str, member: str, score: float) -> None:
    await self._client.zadd(key, {member: score})

  async def zrem(self, key: str, member: str) -> bool:
    return int(await self._client.zrem(key, member)) == 1

  async def zremrange_by_score(self, key: str, min_score: float, max_score: float) -> int:
    return int(await self._client.zremrangebyscore(key, _score_bound(min_score), _score_bound(max_score)))

  async def zcard(self, key: str) -> int:
    return int(await self._client.zcard(key))

  async def zrange_by_score(self, key: str, min_score: float, max_score: float, *, limit: int | None = None) -> list[tuple[str, float]]:
    if limit is None:
      rows = await self._client.zrangebyscore(key, _score_bound(min_score), _score_bound(max_score), withscores=True)
    else:
      rows = await self._client.zrangebyscore(key, _score_bound(min_score), _score_bound(max_score), start=0, num=limit, withscores=True)
    return [(member, float(score)) for member, score in rows]

  async def zfirst(self, key: str) -> tuple[str, float] | None:
    rows = await self._client.zrange(key, 0, 0, withscores=True)
    if not rows:
      return None
    member, score = rows[0]
    return member, float(score)

  async def sadd(self, key: str, member: str) -> None:
    await self._client.sadd(key, member)

  async def srem(self, key: str, member: str) -> None:
    await self._client.srem(key, member)

  async def smembers(self, key: str) -> set[str]:
    return set(await self._client.smembers(key))

  async def hset(self, key: str, field: str, value: str) -> None:
    await self._client.hset(key, field, value)

  async def hdel(self, key: str, field: str) -> bool:
    return int(await self._client.hdel(key, field)) == 1

  async def hgetall(self, key: str) -> dict[str, str]:
    return dict(await self._client.hgetall(key))

  async def ping(self) -> bool:
    try:
      return bool(await self._client.ping())
    except RedisError as exc:
      logger.warning("Redis ping failed: %s", exc)
      return False

  async def close(self) -> None:
    await self._client.aclose()
