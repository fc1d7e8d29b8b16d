from __future__ import annotations

import asyncio

import pytest

from herald.notifications.dedup import Deduplicator


@pytest.mark.anyio
async def test_requests_without_key_are_always_new(deduplicator):
  assert await deduplicator.check_and_register(None, "a") == (False, "a")
  assert await deduplicator.check_and_register("", "b") == (False, "b")


@pytest.mark.anyio
async def test_second_request_resolves_to_first_id(deduplicator):
  assert await deduplicator.check_and_register("task-1", "first") == (False, "first")
  assert await deduplicator.check_and_register("task-1", "second") == (True, "first")


@pytest.mark.anyio
async def test_reregistering_owner_is_not_duplicate(deduplicator):
  await deduplicator.check_and_register("task-1", "first")
  assert await deduplicator.check_and_register("task-1", "first") == (False, "first")


@pytest.mark.anyio
async def test_window_slides_while_duplicates_arrive(deduplicator, clock):
  await deduplicator.check_and_register("task-1", "first")
  clock.advance(200)
  assert await deduplicator.check_and_register("task-1", "second") == (True, "first")
  clock.advance(200)
  # 400s after the first request but only 200s after the last duplicate.
  assert await deduplicator.check_and_register("task-1", "third") == (True, "first")
  clock.advance(301)
  assert await deduplicator.check_and_register("task-1", "fourth") == (False, "fourth")


@pytest.mark.anyio
async def test_concurrent_requests_admit_exactly_one(store):
  deduplicator = Deduplicator(store, ttl_seconds=60)
  results = await asyncio.gather(*(deduplicator.check_and_register("same", f"id-{index}") for index in range(20)))
  admitted = [effective for is_duplicate, effective in results if not is_duplicate]
  assert len(admitted) == 1
  assert {effective for _, effective in results} == {admitted[0]}


@pytest.mark.anyio
async def test_release_only_drops_owned_entry(deduplicator, store):
  await deduplicator.check_and_register("task-1", "first")
  await deduplicator.release("task-1", "other")
  assert await store.get("dedup:task-1") == "first"
  await deduplicator.release("task-1", "first")
  assert await store.get("dedup:task-1") is None
