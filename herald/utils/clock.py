"""Time sources for windows, TTLs and schedules."""

from __future__ import annotations

import time
from typing import Protocol

# 2023-11-14T00:00:00Z, aligned to minute, hour and day boundaries.
DEFAULT_MANUAL_EPOCH = 1_699_920_000.0


class Clock(Protocol):
  """Return the current time as epoch seconds."""

  def now(self) -> float: ...


class SystemClock:
  """Wall clock backed by `time.time`."""

  def now(self) -> float:
    return time.time()


class ManualClock:
  """Clock that only moves when told to; used to drive time-dependent behaviour in tests."""

  def __init__(self, start: float = DEFAULT_MANUAL_EPOCH) -> None:
    self._now = float(start)

  def now(self) -> float:
    return self._now

  def advance(self, seconds: float) -> None:
    """Move the clock forward by `seconds`."""
    if seconds < 0:
      raise ValueError("ManualClock cannot move backwards.")
    self._now += seconds
