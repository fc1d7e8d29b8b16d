"""User preference lookup and the admission gate built on it."""

from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Annotated, Protocol
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
import msgspec

from herald.notifications.contracts import DigestMode, NotificationPayload, Priority, PreferenceStoreUnavailableError
from herald.notifications.priority import is_batchable_type
from herald.utils.clock import Clock, SystemClock

logger = logging.getLogger(__name__)

TYPE_TOGGLES = {
  "TASK_DEADLINE": "taskDeadlines",
  "HABIT_REMINDER": "habitReminders",
  "WEEKLY_REPORT": "weeklyReports",
  "PROJECT_UPDATE": "projectUpdates",
  "TEAM_MENTION": "teamMentions",
  "SYSTEM_ALERT": "systemAlerts",
}


ClockTime = Annotated[str, msgspec.Meta(pattern=r"^([01]\d|2[0-3]):[0-5]\d$")]


def _minutes(value: str) -> int:
  hours, _, minutes = value.partition(":")
  hour, minute = int(hours), int(minutes or 0)
  if not (0 <= hour < 24 and 0 <= minute < 60):
    raise ValueError(f"time out of range: {value!r}")
  return hour * 60 + minute


@dataclass(frozen=True)
class DndWindow:
  """Weekly do-not-disturb window; `day_of_week` is 0 for Sunday."""

  day_of_week: int
  start_time: str
  end_time: str

  def contains(self, local: datetime.datetime) -> bool:
    day = (local.weekday() + 1) % 7
    now_minutes = local.hour * 60 + local.minute
    start = _minutes(self.start_time)
    end = _minutes(self.end_time)
    if start <= end:
      return day == self.day_of_week and start <= now_minutes < end

    # Overnight windows start on `day_of_week` and run into the following morning.
    if day == self.day_of_week and now_minutes >= start:
      return True
    return day == (self.day_of_week + 1) % 7 and now_minutes < end


@dataclass(frozen=True)
class UserNotificationPreferences:
  """Delivery preferences for one user."""

  user_id: str
  batching_enabled: bool = True
  digest_mode: DigestMode = DigestMode.IMMEDIATE
  digest_time: str = "08:00"
  minimum_priority: Priority = Priority.LOW
  dnd_enabled: bool = False
  dnd_schedule: tuple[DndWindow, ...] = ()
  quiet_hours_enabled: bool = False
  quiet_hours_start: str | None = None
  quiet_hours_end: str | None = None
  timezone: str = "UTC"
  type_toggles: Mapping[str, bool] = field(default_factory=dict, hash=False)

  def is_type_enabled(self, notification_type: str) -> bool:
    toggle = TYPE_TOGGLES.get(notification_type)
    if toggle is None:
      return True
    return self.type_toggles.get(toggle, True)

  def zone(self) -> datetime.tzinfo:
    try:
      return ZoneInfo(self.timezone)
    except (ZoneInfoNotFoundError, ValueError):
      logger.warning("Unknown timezone in preferences; using UTC user_id=%s timezone=%s", self.user_id, self.timezone)
      return datetime.UTC

  def in_quiet_hours(self, local: datetime.datetime) -> bool:
    if not (self.quiet_hours_enabled and self.quiet_hours_start and self.quiet_hours_end):
      return False
    now_minutes = local.hour * 60 + local.minute
    start = _minutes(self.quiet_hours_start)
    end = _minutes(self.quiet_hours_end)
    if start <= end:
      return start <= now_minutes < end
    return now_minutes >= start or now_minutes < end


class _RemoteDndWindow(msgspec.Struct, rename="camel"):
  day_of_week: Annotated[int, msgspec.Meta(ge=0, le=6)]
  start_time: ClockTime
  end_time: ClockTime


class RemotePreferences(msgspec.Struct, rename="camel", kw_only=True):
  """Wire format returned by the preference service."""

  batching_enabled: bool = True
  digest_mode: DigestMode = DigestMode.IMMEDIATE
  digest_time: ClockTime = "08:00"
  minimum_priority: Priority = Priority.LOW
  dnd_enabled: bool = False
  dnd_schedule: list[_RemoteDndWindow] = msgspec.field(default_factory=list)
  quiet_hours_enabled: bool = False
  quiet_hours_start: ClockTime | None = None
  quiet_hours_end: ClockTime | None = None
  timezone: str = "UTC"
  task_deadlines: bool = True
  habit_reminders: bool = True
  weekly_reports: bool = True
  project_updates: bool = True
  team_mentions: bool = True
  system_alerts: bool = True

  def to_preferences(self, user_id: str) -> UserNotificationPreferences:
    toggles = {
      "taskDeadlines": self.task_deadlines,
      "habitReminders": self.habit_reminders,
      "weeklyReports": self.weekly_reports,
      "projectUpdates": self.project_updates,
      "teamMentions": self.team_mentions,
      "systemAlerts": self.system_alerts,
    }
    return UserNotificationPreferences(
      user_id=user_id,
      batching_enabled=self.batching_enabled,
      digest_mode=self.digest_mode,
      digest_time=self.digest_time,
      minimum_priority=self.minimum_priority,
      dnd_enabled=self.dnd_enabled,
      dnd_schedule=tuple(DndWindow(day_of_week=window.day_of_week, start_time=window.start_time, end_time=window.end_time) for window in self.dnd_schedule),
      quiet_hours_enabled=self.quiet_hours_enabled,
      quiet_hours_start=self.quiet_hours_start,
      quiet_hours_end=self.quiet_hours_end,
      timezone=self.timezone,
      type_toggles=toggles,
    )


class PreferenceStore(Protocol):
  """Source of per-user preferences; `None` means the user has none on record."""

  async def get_preferences(self, user_id: str) -> UserNotificationPreferences | None: ...


class StaticPreferenceStore:
  """In-process preferences with defaults for unknown users."""

  def __init__(self, preferences: Mapping[str, UserNotificationPreferences] | None = None) -> None:
    self._preferences = dict(preferences or {})

  async def get_preferences(self, user_id: str) -> UserNotificationPreferences | None:
    return self._preferences.get(user_id) or UserNotificationPreferences(user_id=user_id)


class HttpPreferenceStore:
  """Fetch preferences from the preference service over HTTP."""

  def __init__(self, base_url: str, *, service_secret: str | None = None, timeout_seconds: float = 2.0, client: httpx.AsyncClient | None = None) -> None:
    self._base_url = base_url.rstrip("/")
    self._service_secret = service_secret
    # Never trust environment proxy variables for internal service calls.
    self._client = client or httpx.AsyncClient(timeout=timeout_seconds, trust_env=False)

  async def get_preferences(self, user_id: str) -> UserNotificationPreferences | None:
    url = f"{self._base_url}/users/{quote(user_id, safe='')}/notification-preferences"
    headers = {"Authorization": f"Bearer {self._service_secret}"} if self._service_secret else {}
    try:
      response = await self._client.get(url, headers=headers)
    except httpx.HTTPError as exc:
      raise PreferenceStoreUnavailableError(f"Preference service request failed: {exc}") from exc

    if response.status_code == 404:
      return None
    if response.status_code >= 400:
      raise PreferenceStoreUnavailableError(f"Preference service returned {response.status_code}")

    try:
      remote = msgspec.json.decode(response.content, type=RemotePreferences)
    except msgspec.DecodeError as exc:
      raise PreferenceStoreUnavailableError(f"Preference payload invalid: {exc}") from exc
    return remote.to_preferences(user_id)

  async def aclose(self) -> None:
    await self._client.aclose()


@dataclass(frozen=True)
class GateDecision:
  allowed: bool
  preferences: UserNotificationPreferences | None
  reason: str | None = None
  degraded: bool = False


class PreferenceGate:
  """Decide whether a notification may be delivered to a user at all.

  Checks run in order: minimum priority, do-not-disturb schedule and quiet hours (CRITICAL passes
  both), then the per-type toggle. When the store cannot be reached the gate admits everything
  and logs that it is running degraded.
  """

  def __init__(self, store: PreferenceStore, *, clock: Clock | None = None, cache_ttl_seconds: float = 60, max_cache_entries: int = 10_000) -> None:
    self._store = store
    self._clock = clock or SystemClock()
    self._cache_ttl_seconds = cache_ttl_seconds
    self._max_cache_entries = max_cache_entries
    self._cache: dict[str, tuple[float, UserNotificationPreferences | None]] = {}

  async def get_preferences(self, user_id: str) -> tuple[UserNotificationPreferences | None, bool]:
    """Return `(preferences, degraded)`; preferences are cached for a short TTL."""
    now = self._clock.now()
    cached = self._cache.get(user_id)
    if cached is not None and cached[0] > now:
      return cached[1], False

    try:
      preferences = await self._store.get_preferences(user_id)
    except Exception as exc:  # noqa: BLE001
      logger.warning("Preference store unavailable; admitting in degraded mode user_id=%s error=%s", user_id, exc)
      return None, True

    self._remember(user_id, preferences, now)
    return preferences, False

  def _remember(self, user_id: str, preferences: UserNotificationPreferences | None, now: float) -> None:
    # Insertion order doubles as fetch order, so the first entry is always the stalest.
    self._cache.pop(user_id, None)
    if len(self._cache) >= self._max_cache_entries:
      for key in [key for key, (expires_at, _) in self._cache.items() if expires_at <= now]:
        del self._cache[key]
      while len(self._cache) >= self._max_cache_entries:
        del self._cache[next(iter(self._cache))]
    self._cache[user_id] = (now + self._cache_ttl_seconds, preferences)

  def invalidate(self, user_id: str) -> None:
    self._cache.pop(user_id, None)

  async def evaluate(self, user_id: str, payload: NotificationPayload, priority: Priority) -> GateDecision:
    preferences, degraded = await self.get_preferences(user_id)
    if preferences is None:
      return GateDecision(allowed=True, preferences=None, degraded=degraded)

    try:
      reason = self.blocking_reason(preferences, payload, priority)
    except ValueError as exc:
      logger.warning("Unreadable preference schedule; admitting in degraded mode user_id=%s error=%s", user_id, exc)
      return GateDecision(allowed=True, preferences=preferences, degraded=True)

    if reason is not None:
      logger.info("Notification suppressed by preferences user_id=%s type=%s reason=%s", user_id, payload.notification_type, reason)
    return GateDecision(allowed=reason is None, preferences=preferences, reason=reason)

  async def admit(self, user_id: str, payload: NotificationPayload, priority: Priority) -> bool:
    return (await self.evaluate(user_id, payload, priority)).allowed

  def blocking_reason(self, preferences: UserNotificationPreferences, payload: NotificationPayload, priority: Priority) -> str | None:
    if priority.rank < preferences.minimum_priority.rank:
      return "below_minimum_priority"

    if priority is not Priority.CRITICAL:
      local = datetime.datetime.fromtimestamp(self._clock.now(), tz=preferences.zone())
      if preferences.dnd_enabled and any(window.contains(local) for window in preferences.dnd_schedule):
        return "do_not_disturb"
      if preferences.in_quiet_hours(local):
        return "quiet_hours"

    if not preferences.is_type_enabled(payload.notification_type):
      return "type_disabled"
    return None


def should_batch(preferences: UserNotificationPreferences | None, payload: NotificationPayload, priority: Priority) -> bool:
  """Return whether a notification should be deferred into the queue for batching.

  Only NORMAL and LOW items of a batchable type qualify, and only while the user has batching on.
  Users without preferences on record batch by default.
  """
  if priority in (Priority.CRITICAL, Priority.HIGH):
    return False
  if preferences is not None and not preferences.batching_enabled:
    return False
  return is_batchable_type(payload.notification_type)


def digest_release_time(preferences: UserNotificationPreferences, now: float) -> float | None:
  """Return the next digest boundary in the user's timezone, or `None` for immediate delivery."""
  if preferences.digest_mode is DigestMode.IMMEDIATE:
    return None

  local = datetime.datetime.fromtimestamp(now, tz=preferences.zone())
  if preferences.digest_mode is DigestMode.HOURLY:
    return (local.replace(minute=0, second=0, microsecond=0) + datetime.timedelta(hours=1)).timestamp()

  try:
    digest_minutes = _minutes(preferences.digest_time)
  except ValueError:
    logger.warning("Invalid digest time; delivering without digest user_id=%s digest_time=%s", preferences.user_id, preferences.digest_time)
    return None
  candidate = local.replace(hour=digest_minutes // 60, minute=digest_minutes % 60, second=0, microsecond=0)
  if preferences.digest_mode is DigestMode.WEEKLY:
    candidate += datetime.timedelta(days=(0 - local.weekday()) % 7)
    step = datetime.timedelta(days=7)
  else:
    step = datetime.timedelta(days=1)

  if candidate <= local:
    candidate += step
  return candidate.timestamp()
