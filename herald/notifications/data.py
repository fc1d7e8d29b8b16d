"""Typed views over the free-form `data` mapping carried by notification payloads."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

import msgspec


class TaskDeadlineData(msgspec.Struct, tag="TASK_DEADLINE", tag_field="type", rename="camel", kw_only=True):
  entity_id: str | None = None
  task_name: str | None = None
  due_at: str | None = None
  action_url: str | None = None


class HabitReminderData(msgspec.Struct, tag="HABIT_REMINDER", tag_field="type", rename="camel", kw_only=True):
  entity_id: str | None = None
  habit_name: str | None = None
  action_url: str | None = None


@dataclass(frozen=True)
class GenericData:
  """Fallback view for notification types without a dedicated schema."""

  type: str
  entity_id: str | None = None
  action_url: str | None = None


NotificationData = TaskDeadlineData | HabitReminderData | GenericData


def _optional_text(value: Any) -> str | None:
  if value is None or value == "":
    return None
  return str(value)


def parse_notification_data(data: Mapping[str, Any]) -> NotificationData:
  """Decode `data` into the view matching its `type` tag."""
  try:
    return msgspec.convert(dict(data), type=TaskDeadlineData | HabitReminderData)
  except msgspec.ValidationError:
    return GenericData(type=str(data.get("type") or "GENERAL"), entity_id=_optional_text(data.get("entityId")), action_url=_optional_text(data.get("actionUrl")))
