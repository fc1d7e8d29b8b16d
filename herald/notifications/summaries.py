"""Summaries that turn several same-type items into one payload."""

from __future__ import annotations

from collections.abc import Callable, Sequence

from herald.notifications.contracts import NotificationAction, NotificationPayload, QueueItem
from herald.notifications.data import HabitReminderData, TaskDeadlineData, parse_notification_data

Summarizer = Callable[[Sequence[QueueItem]], NotificationPayload]


def _quoted_list(names: Sequence[str]) -> str:
  """Render up to two quoted names followed by a `+N other(s)` tail."""
  quoted = [f'"{name}"' for name in names]
  if len(quoted) == 1:
    return quoted[0]
  if len(quoted) == 2:
    return f"{quoted[0]} and {quoted[1]}"

  others = len(quoted) - 2
  return f"{quoted[0]}, {quoted[1]} and +{others} other{'s' if others > 1 else ''}"


def _entity_ids(items: Sequence[QueueItem]) -> list[str]:
  ids: list[str] = []
  for item in items:
    view = parse_notification_data(item.payload.data)
    if view.entity_id:
      ids.append(view.entity_id)
  return ids


def summarize_task_deadlines(items: Sequence[QueueItem]) -> NotificationPayload:
  names: list[str] = []
  for item in items:
    view = parse_notification_data(item.payload.data)
    names.append(view.task_name if isinstance(view, TaskDeadlineData) and view.task_name else item.payload.title)

  count = len(items)
  entity_ids = _entity_ids(items)
  return NotificationPayload(
    title=f"{count} task deadlines approaching",
    body=f"{_quoted_list(names)} {'is' if count == 1 else 'are'} due soon",
    icon="/icons/task-batch.png",
    tag="task-deadline-batch",
    data={"type": "TASK_DEADLINE_BATCH", "batchSize": count, "entityIds": entity_ids, "taskIds": list(entity_ids), "itemIds": [item.id for item in items], "actionUrl": "/tasks"},
    actions=(NotificationAction(action="view-all", title="View All"), NotificationAction(action="snooze-all", title="Snooze All")),
  )


def summarize_habit_reminders(items: Sequence[QueueItem]) -> NotificationPayload:
  names: list[str] = []
  for item in items:
    view = parse_notification_data(item.payload.data)
    names.append(view.habit_name if isinstance(view, HabitReminderData) and view.habit_name else item.payload.title)

  count = len(items)
  entity_ids = _entity_ids(items)
  return NotificationPayload(
    title=f"{count} habit reminders",
    body=f"Time to check in: {_quoted_list(names)}",
    icon="/icons/habit-batch.png",
    tag="habit-reminder-batch",
    data={"type": "HABIT_REMINDER_BATCH", "batchSize": count, "entityIds": entity_ids, "habitIds": list(entity_ids), "itemIds": [item.id for item in items], "actionUrl": "/habits"},
    actions=(NotificationAction(action="check-in-all", title="Check In All"), NotificationAction(action="view-habits", title="View Habits")),
  )


def summarize_generic(items: Sequence[QueueItem]) -> NotificationPayload:
  count = len(items)
  source_type = items[0].notification_type if items else "GENERAL"
  return NotificationPayload(
    title=f"{count} notifications",
    body=f"You have {count} new updates",
    icon="/icons/notification-batch.png",
    tag="notification-batch",
    data={"type": "GENERAL_BATCH", "sourceType": source_type, "batchSize": count, "entityIds": _entity_ids(items), "itemIds": [item.id for item in items]},
    actions=(NotificationAction(action="view-all", title="View All"),),
  )


DEFAULT_SUMMARIZERS: dict[str, Summarizer] = {"TASK_DEADLINE": summarize_task_deadlines, "HABIT_REMINDER": summarize_habit_reminders}
