"""Priority classification for incoming notifications."""

from __future__ import annotations

from herald.notifications.contracts import NotificationPayload, Priority

URGENT_TYPES = frozenset({"SYSTEM_ALERT", "SECURITY_ALERT"})
BATCHABLE_TYPES = frozenset({"TASK_DEADLINE", "HABIT_REMINDER", "WEEKLY_REPORT"})


class PriorityClassifier:
  """Derive the effective priority from the caller's hint and the payload itself.

  The caller hint is never lowered: payload signals can only escalate it. A payload that demands
  interaction is CRITICAL; alert types are at least HIGH.
  """

  def __init__(self, *, urgent_types: frozenset[str] = URGENT_TYPES) -> None:
    self._urgent_types = urgent_types

  def classify(self, payload: NotificationPayload, hint: Priority | None = None) -> Priority:
    priority = hint or Priority.NORMAL
    if payload.require_interaction:
      return Priority.CRITICAL
    if payload.notification_type in self._urgent_types and priority.rank < Priority.HIGH.rank:
      return Priority.HIGH
    return priority


def is_batchable_type(notification_type: str) -> bool:
  """Return whether a notification type may be summarized with others of its kind."""
  return notification_type in BATCHABLE_TYPES
