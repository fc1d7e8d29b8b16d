from __future__ import annotations

from herald.notifications.summaries import summarize_generic, summarize_habit_reminders, summarize_task_deadlines
from tests.factories import make_item, make_payload


def test_task_summary_lists_two_names(clock):
  items = [make_item(clock, payload=make_payload("TASK_DEADLINE", taskName=name, entityId=name.lower())) for name in ("Alpha", "Beta")]
  payload = summarize_task_deadlines(items)
  assert payload.body == '"Alpha" and "Beta" are due soon'
  assert payload.tag == "task-deadline-batch"
  assert [action.action for action in payload.actions] == ["view-all", "snooze-all"]
  assert payload.data["itemIds"] == [item.id for item in items]


def test_task_summary_pluralizes_other_count(clock):
  items = [make_item(clock, payload=make_payload("TASK_DEADLINE", taskName=str(index))) for index in range(5)]
  assert summarize_task_deadlines(items).body.endswith("and +3 others are due soon")


def test_task_summary_falls_back_to_title(clock):
  items = [make_item(clock, payload=make_payload("TASK_DEADLINE", title="Untitled task")) for _ in range(2)]
  assert summarize_task_deadlines(items).body.startswith('"Untitled task" and "Untitled task"')


def test_habit_summary(clock):
  items = [make_item(clock, payload=make_payload("HABIT_REMINDER", habitName=name, entityId=name)) for name in ("Run", "Read", "Stretch")]
  payload = summarize_habit_reminders(items)
  assert payload.title == "3 habit reminders"
  assert payload.body == 'Time to check in: "Run", "Read" and +1 other'
  assert payload.data["habitIds"] == ["Run", "Read", "Stretch"]


def test_generic_summary_keeps_source_type(clock):
  items = [make_item(clock, payload=make_payload("TEAM_MENTION", entityId="m1")), make_item(clock, payload=make_payload("TEAM_MENTION"))]
  payload = summarize_generic(items)
  assert payload.data["type"] == "GENERAL_BATCH"
  assert payload.data["sourceType"] == "TEAM_MENTION"
  assert payload.data["entityIds"] == ["m1"]
