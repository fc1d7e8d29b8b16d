"""Unit tests for API exception sanitization behavior."""

from __future__ import annotations

from herald.core.exceptions import _coerce_json_safe, _error_payload, _sanitize_validation_errors


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body", "options"), "msg": "Value error, Unknown priority 'URGENT'.", "input": {"priority": "URGENT"}, "ctx": {"error": ValueError("Unknown priority 'URGENT'."), "input": {"priority": "URGENT"}}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["ctx"]["error"] == "ValueError: Unknown priority 'URGENT'."
  assert "input" not in sanitized[0]["ctx"]
  assert sanitized[0]["loc"] == ["body", "options"]


def test_coerce_json_safe_handles_nested_values() -> None:
  assert _coerce_json_safe({1: {"tags": {"a"}}, "err": KeyError()}) == {"1": {"tags": ["a"]}, "err": "KeyError"}


def test_error_payload_only_includes_request_id_when_known() -> None:
  assert _error_payload("boom") == {"detail": "boom"}
  assert _error_payload("boom", request_id="r-1") == {"detail": "boom", "requestId": "r-1"}
