"""Identifier utilities."""

from __future__ import annotations

import secrets
import string
import uuid


def generate_notification_id() -> str:
  """Return a new queue item identifier."""
  return str(uuid.uuid4())


def generate_batch_id() -> str:
  """Return a new batch identifier."""
  return f"batch_{generate_nanoid()}"


def generate_nanoid(size: int = 16) -> str:
  """Return a short non-sequential id suitable for public references."""
  alphabet = string.ascii_letters + string.digits
  return "".join(secrets.choice(alphabet) for _ in range(size))


def generate_request_id() -> str:
  """Return a correlation id for an inbound API request."""
  return f"req_{generate_nanoid()}"
