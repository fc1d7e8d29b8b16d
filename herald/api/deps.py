"""Shared FastAPI dependencies for engine access and service authentication."""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, Header, HTTPException, Request, status

from herald.config import Settings, get_settings
from herald.notifications.engine import NotificationEngine

logger = logging.getLogger(__name__)


def get_engine(request: Request) -> NotificationEngine:
  """Return the engine the lifespan attached to the app."""
  engine = getattr(request.app.state, "engine", None)
  if engine is None:
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Notification engine is not running.")
  return engine


async def require_service_secret(
  settings: Settings = Depends(get_settings),  # noqa: B008
  x_herald_service_secret: str | None = Header(default=None),
  authorization: str | None = Header(default=None),
) -> None:
  """Reject callers that do not present the shared service secret."""
  # Secure-by-default: without a configured secret every call is denied.
  if not settings.service_secret:
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Service authentication is not configured.")
  shared_secret_valid = secrets.compare_digest((x_herald_service_secret or "").encode(), settings.service_secret.encode())
  bearer_valid = secrets.compare_digest((authorization or "").encode(), f"Bearer {settings.service_secret}".encode())
  if not shared_secret_valid and not bearer_valid:
    logger.warning("Unauthorized service call rejected")
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid service secret.")
