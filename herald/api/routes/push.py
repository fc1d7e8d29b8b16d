"""Routes for Web Push subscription lifecycle management."""

from __future__ import annotations

import logging
import re
import urllib.parse

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_core import PydanticCustomError

from herald.api.deps import get_engine, require_service_secret
from herald.notifications.engine import NotificationEngine
from herald.notifications.push_subscription_repo import PushSubscriptionEntry

logger = logging.getLogger(__name__)

_ALLOWED_PUSH_HOSTS = {"fcm.googleapis.com", "updates.push.services.mozilla.com", "push.services.mozilla.com", "web.push.apple.com"}
_BASE64_RE = re.compile(r"^[A-Za-z0-9_-]+={0,2}$")

router = APIRouter(dependencies=[Depends(require_service_secret)])


def _validate_push_endpoint(value: str) -> str:
  """Restrict endpoints to known provider hosts over HTTPS."""
  normalized = value.strip()
  parsed = urllib.parse.urlparse(normalized)
  if parsed.scheme.lower() != "https":
    raise PydanticCustomError("push_endpoint_https", "endpoint must use https.")

  host = (parsed.hostname or "").lower()
  if host not in _ALLOWED_PUSH_HOSTS:
    raise PydanticCustomError("push_endpoint_host", "endpoint host is not allowed.")

  return normalized


def _validate_base64url(value: str, *, field: str, min_length: int) -> str:
  normalized = value.strip()
  if len(normalized) < min_length:
    raise PydanticCustomError(f"push_{field}_short", f"{field} key is too short.")
  if not _BASE64_RE.fullmatch(normalized):
    raise PydanticCustomError(f"push_{field}_format", f"{field} must be base64url encoded.")
  return normalized


class PushSubscriptionKeys(BaseModel):
  """Browser-provided key material for Web Push encryption."""

  p256dh: str = Field(min_length=40, max_length=512)
  auth: str = Field(min_length=16, max_length=256)
  model_config = ConfigDict(extra="forbid")

  @field_validator("p256dh")
  @classmethod
  def validate_p256dh(cls, value: str) -> str:
    return _validate_base64url(value, field="p256dh", min_length=40)

  @field_validator("auth")
  @classmethod
  def validate_auth(cls, value: str) -> str:
    return _validate_base64url(value, field="auth", min_length=16)


class PushSubscribeRequest(BaseModel):
  """Standard browser push subscription object payload."""

  endpoint: str = Field(min_length=1, max_length=2048)
  expiration_time: int | None = Field(default=None, alias="expirationTime")
  keys: PushSubscriptionKeys
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  @field_validator("endpoint")
  @classmethod
  def validate_endpoint(cls, value: str) -> str:
    return _validate_push_endpoint(value)


class PushUnsubscribeRequest(BaseModel):
  """Payload for deleting an existing push subscription."""

  endpoint: str = Field(min_length=1, max_length=2048)
  model_config = ConfigDict(extra="forbid")

  @field_validator("endpoint")
  @classmethod
  def validate_endpoint(cls, value: str) -> str:
    return _validate_push_endpoint(value)


@router.post("/users/{user_id}/subscribe", status_code=status.HTTP_204_NO_CONTENT)
async def subscribe_to_push(user_id: str, payload: PushSubscribeRequest, engine: NotificationEngine = Depends(get_engine), user_agent: str | None = Header(default=None)) -> Response:  # noqa: B008
  """Upsert a browser push subscription for the user."""
  normalized_user_agent = None
  if user_agent:
    # Clamp user agent size to reduce storage abuse while keeping device context.
    normalized_user_agent = user_agent.strip()[:512] or None

  try:
    await engine.subscriptions.upsert(PushSubscriptionEntry(user_id=user_id, endpoint=payload.endpoint, p256dh=payload.keys.p256dh, auth=payload.keys.auth, user_agent=normalized_user_agent))
  except Exception as exc:  # noqa: BLE001
    logger.error("Failed to save push subscription user_id=%s", user_id, exc_info=True)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to save push subscription") from exc

  return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{user_id}/unsubscribe", status_code=status.HTTP_204_NO_CONTENT)
async def unsubscribe_from_push(user_id: str, payload: PushUnsubscribeRequest, engine: NotificationEngine = Depends(get_engine)) -> Response:  # noqa: B008
  """Delete a push subscription; deleting an unknown endpoint is a no-op."""
  try:
    await engine.subscriptions.delete_for_user_endpoint(user_id=user_id, endpoint=payload.endpoint)
  except Exception as exc:  # noqa: BLE001
    logger.error("Failed to delete push subscription user_id=%s", user_id, exc_info=True)
    raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to delete push subscription") from exc

  return Response(status_code=status.HTTP_204_NO_CONTENT)
