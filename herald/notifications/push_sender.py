"""Web Push transport implementations."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from http import HTTPStatus
from typing import Any

from pywebpush import WebPushException, webpush
from starlette.concurrency import run_in_threadpool

from herald.notifications.contracts import InvalidPushSubscriptionError, NotificationPayload, TransientPushProviderError
from herald.notifications.push_subscription_repo import PushSubscriptionEntry, PushSubscriptionRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VapidConfig:
  """Configuration required to sign Web Push requests."""

  public_key: str
  private_key: str
  sub: str


def build_push_message(payload: NotificationPayload) -> dict[str, Any]:
  """Build the JSON document service workers receive for a payload."""
  message: dict[str, Any] = {"title": payload.title, "body": payload.body, "data": payload.data, "requireInteraction": payload.require_interaction, "silent": payload.silent}
  for key, value in (("icon", payload.icon), ("image", payload.image), ("badge", payload.badge), ("tag", payload.tag), ("timestamp", payload.timestamp)):
    if value is not None:
      message[key] = value
  if payload.actions:
    message["actions"] = [{"action": action.action, "title": action.title, **({"icon": action.icon} if action.icon else {})} for action in payload.actions]
  return message


class WebPushTransport:
  """`pywebpush` backed transport that fans a payload out to every subscription of a user.

  A delivery succeeds when at least one subscription accepts it. Endpoints the push service reports
  as gone are pruned. Retries are left to the engine so every attempt is visible to the breaker.
  """

  def __init__(self, *, vapid_config: VapidConfig, subscriptions: PushSubscriptionRepository, timeout_seconds: float = 10.0) -> None:
    self._vapid_config = vapid_config
    self._subscriptions = subscriptions
    self._timeout_seconds = timeout_seconds

  async def deliver(self, user_id: str, payload: NotificationPayload) -> None:
    subscriptions = await self._subscriptions.list_for_user(user_id=user_id)
    if not subscriptions:
      logger.debug("No push subscriptions registered; nothing to deliver user_id=%s", user_id)
      return

    body = json.dumps(build_push_message(payload))
    delivered = 0
    last_error: TransientPushProviderError | None = None
    for subscription in subscriptions:
      try:
        await run_in_threadpool(self._send_one, subscription, body)
        delivered += 1
      except InvalidPushSubscriptionError:
        # Remove invalid subscriptions immediately to prevent repeated failed sends.
        await self._subscriptions.delete_for_user_endpoint(user_id=user_id, endpoint=subscription.endpoint)
        logger.info("Pruned invalid push subscription user_id=%s", user_id)
      except TransientPushProviderError as exc:
        last_error = exc
        logger.warning("Push delivery to one endpoint failed user_id=%s error=%s", user_id, exc)

    if delivered == 0 and last_error is not None:
      raise last_error

  def _send_one(self, subscription: PushSubscriptionEntry, body: str) -> None:
    subscription_info = {"endpoint": subscription.endpoint, "keys": {"p256dh": subscription.p256dh, "auth": subscription.auth}}
    # Send with VAPID signing so browser push services can verify origin.
    try:
      webpush(subscription_info=subscription_info, data=body, vapid_private_key=self._vapid_config.private_key, vapid_claims={"sub": self._vapid_config.sub}, timeout=self._timeout_seconds)
    except WebPushException as exc:
      status_code = _extract_status_code(exc)
      if status_code in {HTTPStatus.GONE, HTTPStatus.NOT_FOUND}:
        raise InvalidPushSubscriptionError(f"Push subscription is invalid (status={int(status_code)})") from exc

      raise TransientPushProviderError(f"Push delivery failed (status={int(status_code) if status_code else 'unknown'})") from exc


class NullTransport:
  """No-op transport used when push delivery is disabled or unconfigured."""

  async def deliver(self, user_id: str, payload: NotificationPayload) -> None:
    """Drop the notification while recording a debug log."""
    logger.debug("Push delivery disabled; dropping notification user_id=%s title=%s", user_id, payload.title)


def _extract_status_code(exc: WebPushException) -> int | None:
  """Extract an HTTP status code from a pywebpush exception when available."""
  response = getattr(exc, "response", None)
  if response is None:
    return None

  status = getattr(response, "status_code", None)
  if isinstance(status, int):
    return status

  return None
