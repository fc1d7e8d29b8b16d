"""Routes for sending notifications and inspecting engine state."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

import msgspec
from fastapi import APIRouter, Depends, Query, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from herald.api.deps import get_engine, require_service_secret
from herald.notifications.contracts import NotificationAction, NotificationPayload, Priority, SendOptions
from herald.notifications.engine import NotificationEngine

router = APIRouter(dependencies=[Depends(require_service_secret)])

PROMETHEUS_CONTENT_TYPE = "text/plain; version=0.0.4"


class NotificationActionModel(BaseModel):
  action: str = Field(min_length=1, max_length=64)
  title: str = Field(min_length=1, max_length=64)
  icon: str | None = Field(default=None, max_length=2048)
  model_config = ConfigDict(extra="forbid")


class SendOptionsModel(BaseModel):
  batchable: bool | None = None
  dedup_key: str | None = Field(default=None, alias="dedupKey", min_length=1, max_length=256)
  schedule_for: datetime | None = Field(default=None, alias="scheduleFor")
  bypass_rate_limit: bool = Field(default=False, alias="bypassRateLimit")
  immediate_on_queue_full: bool = Field(default=False, alias="immediateOnQueueFull")
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  def to_options(self) -> SendOptions:
    scheduled_for = None
    if self.schedule_for is not None:
      # Naive datetimes are taken as UTC.
      moment = self.schedule_for if self.schedule_for.tzinfo else self.schedule_for.replace(tzinfo=UTC)
      scheduled_for = moment.timestamp()
    return SendOptions(
      batchable=self.batchable,
      dedup_key=self.dedup_key,
      scheduled_for=scheduled_for,
      bypass_rate_limit=self.bypass_rate_limit,
      immediate_on_queue_full=self.immediate_on_queue_full,
    )


class SendNotificationRequest(BaseModel):
  """Payload accepted by the send endpoint."""

  user_id: str = Field(alias="userId", min_length=1, max_length=128)
  title: str = Field(min_length=1, max_length=100)
  body: str = Field(min_length=1, max_length=500)
  icon: str | None = Field(default=None, max_length=2048)
  image: str | None = Field(default=None, max_length=2048)
  badge: str | None = Field(default=None, max_length=2048)
  tag: str | None = Field(default=None, max_length=128)
  require_interaction: bool = Field(default=False, alias="requireInteraction")
  silent: bool = False
  priority: Literal["CRITICAL", "HIGH", "NORMAL", "LOW"] | None = None
  data: dict[str, Any] = Field(default_factory=dict)
  actions: list[NotificationActionModel] = Field(default_factory=list, max_length=3)
  options: SendOptionsModel = Field(default_factory=SendOptionsModel)
  model_config = ConfigDict(extra="forbid", populate_by_name=True)

  def to_payload(self) -> NotificationPayload:
    return NotificationPayload(
      title=self.title,
      body=self.body,
      icon=self.icon,
      image=self.image,
      badge=self.badge,
      tag=self.tag,
      require_interaction=self.require_interaction,
      silent=self.silent,
      data=dict(self.data),
      actions=tuple(NotificationAction(action=action.action, title=action.title, icon=action.icon) for action in self.actions),
    )


@router.post("/send")
async def send_notification(request: SendNotificationRequest, engine: NotificationEngine = Depends(get_engine)) -> JSONResponse:  # noqa: B008
  """Route one notification through the engine."""
  priority = Priority(request.priority) if request.priority else None
  result = await engine.send(request.user_id, request.to_payload(), priority=priority, options=request.options.to_options())
  status_code = status.HTTP_503_SERVICE_UNAVAILABLE if result.outcome == "queue_full" else status.HTTP_200_OK
  return JSONResponse(status_code=status_code, content=result.to_dict())


@router.get("/metrics")
async def get_metrics(period_hours: int = Query(default=24, alias="periodHours", ge=1, le=168), engine: NotificationEngine = Depends(get_engine)) -> dict[str, Any]:  # noqa: B008
  """Return the metrics snapshot with derived insights."""
  snapshot = await engine.metrics_snapshot(period_hours=period_hours)
  return {
    "metrics": snapshot.to_dict(),
    "typeBreakdown": await engine.metrics.type_breakdown(period_hours=period_hours),
    "insights": [insight.to_dict() for insight in engine.metrics.insights(snapshot)],
  }


@router.get("/metrics/prometheus")
async def get_prometheus_metrics(engine: NotificationEngine = Depends(get_engine)) -> Response:  # noqa: B008
  snapshot = await engine.metrics_snapshot(period_hours=1)
  return PlainTextResponse(engine.metrics.render_prometheus(snapshot), media_type=PROMETHEUS_CONTENT_TYPE)


@router.get("/health")
async def get_health(engine: NotificationEngine = Depends(get_engine)) -> JSONResponse:  # noqa: B008
  health = await engine.system_health()
  status_code = status.HTTP_503_SERVICE_UNAVAILABLE if health["status"] == "unhealthy" else status.HTTP_200_OK
  return JSONResponse(status_code=status_code, content=health)


@router.get("/failed")
async def list_failed(limit: int = Query(default=50, ge=1, le=500), engine: NotificationEngine = Depends(get_engine)) -> dict[str, Any]:  # noqa: B008
  """Return notifications that exhausted their retries."""
  items = await engine.list_failed(limit=limit)
  return {"items": msgspec.to_builtins(items), "count": len(items)}


@router.get("/rate-limits/{user_id}")
async def get_rate_limit_status(user_id: str, engine: NotificationEngine = Depends(get_engine)) -> dict[str, Any]:  # noqa: B008
  return await engine.rate_limit_status(user_id)
