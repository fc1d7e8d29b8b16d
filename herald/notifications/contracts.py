"""Contracts shared by the notification engine components."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import msgspec


class Priority(str, enum.Enum):
  """Delivery priority, highest first."""

  CRITICAL = "CRITICAL"
  HIGH = "HIGH"
  NORMAL = "NORMAL"
  LOW = "LOW"

  @property
  def rank(self) -> int:
    return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.LOW: 0, Priority.NORMAL: 1, Priority.HIGH: 2, Priority.CRITICAL: 3}


class DeliveryStatus(str, enum.Enum):
  """Lifecycle status of a queued item."""

  PENDING = "PENDING"
  SUCCESS = "SUCCESS"
  FAILED = "FAILED"


class DigestMode(str, enum.Enum):
  """How a user wants deferrable notifications released."""

  IMMEDIATE = "IMMEDIATE"
  HOURLY = "HOURLY"
  DAILY = "DAILY"
  WEEKLY = "WEEKLY"


class NotificationAction(msgspec.Struct, frozen=True):
  """Button rendered with a notification."""

  action: str
  title: str
  icon: str | None = None


class NotificationPayload(msgspec.Struct, frozen=True, kw_only=True):
  """User-visible content handed to the transport."""

  title: str
  body: str
  icon: str | None = None
  image: str | None = None
  badge: str | None = None
  tag: str | None = None
  require_interaction: bool = False
  silent: bool = False
  timestamp: float | None = None
  data: dict[str, Any] = msgspec.field(default_factory=dict)
  actions: tuple[NotificationAction, ...] = ()

  @property
  def notification_type(self) -> str:
    value = self.data.get("type")
    return str(value) if value else "GENERAL"


class QueueItem(msgspec.Struct, kw_only=True):
  """A notification admitted into the queue and its delivery bookkeeping."""

  id: str
  user_id: str
  payload: NotificationPayload
  priority: Priority
  batchable: bool
  scheduled_for: float
  created_at: float
  sequence: int = 0
  attempts: int = 0
  status: DeliveryStatus = DeliveryStatus.PENDING
  dedup_key: str | None = None
  bypass_rate_limit: bool = False
  last_error: str | None = None

  @property
  def notification_type(self) -> str:
    return self.payload.notification_type


@dataclass(frozen=True)
class SendOptions:
  """Caller options for a single send."""

  batchable: bool | None = None
  dedup_key: str | None = None
  scheduled_for: float | None = None
  bypass_rate_limit: bool = False
  immediate_on_queue_full: bool = False


@dataclass(frozen=True)
class Batch:
  """A unit of delivery: either one item or several items summarized into one payload."""

  id: str
  user_id: str
  priority: Priority
  notification_type: str
  items: tuple[QueueItem, ...]
  payload: NotificationPayload
  created_at: float
  synthesized: bool = False

  @property
  def size(self) -> int:
    return len(self.items)


@dataclass(frozen=True)
class DequeuedBatch:
  """Items claimed from the queue in one dequeue call."""

  id: str
  items: tuple[QueueItem, ...]
  created_at: float

  @property
  def size(self) -> int:
    return len(self.items)


SendOutcome = Literal["sent", "queued", "duplicate", "rate_limited", "suppressed", "unavailable", "retrying", "failed", "queue_full"]


@dataclass(frozen=True)
class SendResult:
  """Result of a send request as reported to the caller."""

  success: bool
  outcome: SendOutcome
  queued: bool = False
  batch_id: str | None = None
  error: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return {"success": self.success, "queued": self.queued, "batchId": self.batch_id, "outcome": self.outcome, "error": self.error}


class NotificationError(Exception):
  """Base class for all notification engine failures."""


class QueueFullError(NotificationError):
  """Raised when an enqueue would exceed the configured queue capacity."""


class CircuitOpenError(NotificationError):
  """Raised when the circuit breaker short-circuits a call."""

  def __init__(self, message: str = "Circuit breaker is OPEN", *, retry_after_ms: int = 0) -> None:
    super().__init__(message)
    self.retry_after_ms = retry_after_ms


class DeliveryTimeoutError(NotificationError):
  """Raised when a transport call exceeds the call-level timeout."""


class PreferenceStoreUnavailableError(NotificationError):
  """Raised when user preferences cannot be fetched."""


class NotificationProviderError(NotificationError):
  """Exception raised when a delivery provider returns an error."""


class InvalidPushSubscriptionError(NotificationProviderError):
  """Exception raised when a push subscription endpoint is expired or invalid."""


class TransientPushProviderError(NotificationProviderError):
  """Exception raised when a push provider fails to accept a delivery."""


class Transport(Protocol):
  """Delivery contract for the downstream channel."""

  async def deliver(self, user_id: str, payload: NotificationPayload) -> None:
    """Deliver a payload to every endpoint of a user; raise on failure."""
