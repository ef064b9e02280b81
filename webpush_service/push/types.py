import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Union

URGENCY_LEVELS = ("very-low", "low", "normal", "high")
DEFAULT_TOPIC = "general"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # Naive timestamps coming back from the database are UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Subscription:
    """One browser registration, as seen by the delivery engine."""

    id: uuid.UUID
    endpoint: str
    p256dh: str
    auth: str
    user_id: Optional[str] = None
    topic: str = DEFAULT_TOPIC
    device_info: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return _aware(self.expires_at) <= (now or utcnow())

    def is_active(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now)

    def has_keys(self) -> bool:
        return bool(self.p256dh) and bool(self.auth)


@dataclass(frozen=True)
class NotificationPayload:
    """
    What the application wants to show.

    ``ttl`` and ``urgency`` fall back to the configured defaults when left
    as None. ``topic`` here is the push-service collapse key, not the
    subscription topic used for broadcast targeting.
    """

    title: str
    message: str
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    data: Mapping[str, Any] = field(default_factory=dict)
    tag: Optional[str] = None
    require_interaction: bool = False
    silent: bool = False
    ttl: Optional[int] = None
    urgency: Optional[str] = None
    topic: Optional[str] = None

    def __post_init__(self):
        # Freeze the data map so one payload serializes identically for
        # every subscription in a dispatch.
        object.__setattr__(self, "data", MappingProxyType(dict(self.data or {})))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "icon": self.icon,
            "badge": self.badge,
            "image": self.image,
            "data": dict(self.data),
            "tag": self.tag,
            "require_interaction": self.require_interaction,
            "silent": self.silent,
            "ttl": self.ttl,
            "urgency": self.urgency,
            "topic": self.topic,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "NotificationPayload":
        return cls(
            title=raw["title"],
            message=raw["message"],
            icon=raw.get("icon"),
            badge=raw.get("badge"),
            image=raw.get("image"),
            data=raw.get("data") or {},
            tag=raw.get("tag"),
            require_interaction=bool(raw.get("require_interaction", False)),
            silent=bool(raw.get("silent", False)),
            ttl=raw.get("ttl"),
            urgency=raw.get("urgency"),
            topic=raw.get("topic"),
        )


class DeliveryOutcome(str, enum.Enum):
    DELIVERED = "Delivered"
    SUBSCRIPTION_GONE = "SubscriptionGone"
    PAYLOAD_TOO_LARGE = "PayloadTooLarge"
    RATE_LIMITED = "RateLimited"
    TRANSIENT_FAILURE = "TransientFailure"


@dataclass(frozen=True)
class DeliveryResult:
    outcome: DeliveryOutcome
    subscription_id: Optional[uuid.UUID] = None
    status_code: Optional[int] = None
    message: Optional[str] = None
    retry_after: Optional[int] = None

    @property
    def delivered(self) -> bool:
        return self.outcome is DeliveryOutcome.DELIVERED

    @property
    def retryable(self) -> bool:
        return self.outcome in (DeliveryOutcome.RATE_LIMITED, DeliveryOutcome.TRANSIENT_FAILURE)

    @classmethod
    def transient(
        cls,
        subscription_id: Optional[uuid.UUID],
        message: str,
        status_code: Optional[int] = None,
    ) -> "DeliveryResult":
        return cls(
            outcome=DeliveryOutcome.TRANSIENT_FAILURE,
            subscription_id=subscription_id,
            status_code=status_code,
            message=message,
        )


SubscriptionId = Union[str, uuid.UUID]


def ensure_uuid(value: SubscriptionId) -> uuid.UUID:
    """Convert string to UUID if needed."""
    if isinstance(value, str):
        return uuid.UUID(value)
    return value
