from typing import Any, Dict, List, Literal, Optional
from uuid import UUID
from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator

from webpush_service.push.dispatcher import validate_endpoint
from webpush_service.push.types import NotificationPayload

Urgency = Literal["very-low", "low", "normal", "high"]


class SubscriptionCreate(BaseModel):
    endpoint: str = Field(..., max_length=500)
    p256dh: str = Field(..., min_length=1, max_length=255)
    auth: str = Field(..., min_length=1, max_length=255)
    user_id: Optional[str] = None
    topic: Optional[str] = Field(None, max_length=100)
    device_info: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None

    @field_validator("endpoint")
    @classmethod
    def endpoint_must_be_url(cls, value: str) -> str:
        if not validate_endpoint(value):
            raise ValueError("endpoint must be a valid http(s) URL")
        return value


class SubscriptionOut(BaseModel):
    id: UUID
    user_id: Optional[str] = None
    endpoint: str
    topic: str
    device_info: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    last_used_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class SubscriptionWriteResponse(BaseModel):
    success: bool = True
    message: str
    subscription: SubscriptionOut


class UnsubscribeRequest(BaseModel):
    endpoint: str = Field(..., max_length=500)


class NotificationIn(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    message: str = Field(..., min_length=1, max_length=1000)
    data: Dict[str, Any] = Field(default_factory=dict)
    icon: Optional[str] = None
    badge: Optional[str] = None
    image: Optional[str] = None
    tag: Optional[str] = None
    require_interaction: bool = False
    silent: bool = False
    ttl: Optional[int] = Field(None, ge=0)
    urgency: Optional[Urgency] = None
    # Push-service collapse key, sent as the Topic header
    collapse_key: Optional[str] = Field(None, max_length=32, pattern=r"^[A-Za-z0-9_-]+$")

    def to_payload(self) -> NotificationPayload:
        return NotificationPayload(
            title=self.title,
            message=self.message,
            icon=self.icon,
            badge=self.badge,
            image=self.image,
            data=self.data,
            tag=self.tag,
            require_interaction=self.require_interaction,
            silent=self.silent,
            ttl=self.ttl,
            urgency=self.urgency,
            topic=self.collapse_key,
        )


class SendToUserRequest(NotificationIn):
    user_id: str = Field(..., min_length=1)


class SendToTopicRequest(NotificationIn):
    topic: str = Field(..., min_length=1, max_length=100)


class SendRequest(NotificationIn):
    type: Literal["user", "all", "topic"]
    target: Optional[str] = None

    @model_validator(mode="after")
    def target_required_for_user_and_topic(self):
        if self.type in ("user", "topic") and not self.target:
            raise ValueError(f"target is required when type is {self.type!r}")
        return self


class SendResponse(BaseModel):
    success: bool = True
    sent_count: int
    message: str


class QueuedResponse(BaseModel):
    success: bool = True
    job_id: str
    message: str


class VapidKeys(BaseModel):
    public_key: str
    subject: str


class VapidKeysResponse(BaseModel):
    success: bool = True
    vapid_keys: VapidKeys


class EndpointValidationRequest(BaseModel):
    endpoint: str


class EndpointValidationResponse(BaseModel):
    endpoint: str
    valid: bool


class SubscriptionList(BaseModel):
    success: bool = True
    subscriptions: List[SubscriptionOut]
    count: int
