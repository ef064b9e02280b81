import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, DateTime, Index, Text
from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from webpush_service.db.session import Base
from webpush_service.push.types import DEFAULT_TOPIC, Subscription


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PushSubscription(Base):
    __tablename__ = "push_subscriptions"

    id = Column(PG_UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(Text, nullable=True, index=True)
    endpoint = Column(Text, nullable=False, unique=True)
    p256dh = Column(Text, nullable=False)
    auth = Column(Text, nullable=False)
    topic = Column(Text, nullable=False, default=DEFAULT_TOPIC, server_default=DEFAULT_TOPIC)
    device_info = Column(JSONB, nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (Index("ix_push_subscriptions_user_topic", "user_id", "topic"),)

    def to_domain(self) -> Subscription:
        return Subscription(
            id=self.id,
            endpoint=self.endpoint,
            p256dh=self.p256dh,
            auth=self.auth,
            user_id=self.user_id,
            topic=self.topic or DEFAULT_TOPIC,
            device_info=self.device_info,
            expires_at=self.expires_at,
            last_used_at=self.last_used_at,
        )
