import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

import redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from webpush_service.db.session import AsyncSessionLocal
from webpush_service.models.subscription import PushSubscription
from webpush_service.push.types import Subscription, SubscriptionId, ensure_uuid
from webpush_service.queue.redis_conn import redis_conn_global

logger = logging.getLogger(__name__)

redis_conn = redis_conn_global
CACHE_PREFIX = "push_subscription:"
CACHE_TTL_SECONDS = 3600


def _make_key(subscription_id: SubscriptionId) -> str:
    return f"{CACHE_PREFIX}{subscription_id}"


def _dump(sub: Subscription) -> str:
    data: Dict[str, Any] = {
        "id": str(sub.id),
        "endpoint": sub.endpoint,
        "p256dh": sub.p256dh,
        "auth": sub.auth,
        "user_id": sub.user_id,
        "topic": sub.topic,
        "device_info": sub.device_info,
        "expires_at": sub.expires_at.isoformat() if sub.expires_at else None,
        "last_used_at": sub.last_used_at.isoformat() if sub.last_used_at else None,
    }
    return json.dumps(data)


def _load(raw: str) -> Subscription:
    data = json.loads(raw)
    return Subscription(
        id=uuid.UUID(data["id"]),
        endpoint=data["endpoint"],
        p256dh=data["p256dh"],
        auth=data["auth"],
        user_id=data.get("user_id"),
        topic=data.get("topic") or "general",
        device_info=data.get("device_info"),
        expires_at=datetime.fromisoformat(data["expires_at"]) if data.get("expires_at") else None,
        last_used_at=datetime.fromisoformat(data["last_used_at"]) if data.get("last_used_at") else None,
    )


def cache_subscription(sub: Subscription) -> None:
    """
    Store the subscription's delivery fields in Redis under a JSON string.
    Caching is best-effort; Redis errors are logged and ignored.
    """
    try:
        redis_conn.set(_make_key(sub.id), _dump(sub), ex=CACHE_TTL_SECONDS)
    except redis.RedisError as exc:
        logger.debug(f"Could not cache subscription {sub.id}: {exc}")


async def get_subscription(
    subscription_id: SubscriptionId, db: Optional[AsyncSession] = None
) -> Optional[Subscription]:
    """
    Return the subscription from Redis if present; otherwise load it from
    Postgres, cache it, and return it. Returns None if no such subscription
    exists.

    Args:
        subscription_id: The UUID of the subscription to get
        db: Optional async SQLAlchemy session to use. If None, creates a new one.
    """
    sid = ensure_uuid(subscription_id)
    key = _make_key(sid)

    # 1) Try cache
    try:
        raw = redis_conn.get(key)
    except redis.RedisError as exc:
        logger.debug(f"Subscription cache unavailable: {exc}")
        raw = None
    if raw:
        try:
            return _load(raw)
        except (ValueError, KeyError):
            # corrupted cache entry; fall back to DB
            logger.debug(f"Discarding corrupted cache entry {key}")

    # 2) Cache miss or error -> load from DB
    session_created = False
    if db is None:
        db = AsyncSessionLocal()
        session_created = True

    try:
        result = await db.execute(select(PushSubscription).where(PushSubscription.id == sid))
        row = result.scalar_one_or_none()
        if not row:
            return None
        sub = row.to_domain()
        cache_subscription(sub)
        return sub
    finally:
        if session_created:
            await db.close()


def invalidate_subscription(subscription_id: SubscriptionId) -> None:
    """
    Remove a subscription's cache entry (e.g. on delete).
    """
    try:
        redis_conn.delete(_make_key(subscription_id))
    except redis.RedisError as exc:
        logger.debug(f"Could not invalidate cached subscription {subscription_id}: {exc}")
