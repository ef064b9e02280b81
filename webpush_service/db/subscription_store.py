import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from webpush_service.cache.subscription_cache import cache_subscription, invalidate_subscription
from webpush_service.db.session import AsyncSessionLocal
from webpush_service.models.subscription import PushSubscription
from webpush_service.push.types import DEFAULT_TOPIC, Subscription, utcnow


def _active(now: datetime):
    return or_(PushSubscription.expires_at.is_(None), PushSubscription.expires_at > now)


class SqlAlchemySubscriptionStore:
    """
    PostgreSQL-backed subscription storage.

    Each call opens and commits its own session, so concurrent delivery
    tasks never share one. Pass ``session`` to run everything inside a
    caller-managed transaction instead (changes are flushed, not committed).
    """

    def __init__(self, session_factory=AsyncSessionLocal, session: Optional[AsyncSession] = None):
        self.session_factory = session_factory
        self.session = session

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        if self.session is not None:
            yield self.session
            await self.session.flush()
            return
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def _find(self, *criteria) -> List[Subscription]:
        async with self._session() as session:
            result = await session.execute(
                select(PushSubscription).where(_active(utcnow()), *criteria)
            )
            return [row.to_domain() for row in result.scalars().all()]

    async def find_active_by_user(self, user_id: str) -> List[Subscription]:
        return await self._find(PushSubscription.user_id == user_id)

    async def find_active(self) -> List[Subscription]:
        return await self._find()

    async def find_active_by_topic(self, topic: str) -> List[Subscription]:
        return await self._find(PushSubscription.topic == topic)

    async def delete(self, subscription_id: uuid.UUID) -> None:
        async with self._session() as session:
            await session.execute(
                delete(PushSubscription).where(PushSubscription.id == subscription_id)
            )
        invalidate_subscription(subscription_id)

    async def touch_last_used(self, subscription_id: uuid.UUID, timestamp: datetime) -> None:
        async with self._session() as session:
            await session.execute(
                update(PushSubscription)
                .where(PushSubscription.id == subscription_id)
                # Pin updated_at so the column onupdate does not fire for a usage stamp.
                .values(last_used_at=timestamp, updated_at=PushSubscription.updated_at)
            )

    async def get(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        async with self._session() as session:
            row = await session.get(PushSubscription, subscription_id)
            return row.to_domain() if row else None

    async def list_subscriptions(
        self, user_id: Optional[str] = None, skip: int = 0, limit: int = 100
    ) -> List[Subscription]:
        stmt = select(PushSubscription)
        if user_id is not None:
            stmt = stmt.where(PushSubscription.user_id == user_id)
        stmt = stmt.order_by(PushSubscription.created_at.desc()).offset(skip).limit(limit)
        async with self._session() as session:
            result = await session.execute(stmt)
            return [row.to_domain() for row in result.scalars().all()]

    async def upsert(
        self,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_id: Optional[str] = None,
        topic: Optional[str] = None,
        device_info: Optional[Dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[Subscription, bool]:
        """
        Register an endpoint, updating the existing row when the endpoint is
        already known. Returns the subscription and whether it was created.
        """
        async with self._session() as session:
            result = await session.execute(
                select(PushSubscription).where(PushSubscription.endpoint == endpoint)
            )
            row = result.scalar_one_or_none()
            created = row is None
            if created:
                row = PushSubscription(endpoint=endpoint, user_id=user_id)
                session.add(row)
            elif user_id is not None:
                row.user_id = user_id
            row.p256dh = p256dh
            row.auth = auth
            row.topic = topic or DEFAULT_TOPIC
            row.device_info = device_info or {}
            row.expires_at = expires_at
            await session.flush()
            await session.refresh(row)
            sub = row.to_domain()

        cache_subscription(sub)
        return sub, created

    async def delete_by_endpoint(self, endpoint: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                delete(PushSubscription)
                .where(PushSubscription.endpoint == endpoint)
                .returning(PushSubscription.id)
            )
            deleted_ids = list(result.scalars().all())
        for subscription_id in deleted_ids:
            invalidate_subscription(subscription_id)
        return bool(deleted_ids)

    async def purge_stale(
        self,
        now: datetime,
        expired_after_days: int,
        unused_after_days: int,
        dry_run: bool = False,
    ) -> int:
        """
        Delete subscriptions that expired more than ``expired_after_days``
        ago or have had no activity for ``unused_after_days``.
        """
        expired_cutoff = now - timedelta(days=expired_after_days)
        unused_cutoff = now - timedelta(days=unused_after_days)
        condition = or_(
            PushSubscription.expires_at < expired_cutoff,
            func.coalesce(PushSubscription.last_used_at, PushSubscription.updated_at)
            < unused_cutoff,
        )
        async with self._session() as session:
            stale_ids = list(
                (await session.execute(select(PushSubscription.id).where(condition))).scalars().all()
            )
            if stale_ids and not dry_run:
                await session.execute(
                    delete(PushSubscription).where(PushSubscription.id.in_(stale_ids))
                )
        if not dry_run:
            for subscription_id in stale_ids:
                invalidate_subscription(subscription_id)
        return len(stale_ids)
