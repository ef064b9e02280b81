import uuid
from datetime import datetime
from typing import List, Protocol

from webpush_service.push.types import Subscription


class SubscriptionStore(Protocol):
    """
    The narrow contract the delivery engine needs from subscription storage.

    ``find_active*`` must exclude subscriptions whose ``expires_at`` is in
    the past. ``delete`` must be a no-op for an id that no longer exists.
    """

    async def find_active_by_user(self, user_id: str) -> List[Subscription]:
        ...

    async def find_active(self) -> List[Subscription]:
        ...

    async def find_active_by_topic(self, topic: str) -> List[Subscription]:
        ...

    async def delete(self, subscription_id: uuid.UUID) -> None:
        ...

    async def touch_last_used(self, subscription_id: uuid.UUID, timestamp: datetime) -> None:
        ...
