import logging
from datetime import datetime
from typing import Callable, Optional

from webpush_service.push.store import SubscriptionStore
from webpush_service.push.types import DeliveryOutcome, DeliveryResult, Subscription, utcnow

logger = logging.getLogger(__name__)


class SubscriptionLifecycleManager:
    """
    Applies the consequences of a delivery result to the subscription.

    This is the only place that mutates subscriptions as a side effect of
    delivery: Delivered touches ``last_used_at``, SubscriptionGone deletes
    the row, every other outcome is logged and leaves the row alone.
    """

    def __init__(
        self,
        store: SubscriptionStore,
        clock: Callable[[], datetime] = utcnow,
        log_deliveries: bool = True,
    ):
        self.store = store
        self.clock = clock
        self.log_deliveries = log_deliveries

    async def on_result(self, subscription: Subscription, result: DeliveryResult) -> None:
        outcome = result.outcome

        if outcome is DeliveryOutcome.DELIVERED:
            await self.store.touch_last_used(subscription.id, self.clock())
            if self.log_deliveries:
                logger.info(
                    f"Push notification sent to subscription {subscription.id} "
                    f"(status {result.status_code})"
                )
        elif outcome is DeliveryOutcome.SUBSCRIPTION_GONE:
            await self.store.delete(subscription.id)
            logger.info(
                f"Removed invalid push subscription {subscription.id} "
                f"(status {result.status_code})"
            )
        elif outcome is DeliveryOutcome.PAYLOAD_TOO_LARGE:
            logger.warning(f"Push payload too large for subscription {subscription.id}")
        elif outcome is DeliveryOutcome.RATE_LIMITED:
            logger.warning(
                f"Rate limited sending push to subscription {subscription.id}"
                + _retry_hint(result.retry_after)
            )
        else:
            logger.error(
                f"Push notification failed for subscription {subscription.id}: "
                f"{result.message or 'unknown error'}"
            )


def _retry_hint(retry_after: Optional[int]) -> str:
    if retry_after is None:
        return ""
    return f", retry after {retry_after}s"
