import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple, Union
import uuid

from webpush_service.cache.subscription_cache import get_subscription
from webpush_service.config import RetryPolicy, Settings, load_settings
from webpush_service.db.session import async_engine
from webpush_service.db.subscription_store import SqlAlchemySubscriptionStore
from webpush_service.push.dispatcher import DispatchReport, PushDispatcher
from webpush_service.push.types import DeliveryOutcome, DeliveryResult, NotificationPayload
from webpush_service.queue.redis_conn import dispatch_queue

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TARGET_USER = "user"
TARGET_TOPIC = "topic"
TARGET_ALL = "all"

_context: Optional[Tuple[Settings, PushDispatcher]] = None


def get_worker_context() -> Tuple[Settings, PushDispatcher]:
    """Settings and dispatcher for this worker process, built on first use."""
    global _context
    if _context is None:
        settings = load_settings()
        _context = (settings, PushDispatcher.from_settings(settings, SqlAlchemySubscriptionStore()))
    return _context


def retry_delay(result: DeliveryResult, attempt: int, policy: RetryPolicy) -> int:
    if result.outcome is DeliveryOutcome.RATE_LIMITED and result.retry_after is not None:
        return result.retry_after
    return policy.delay_for(attempt)


def schedule_retries(
    report: DispatchReport,
    payload: Dict[str, Any],
    attempt: int,
    policy: RetryPolicy,
) -> int:
    """
    Re-enqueue RateLimited and TransientFailure deliveries while attempts
    remain. Returns the number of redeliveries scheduled.
    """
    if attempt >= policy.max_attempts:
        return 0
    scheduled = 0
    for result in report.results:
        if not result.retryable or result.subscription_id is None:
            continue
        delay = retry_delay(result, attempt, policy)
        dispatch_queue.enqueue_in(
            timedelta(seconds=delay),
            process_redelivery_sync,
            str(result.subscription_id),  # Pass as string for consistency
            payload,
            attempt + 1,
        )
        scheduled += 1
    if scheduled:
        logger.info(f"Scheduled {scheduled} redelivery job(s) for attempt {attempt + 1}")
    return scheduled


async def process_dispatch(
    target_type: str,
    target: Optional[str],
    payload: Dict[str, Any],
    dispatcher: Optional[PushDispatcher] = None,
    retry: Optional[RetryPolicy] = None,
) -> int:
    """
    1) Resolve active subscriptions for the target.
    2) Fan the notification out through the dispatcher.
    3) Schedule redelivery for retryable failures if the policy allows.
    """
    if dispatcher is None or retry is None:
        settings, default_dispatcher = get_worker_context()
        dispatcher = dispatcher or default_dispatcher
        retry = retry or settings.retry

    notification = NotificationPayload.from_dict(payload)
    store = dispatcher.store

    if target_type == TARGET_USER:
        subscriptions = await store.find_active_by_user(target)
    elif target_type == TARGET_TOPIC:
        subscriptions = await store.find_active_by_topic(target)
    elif target_type == TARGET_ALL:
        subscriptions = await store.find_active()
    else:
        raise ValueError(f"Unknown dispatch target type: {target_type!r}")

    report = await dispatcher.dispatch(subscriptions, notification)
    schedule_retries(report, payload, 1, retry)
    return report.sent_count


async def process_redelivery(
    subscription_id: Union[str, uuid.UUID],
    payload: Dict[str, Any],
    attempt: int,
    dispatcher: Optional[PushDispatcher] = None,
    retry: Optional[RetryPolicy] = None,
) -> bool:
    """
    Deliver once more to a single subscription. The subscription is re-read
    (cache first) so one deleted or expired meanwhile is dropped.
    """
    if dispatcher is None or retry is None:
        settings, default_dispatcher = get_worker_context()
        dispatcher = dispatcher or default_dispatcher
        retry = retry or settings.retry

    subscription = await get_subscription(subscription_id)
    if not subscription:
        logger.info(f"[Redelivery] Sub {subscription_id} not found, dropping job")
        return False

    result = await dispatcher.deliver_one(subscription, NotificationPayload.from_dict(payload))
    if result is None:
        logger.info(f"[Redelivery] Sub {subscription_id} no longer eligible, dropping job")
        return False
    if result.retryable:
        schedule_retries(DispatchReport(results=[result]), payload, attempt, retry)
    return result.delivered


def _run(coro):
    """Run a coroutine on a fresh event loop, for RQ worker compatibility."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        # Pooled connections are bound to this loop.
        loop.run_until_complete(async_engine.dispose())
        loop.close()


def process_dispatch_sync(target_type: str, target: Optional[str], payload: Dict[str, Any]) -> int:
    """Synchronous wrapper for RQ worker compatibility."""
    return _run(process_dispatch(target_type, target, payload))


def process_redelivery_sync(
    subscription_id: Union[str, uuid.UUID], payload: Dict[str, Any], attempt: int
) -> bool:
    """Synchronous wrapper for RQ worker compatibility."""
    return _run(process_redelivery(subscription_id, payload, attempt))
