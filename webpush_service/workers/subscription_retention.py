import asyncio
import logging
import os
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from webpush_service.db.session import AsyncSessionLocal, async_engine
from webpush_service.db.subscription_store import SqlAlchemySubscriptionStore
from webpush_service.push.types import utcnow

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

EXPIRED_AFTER_DAYS = int(os.getenv("WEBPUSH_EXPIRED_AFTER_DAYS", "30"))
UNUSED_AFTER_DAYS = int(os.getenv("WEBPUSH_UNUSED_AFTER_DAYS", "90"))


async def purge_stale_subscriptions(
    db: Optional[AsyncSession] = None,
    now: Optional[datetime] = None,
    expired_after_days: int = EXPIRED_AFTER_DAYS,
    unused_after_days: int = UNUSED_AFTER_DAYS,
    dry_run: bool = False,
) -> int:
    """
    Delete subscriptions that expired long ago or have gone unused.
    Run this once a day (via cron, RQ scheduler, or docker-compose cron service).

    Args:
        db: Optional async SQLAlchemy session to use. If None, each store call
            opens and commits its own session.
        dry_run: Only count what would be deleted.
    """
    now = now or utcnow()
    store = SqlAlchemySubscriptionStore(session_factory=AsyncSessionLocal, session=db)
    try:
        count = await store.purge_stale(
            now,
            expired_after_days=expired_after_days,
            unused_after_days=unused_after_days,
            dry_run=dry_run,
        )
    except Exception:
        logger.exception("Error during subscription purge.")
        raise

    verb = "Would purge" if dry_run else "Purged"
    logger.info(
        f"{verb} {count} stale push subscription(s) "
        f"(expired > {expired_after_days}d, unused > {unused_after_days}d)"
    )
    return count


def purge_stale_subscriptions_sync(dry_run: bool = False) -> int:
    """
    Synchronous wrapper for RQ worker compatibility.
    This allows the async purge function to be called from RQ workers.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(purge_stale_subscriptions(dry_run=dry_run))
    finally:
        loop.run_until_complete(async_engine.dispose())
        loop.close()
