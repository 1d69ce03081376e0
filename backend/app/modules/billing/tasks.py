"""Billing background tasks.

Scheduled sweeps for subscription expiry, renewal and expiry reminders. The
async bodies take a session and cache so they can run outside Celery.
"""

import asyncio
import logging
from datetime import timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, get_cache
from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.database import async_session_maker
from app.core.time import utcnow
from app.modules.billing.exceptions import BillingError
from app.modules.billing.ledger import SubscriptionLedger
from app.modules.billing.service import BillingService

logger = logging.getLogger(__name__)

# Rows due within this window are renewed ahead of the expiry sweep
RENEWAL_LOOKAHEAD = timedelta(hours=1)


async def expire_overdue_subscriptions(session: AsyncSession, cache: Cache) -> int:
    """Move every overdue ACTIVE subscription to EXPIRED.

    Returns:
        Number of subscriptions expired
    """
    ledger = SubscriptionLedger(session, cache)
    expired = await ledger.expire_overdue()
    if expired:
        logger.info("Expired overdue subscriptions", extra={"count": len(expired)})
    return len(expired)


async def renew_due_subscriptions(session: AsyncSession, cache: Cache) -> dict:
    """Renew auto-renewing subscriptions whose next billing date is due.

    A failed renewal is logged and skipped; the row stays ACTIVE until the
    expiry sweep picks it up.
    """
    service = BillingService(session, cache)
    due = await service.subscription_repo.list_due_for_renewal(utcnow() + RENEWAL_LOOKAHEAD)

    renewed, failed = 0, 0
    for subscription_id in [s.id for s in due]:
        try:
            await service.renew_subscription(subscription_id)
            renewed += 1
        except BillingError as e:
            await session.rollback()
            failed += 1
            logger.warning(
                "Subscription renewal failed",
                extra={"subscription_id": str(subscription_id), "reason": e.message},
            )

    logger.info("Renewal sweep finished", extra={"renewed": renewed, "failed": failed})
    return {"renewed": renewed, "failed": failed}


async def notify_expiring_subscriptions(
    session: AsyncSession, cache: Cache, days: int = settings.EXPIRY_REMINDER_DAYS
) -> int:
    """Log a reminder for each auto-renewing subscription ending within ``days``.

    Returns:
        Number of reminders emitted
    """
    now = utcnow()
    subscriptions = await SubscriptionLedger(session, cache).get_expiring(days)

    for subscription in subscriptions:
        end_date = subscription.end_date
        logger.info(
            "Subscription expiring soon",
            extra={
                "subscription_id": str(subscription.id),
                "user_id": str(subscription.user_id),
                "end_date": end_date.isoformat(),
                "days_remaining": max((end_date - now).days, 0),
            },
        )
    return len(subscriptions)


# ==================== Celery entry points ====================

async def _run_expire() -> int:
    async with async_session_maker() as session:
        return await expire_overdue_subscriptions(session, get_cache())


async def _run_renew() -> dict:
    async with async_session_maker() as session:
        return await renew_due_subscriptions(session, get_cache())


async def _run_notify() -> int:
    async with async_session_maker() as session:
        return await notify_expiring_subscriptions(session, get_cache())


@celery_app.task(name="billing.expire_overdue_subscriptions")
def expire_overdue_subscriptions_task() -> int:
    return asyncio.run(_run_expire())


@celery_app.task(name="billing.renew_due_subscriptions")
def renew_due_subscriptions_task() -> dict:
    return asyncio.run(_run_renew())


@celery_app.task(name="billing.notify_expiring_subscriptions")
def notify_expiring_subscriptions_task() -> int:
    return asyncio.run(_run_notify())
