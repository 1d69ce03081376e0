"""Run the billing sweeps once, outside Celery.

Usage:
    cd backend
    python -m scripts.run_billing_tasks
"""

import asyncio

from app.core.cache import get_cache
from app.core.database import async_session_maker
from app.modules.billing.tasks import (
    expire_overdue_subscriptions,
    notify_expiring_subscriptions,
    renew_due_subscriptions,
)


async def main():
    print("\n" + "=" * 60)
    print("Running Billing Background Tasks")
    print("=" * 60)

    cache = get_cache()
    async with async_session_maker() as session:
        renewals = await renew_due_subscriptions(session, cache)
        expired = await expire_overdue_subscriptions(session, cache)
        reminders = await notify_expiring_subscriptions(session, cache)

    print("\nResults:")
    print(f"  Subscriptions renewed: {renewals['renewed']}")
    print(f"  Renewals failed: {renewals['failed']}")
    print(f"  Subscriptions expired: {expired}")
    print(f"  Expiry reminders: {reminders}")


if __name__ == "__main__":
    asyncio.run(main())
