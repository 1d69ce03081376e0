"""Billing module.

Plan catalog, promo codes, usage metering, subscription lifecycle and the
transaction log.
"""

from app.modules.billing.router import router
from app.modules.billing.service import BillingService
from app.modules.billing.models import (
    BillingCycle,
    Plan,
    PromoCode,
    PromoUsage,
    Subscription,
    SubscriptionStatus,
    Transaction,
    UsageRecord,
    UsageResourceType,
)

__all__ = [
    "router",
    "BillingService",
    "BillingCycle",
    "Plan",
    "PromoCode",
    "PromoUsage",
    "Subscription",
    "SubscriptionStatus",
    "Transaction",
    "UsageRecord",
    "UsageResourceType",
]
