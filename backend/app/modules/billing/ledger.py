"""Subscription ledger: lifecycle of a user's subscription rows.

ACTIVE is the only non-terminal state. CANCELLED and EXPIRED rows are
history; a returning user gets a new row through checkout.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, CacheKeys
from app.core.config import settings
from app.core.metrics import SUBSCRIPTIONS_EXPIRED_TOTAL
from app.core.time import ensure_utc, utcnow
from app.modules.billing.exceptions import AuthorizationError, ConflictError, NotFoundError
from app.modules.billing.models import Subscription, SubscriptionStatus
from app.modules.billing.repository import PlanRepository, SubscriptionRepository
from app.modules.billing.schemas import Page, SubscriptionResponse

logger = logging.getLogger(__name__)


class SubscriptionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Subscription not found"):
        super().__init__(message)


class SubscriptionLedger:
    """Reads and state transitions for subscriptions."""

    def __init__(self, session: AsyncSession, cache: Cache):
        self.session = session
        self.cache = cache
        self.subscription_repo = SubscriptionRepository(session)
        self.plan_repo = PlanRepository(session)

    # ==================== Reads ====================

    async def get_active_subscription(
        self, user_id: uuid.UUID
    ) -> Optional[SubscriptionResponse]:
        """The user's ACTIVE subscription whose end date is null or in the future."""
        key = CacheKeys.active_subscription(user_id)
        cached = await self.cache.get(key)
        if cached is not None:
            response = SubscriptionResponse.model_validate(cached)
            if response.end_date is None or response.end_date > utcnow():
                return response
            await self.cache.delete(key)

        subscription = await self.subscription_repo.get_active(user_id, utcnow())
        if subscription is None:
            return None
        response = await self._to_response(subscription)
        await self.cache.set(key, response.model_dump(mode="json"), settings.SUBSCRIPTION_CACHE_TTL)
        return response

    async def get_subscription(
        self, subscription_id: uuid.UUID, user_id: Optional[uuid.UUID] = None
    ) -> SubscriptionResponse:
        """Fetch one subscription; when ``user_id`` is given it must own the row."""
        subscription = await self._get_owned(subscription_id, user_id)
        return await self._to_response(subscription)

    async def list_history(
        self, user_id: uuid.UUID, page: int = 1, limit: int = 10
    ) -> Page[SubscriptionResponse]:
        subscriptions = await self.subscription_repo.list_for_user(
            user_id, offset=(page - 1) * limit, limit=limit
        )
        total = await self.subscription_repo.count_for_user(user_id)
        return Page[SubscriptionResponse](
            items=[await self._to_response(s) for s in subscriptions],
            total=total,
            page=page,
            limit=limit,
        )

    async def count_by_status(self, user_id: uuid.UUID) -> dict[str, int]:
        counts = await self.subscription_repo.count_by_status(user_id)
        return {status.value: counts.get(status.value, 0) for status in SubscriptionStatus}

    async def get_expiring(self, days: int = settings.EXPIRY_REMINDER_DAYS) -> list[SubscriptionResponse]:
        """Auto-renewing subscriptions that end within ``days``."""
        now = utcnow()
        subscriptions = await self.subscription_repo.list_expiring(now, now + timedelta(days=days))
        return [await self._to_response(s) for s in subscriptions]

    # ==================== Transitions ====================

    async def cancel(
        self,
        subscription_id: uuid.UUID,
        user_id: Optional[uuid.UUID],
        reason: Optional[str] = None,
        cancelled_by: Optional[uuid.UUID] = None,
    ) -> SubscriptionResponse:
        """ACTIVE -> CANCELLED, stamping who, when and why; clears auto-renew.

        Raises:
            NotFoundError: Unknown subscription
            AuthorizationError: ``user_id`` does not own the subscription
            ConflictError: Subscription is already cancelled or expired
        """
        subscription = await self._get_owned(subscription_id, user_id)
        self._ensure_active(subscription)

        applied = await self.subscription_repo.transition(
            subscription_id,
            SubscriptionStatus.ACTIVE,
            status=SubscriptionStatus.CANCELLED.value,
            cancelled_at=utcnow(),
            cancellation_reason=reason,
            cancelled_by=cancelled_by or user_id,
            auto_renew=False,
        )
        if not applied:
            await self.session.rollback()
            raise ConflictError("Subscription is no longer active")
        await self.session.commit()
        await self.invalidate(subscription.user_id, subscription_id)

        logger.info(
            "Subscription cancelled",
            extra={
                "subscription_id": str(subscription_id),
                "user_id": str(subscription.user_id),
                "reason": reason,
            },
        )
        subscription = await self.subscription_repo.refresh(subscription_id)
        return await self._to_response(subscription)

    async def check_expiration(self, subscription_id: uuid.UUID) -> SubscriptionResponse:
        """Move an ACTIVE row past its end date to EXPIRED. LIFETIME rows never expire."""
        subscription = await self._get_owned(subscription_id, None)
        if subscription.status == SubscriptionStatus.ACTIVE.value and subscription.is_overdue():
            await self._expire(subscription)
            await self.session.commit()
            await self.invalidate(subscription.user_id, subscription_id)
            subscription = await self.subscription_repo.refresh(subscription_id)
        return await self._to_response(subscription)

    async def expire_overdue(
        self, user_id: Optional[uuid.UUID] = None, commit: bool = True
    ) -> list[Subscription]:
        """Expire every overdue ACTIVE row, optionally for one user only."""
        expired = []
        for subscription in await self.subscription_repo.list_overdue(utcnow(), user_id):
            if await self._expire(subscription):
                expired.append(subscription)

        if commit:
            await self.session.commit()
            for subscription in expired:
                await self.invalidate(subscription.user_id, subscription.id)
        return expired

    async def _expire(self, subscription: Subscription) -> bool:
        applied = await self.subscription_repo.transition(
            subscription.id,
            SubscriptionStatus.ACTIVE,
            status=SubscriptionStatus.EXPIRED.value,
            auto_renew=False,
        )
        if applied:
            SUBSCRIPTIONS_EXPIRED_TOTAL.inc()
            logger.info(
                "Subscription expired",
                extra={
                    "subscription_id": str(subscription.id),
                    "user_id": str(subscription.user_id),
                    "end_date": ensure_utc(subscription.end_date).isoformat(),
                },
            )
        return applied

    async def renew(
        self,
        subscription_id: uuid.UUID,
        new_end_date: datetime,
        next_billing_date: Optional[datetime],
        amount_paid: Decimal,
        commit: bool = True,
    ) -> Subscription:
        """Extend an ACTIVE row in place for another period.

        Raises:
            ConflictError: Row is terminal or LIFETIME
        """
        subscription = await self._get_owned(subscription_id, None)
        if subscription.is_lifetime():
            raise ConflictError("Lifetime subscriptions do not renew")
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise ConflictError(f"Cannot renew a {subscription.status.lower()} subscription")

        applied = await self.subscription_repo.transition(
            subscription_id,
            SubscriptionStatus.ACTIVE,
            end_date=new_end_date,
            next_billing_date=next_billing_date,
            amount_paid=amount_paid,
        )
        if not applied:
            raise ConflictError("Subscription is no longer active")

        if commit:
            await self.session.commit()
            await self.invalidate(subscription.user_id, subscription_id)
        logger.info(
            "Subscription renewed",
            extra={
                "subscription_id": str(subscription_id),
                "new_end_date": new_end_date.isoformat(),
            },
        )
        return await self.subscription_repo.refresh(subscription_id)

    async def toggle_auto_renew(
        self, subscription_id: uuid.UUID, user_id: uuid.UUID, auto_renew: bool
    ) -> SubscriptionResponse:
        """Owner-only switch of the auto-renew flag on an ACTIVE row."""
        subscription = await self._get_owned(subscription_id, user_id)
        self._ensure_active(subscription)

        applied = await self.subscription_repo.transition(
            subscription_id, SubscriptionStatus.ACTIVE, auto_renew=auto_renew
        )
        if not applied:
            await self.session.rollback()
            raise ConflictError("Subscription is no longer active")
        await self.session.commit()
        await self.invalidate(subscription.user_id, subscription_id)

        subscription = await self.subscription_repo.refresh(subscription_id)
        return await self._to_response(subscription)

    # ==================== Helpers ====================

    async def invalidate(self, user_id: uuid.UUID, subscription_id: Optional[uuid.UUID] = None) -> None:
        await self.cache.delete_pattern(CacheKeys.user_subscriptions_pattern(user_id))
        if subscription_id is not None:
            await self.cache.delete(CacheKeys.subscription(subscription_id))

    async def _get_owned(
        self, subscription_id: uuid.UUID, user_id: Optional[uuid.UUID]
    ) -> Subscription:
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError()
        if user_id is not None and subscription.user_id != user_id:
            raise AuthorizationError("You do not have access to this subscription")
        return subscription

    def _ensure_active(self, subscription: Subscription) -> None:
        if subscription.status == SubscriptionStatus.CANCELLED.value:
            raise ConflictError("Subscription is already cancelled")
        if subscription.status == SubscriptionStatus.EXPIRED.value or subscription.is_overdue():
            raise ConflictError("Subscription has already expired")

    async def _to_response(self, subscription: Subscription) -> SubscriptionResponse:
        response = SubscriptionResponse.model_validate(subscription)
        plan = await self.plan_repo.get_by_id(subscription.plan_id, include_inactive=True)
        if plan is not None:
            response.plan_name = plan.plan_name
            response.plan_code = plan.plan_code
        return response
