"""Repositories for billing database operations.

Repositories add and flush; committing is left to the calling component so
that several writes can share one transaction.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.time import utcnow
from app.modules.billing.models import (
    RENEWABLE_RESOURCES,
    USAGE_COLUMNS,
    BillingCycle,
    PaymentStatus,
    Plan,
    PromoCode,
    PromoUsage,
    Subscription,
    SubscriptionStatus,
    Transaction,
    UsageRecord,
    UsageResourceType,
)


class PlanRepository:
    """Repository for plan operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_offered(self) -> list[Plan]:
        """Active and visible plans in display order."""
        result = await self.session.execute(
            select(Plan)
            .where(Plan.is_active == True, Plan.is_visible == True)  # noqa: E712
            .order_by(Plan.display_order, Plan.plan_name)
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[Plan]:
        result = await self.session.execute(
            select(Plan).order_by(Plan.display_order, Plan.plan_name)
        )
        return list(result.scalars().all())

    async def get_by_id(
        self, plan_id: uuid.UUID, include_inactive: bool = False
    ) -> Optional[Plan]:
        query = select(Plan).where(Plan.id == plan_id)
        if not include_inactive:
            query = query.where(Plan.is_active == True)  # noqa: E712
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Optional[Plan]:
        result = await self.session.execute(
            select(Plan).where(Plan.plan_code == code, Plan.is_active == True)  # noqa: E712
        )
        return result.scalar_one_or_none()

    async def get_many(self, plan_ids: Sequence[uuid.UUID]) -> list[Plan]:
        if not plan_ids:
            return []
        result = await self.session.execute(
            select(Plan)
            .where(Plan.id.in_(plan_ids), Plan.is_active == True)  # noqa: E712
            .order_by(Plan.display_order)
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> Plan:
        plan = Plan(**kwargs)
        self.session.add(plan)
        await self.session.flush()
        return plan

    async def update(self, plan: Plan, **kwargs) -> Plan:
        for key, value in kwargs.items():
            setattr(plan, key, value)
        await self.session.flush()
        return plan


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Subscription:
        subscription = Subscription(**kwargs)
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def get_by_id(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        result = await self.session.execute(
            select(Subscription).where(Subscription.id == subscription_id)
        )
        return result.scalar_one_or_none()

    async def get_active(self, user_id: uuid.UUID, now: datetime) -> Optional[Subscription]:
        """ACTIVE row whose end date is null or after ``now``, newest first."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                or_(Subscription.end_date.is_(None), Subscription.end_date > now),
            )
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def refresh(self, subscription_id: uuid.UUID) -> Optional[Subscription]:
        """Re-read a row, overwriting any stale state in the identity map."""
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.id == subscription_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def transition(
        self,
        subscription_id: uuid.UUID,
        from_status: SubscriptionStatus,
        **values,
    ) -> bool:
        """Apply ``values`` only if the row is still in ``from_status``."""
        values["updated_at"] = utcnow()
        result = await self.session.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status == from_status.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_for_user(
        self, user_id: uuid.UUID, offset: int, limit: int
    ) -> list[Subscription]:
        result = await self.session.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_user(self, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(Subscription.id)).where(Subscription.user_id == user_id)
        )
        return result.scalar_one()

    async def count_by_status(self, user_id: uuid.UUID) -> dict[str, int]:
        result = await self.session.execute(
            select(Subscription.status, func.count(Subscription.id))
            .where(Subscription.user_id == user_id)
            .group_by(Subscription.status)
        )
        return {status: count for status, count in result.all()}

    async def list_overdue(
        self, now: datetime, user_id: Optional[uuid.UUID] = None
    ) -> list[Subscription]:
        """ACTIVE rows whose end date has passed. LIFETIME rows never match."""
        query = select(Subscription).where(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.end_date.is_not(None),
            Subscription.end_date < now,
        )
        if user_id is not None:
            query = query.where(Subscription.user_id == user_id)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_expiring(self, now: datetime, until: datetime) -> list[Subscription]:
        """Auto-renewing ACTIVE rows ending between ``now`` and ``until``."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew == True,  # noqa: E712
                Subscription.end_date.is_not(None),
                Subscription.end_date >= now,
                Subscription.end_date <= until,
            )
            .order_by(Subscription.end_date)
        )
        return list(result.scalars().all())

    async def list_due_for_renewal(self, now: datetime) -> list[Subscription]:
        """Auto-renewing ACTIVE rows whose next billing date has arrived."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.auto_renew == True,  # noqa: E712
                Subscription.billing_cycle != BillingCycle.LIFETIME.value,
                Subscription.next_billing_date.is_not(None),
                Subscription.next_billing_date <= now,
            )
            .order_by(Subscription.next_billing_date)
        )
        return list(result.scalars().all())


class PromoCodeRepository:
    """Repository for promo codes and their redemptions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, promo_id: uuid.UUID) -> Optional[PromoCode]:
        result = await self.session.execute(
            select(PromoCode).where(PromoCode.id == promo_id)
        )
        return result.scalar_one_or_none()

    async def get_by_code(self, code: str) -> Optional[PromoCode]:
        result = await self.session.execute(
            select(PromoCode).where(PromoCode.code == code.upper())
        )
        return result.scalar_one_or_none()

    async def lock(self, promo_id: uuid.UUID) -> Optional[PromoCode]:
        """Re-read the promo row under a row lock, refreshing the identity map."""
        result = await self.session.execute(
            select(PromoCode)
            .where(PromoCode.id == promo_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_all(self, offset: int, limit: int) -> list[PromoCode]:
        result = await self.session.execute(
            select(PromoCode)
            .order_by(PromoCode.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_all(self) -> int:
        result = await self.session.execute(select(func.count(PromoCode.id)))
        return result.scalar_one()

    async def list_redeemable(self, now: datetime) -> list[PromoCode]:
        """Active codes inside their window and under their global cap."""
        result = await self.session.execute(
            select(PromoCode)
            .where(
                PromoCode.is_active == True,  # noqa: E712
                PromoCode.valid_from <= now,
                PromoCode.valid_until >= now,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .order_by(PromoCode.created_at.desc())
        )
        return list(result.scalars().all())

    async def create(self, **kwargs) -> PromoCode:
        promo = PromoCode(**kwargs)
        self.session.add(promo)
        await self.session.flush()
        return promo

    async def update(self, promo: PromoCode, **kwargs) -> PromoCode:
        for key, value in kwargs.items():
            setattr(promo, key, value)
        await self.session.flush()
        return promo

    async def count_user_uses(self, promo_id: uuid.UUID, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(PromoUsage.id)).where(
                PromoUsage.promo_code_id == promo_id,
                PromoUsage.user_id == user_id,
            )
        )
        return result.scalar_one()

    async def increment_if_under_cap(self, promo_id: uuid.UUID) -> bool:
        """Add one use unless the global cap is reached. Returns whether it applied."""
        result = await self.session.execute(
            update(PromoCode)
            .where(
                PromoCode.id == promo_id,
                or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
            )
            .values(current_uses=PromoCode.current_uses + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def add_usage(self, **kwargs) -> PromoUsage:
        usage = PromoUsage(**kwargs)
        self.session.add(usage)
        await self.session.flush()
        return usage

    async def get_stats(self, promo_id: uuid.UUID) -> tuple[int, Decimal, int]:
        """(total uses, total discount granted, unique users) for a promo."""
        result = await self.session.execute(
            select(
                func.count(PromoUsage.id),
                func.coalesce(func.sum(PromoUsage.discount_amount), 0),
                func.count(func.distinct(PromoUsage.user_id)),
            ).where(PromoUsage.promo_code_id == promo_id)
        )
        total_uses, total_discount, unique_users = result.one()
        return total_uses, Decimal(str(total_discount)), unique_users


class UsageRepository:
    """Repository for monthly usage counters."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, user_id: uuid.UUID, month_year: str) -> Optional[UsageRecord]:
        result = await self.session.execute(
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id, UsageRecord.month_year == month_year)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create(self, **kwargs) -> UsageRecord:
        record = UsageRecord(**kwargs)
        self.session.add(record)
        await self.session.flush()
        return record

    async def list_history(self, user_id: uuid.UUID, months: int) -> list[UsageRecord]:
        result = await self.session.execute(
            select(UsageRecord)
            .where(UsageRecord.user_id == user_id)
            .order_by(UsageRecord.month_year.desc())
            .limit(months)
        )
        return list(result.scalars().all())

    async def adjust(
        self,
        user_id: uuid.UUID,
        month_year: str,
        resource: UsageResourceType,
        delta: int,
    ) -> None:
        """Add ``delta`` to one counter in a single statement, flooring at zero."""
        column = getattr(UsageRecord, USAGE_COLUMNS[resource])
        new_value = column + delta
        if delta < 0:
            new_value = case((column + delta < 0, 0), else_=column + delta)
        await self.session.execute(
            update(UsageRecord)
            .where(UsageRecord.user_id == user_id, UsageRecord.month_year == month_year)
            .values({USAGE_COLUMNS[resource]: new_value})
            .execution_options(synchronize_session=False)
        )

    async def set_value(
        self,
        user_id: uuid.UUID,
        month_year: str,
        resource: UsageResourceType,
        value: int,
    ) -> None:
        await self.session.execute(
            update(UsageRecord)
            .where(UsageRecord.user_id == user_id, UsageRecord.month_year == month_year)
            .values({USAGE_COLUMNS[resource]: value})
            .execution_options(synchronize_session=False)
        )

    async def reset_renewable(
        self, user_id: uuid.UUID, month_year: str, now: datetime
    ) -> bool:
        """Zero the per-period counters. Standing inventory is left untouched."""
        values = {USAGE_COLUMNS[resource]: 0 for resource in RENEWABLE_RESOURCES}
        values["last_reset_date"] = now
        result = await self.session.execute(
            update(UsageRecord)
            .where(UsageRecord.user_id == user_id, UsageRecord.month_year == month_year)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0


class TransactionRepository:
    """Repository for the append-only transaction log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(self, **kwargs) -> Transaction:
        transaction = Transaction(**kwargs)
        self.session.add(transaction)
        await self.session.flush()
        return transaction

    async def get_by_id(self, transaction_id: uuid.UUID) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def get_by_gateway_order_id(self, order_id: str) -> Optional[Transaction]:
        result = await self.session.execute(
            select(Transaction).where(Transaction.gateway_order_id == order_id)
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self, user_id: uuid.UUID, offset: int, limit: int
    ) -> list[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.user_id == user_id)
            .order_by(Transaction.created_at.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_user(self, user_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(func.count(Transaction.id)).where(Transaction.user_id == user_id)
        )
        return result.scalar_one()

    async def list_for_subscription(self, subscription_id: uuid.UUID) -> list[Transaction]:
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.subscription_id == subscription_id)
            .order_by(Transaction.created_at.desc())
        )
        return list(result.scalars().all())

    async def list_pending(self, older_than: Optional[datetime] = None) -> list[Transaction]:
        conditions = [Transaction.payment_status == PaymentStatus.PENDING.value]
        if older_than is not None:
            conditions.append(Transaction.created_at < older_than)
        result = await self.session.execute(
            select(Transaction).where(and_(*conditions)).order_by(Transaction.created_at)
        )
        return list(result.scalars().all())

    async def total_revenue(self, user_id: Optional[uuid.UUID] = None) -> Decimal:
        query = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.payment_status == PaymentStatus.SUCCESS.value
        )
        if user_id is not None:
            query = query.where(Transaction.user_id == user_id)
        result = await self.session.execute(query)
        return Decimal(str(result.scalar_one()))
