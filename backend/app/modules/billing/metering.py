"""Usage metering: per-user monthly counters checked against plan limits.

Counters live in one UsageRecord row per user and calendar month. Inventory
counters (contacts, templates, team members, numbers) carry over as standing
totals; campaign and message counters are renewable and reset per period.
"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, CacheKeys
from app.core.config import settings
from app.core.metrics import USAGE_LIMIT_DENIALS_TOTAL
from app.core.time import month_key, utcnow
from app.modules.billing.catalog import PlanCatalog, limits_by_resource
from app.modules.billing.exceptions import NotFoundError, ValidationError
from app.modules.billing.models import (
    LIMIT_COLUMNS,
    USAGE_COLUMNS,
    UsageRecord,
    UsageResourceType,
)
from app.modules.billing.repository import SubscriptionRepository, UsageRepository
from app.modules.billing.schemas import (
    CurrentUsageResponse,
    LimitCheckResult,
    MessageBreakdown,
    ResourceUsage,
    UsageRecordResponse,
)

logger = logging.getLogger(__name__)

UNLIMITED = -1
MAX_HISTORY_MONTHS = 24


def parse_resource_type(value) -> UsageResourceType:
    """Coerce a raw tag to a UsageResourceType.

    Raises:
        ValidationError: If the tag names no metered resource
    """
    if isinstance(value, UsageResourceType):
        return value
    try:
        return UsageResourceType(str(value).lower())
    except ValueError:
        raise ValidationError(f"Invalid resource type: {value}")


def evaluate_limit(current: int, limit: Optional[int]) -> tuple[bool, int]:
    """Return ``(can_proceed, remaining)`` for a counter against a limit.

    A ``None`` limit is unlimited: always allowed, remaining reported as -1.
    """
    if limit is None:
        return True, UNLIMITED
    return current < limit, max(0, limit - current)


class UsageMeter:
    """Tracks monthly consumption and answers pre-flight limit checks."""

    def __init__(self, session: AsyncSession, cache: Cache):
        self.session = session
        self.cache = cache
        self.usage_repo = UsageRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.catalog = PlanCatalog(session, cache)

    # ==================== Monthly Records ====================

    async def get_or_create_monthly_usage(
        self,
        user_id: uuid.UUID,
        subscription_id: uuid.UUID,
        now: Optional[datetime] = None,
        commit: bool = True,
    ) -> UsageRecord:
        """Return this month's record, creating it with zeroed counters if absent.

        A concurrent creator wins on the (user, month) unique constraint; the
        loser re-reads the winner's row.
        """
        month_year = month_key(now or utcnow())
        record = await self.usage_repo.get(user_id, month_year)
        if record is not None:
            return record

        try:
            async with self.session.begin_nested():
                record = await self.usage_repo.create(
                    user_id=user_id,
                    subscription_id=subscription_id,
                    month_year=month_year,
                )
        except IntegrityError:
            record = await self.usage_repo.get(user_id, month_year)

        if commit:
            await self.session.commit()
            await self._invalidate(user_id, month_year)
        logger.debug(
            "Monthly usage record ready",
            extra={"user_id": str(user_id), "month_year": month_year},
        )
        return record

    async def get_monthly_usage(
        self, user_id: uuid.UUID, month_year: Optional[str] = None
    ) -> Optional[UsageRecordResponse]:
        month_year = month_year or month_key(utcnow())
        key = CacheKeys.usage(user_id, month_year)
        cached = await self.cache.get(key)
        if cached is not None:
            return UsageRecordResponse.model_validate(cached)

        record = await self.usage_repo.get(user_id, month_year)
        if record is None:
            return None
        response = UsageRecordResponse.model_validate(record)
        await self.cache.set(key, response.model_dump(mode="json"), settings.USAGE_CACHE_TTL)
        return response

    # ==================== Counters ====================

    async def increment_usage(
        self, user_id: uuid.UUID, resource_type, count: int = 1
    ) -> UsageRecordResponse:
        """Add ``count`` to a counter for the current month.

        Raises:
            ValidationError: Unknown resource type or non-positive count
            NotFoundError: The user has no active subscription
        """
        return await self._adjust(user_id, resource_type, count, sign=1)

    async def decrement_usage(
        self, user_id: uuid.UUID, resource_type, count: int = 1
    ) -> UsageRecordResponse:
        """Subtract ``count`` from a counter, never going below zero."""
        return await self._adjust(user_id, resource_type, count, sign=-1)

    async def _adjust(
        self, user_id: uuid.UUID, resource_type, count: int, sign: int
    ) -> UsageRecordResponse:
        resource = parse_resource_type(resource_type)
        if count < 1:
            raise ValidationError("Count must be a positive integer")
        delta = sign * count

        subscription = await self.subscription_repo.get_active(user_id, utcnow())
        if subscription is None:
            raise NotFoundError("No active subscription found")

        record = await self.get_or_create_monthly_usage(
            user_id, subscription.id, commit=False
        )
        await self.usage_repo.adjust(user_id, record.month_year, resource, delta)
        await self.session.commit()
        await self._invalidate(user_id, record.month_year)

        updated = await self.usage_repo.get(user_id, record.month_year)
        logger.debug(
            "Usage adjusted",
            extra={
                "user_id": str(user_id),
                "resource_type": resource.value,
                "delta": delta,
                "value": updated.get_count(resource),
            },
        )
        return UsageRecordResponse.model_validate(updated)

    async def set_usage(
        self, user_id: uuid.UUID, resource_type, value: int
    ) -> UsageRecordResponse:
        """Overwrite a counter for the current month (administrative correction)."""
        resource = parse_resource_type(resource_type)
        if value < 0:
            raise ValidationError("Usage value cannot be negative")

        subscription = await self.subscription_repo.get_active(user_id, utcnow())
        if subscription is None:
            raise NotFoundError("No active subscription found")

        record = await self.get_or_create_monthly_usage(
            user_id, subscription.id, commit=False
        )
        await self.usage_repo.set_value(user_id, record.month_year, resource, value)
        await self.session.commit()
        await self._invalidate(user_id, record.month_year)

        logger.info(
            "Usage counter overwritten",
            extra={"user_id": str(user_id), "resource_type": resource.value, "value": value},
        )
        updated = await self.usage_repo.get(user_id, record.month_year)
        return UsageRecordResponse.model_validate(updated)

    async def reset_monthly_counters(
        self, user_id: uuid.UUID, commit: bool = True
    ) -> bool:
        """Zero the renewable counters of the current month.

        Returns False when the user has no record for this month.
        """
        month_year = month_key(utcnow())
        reset = await self.usage_repo.reset_renewable(user_id, month_year, utcnow())
        if commit:
            await self.session.commit()
            await self._invalidate(user_id, month_year)
        if reset:
            logger.info(
                "Monthly usage counters reset",
                extra={"user_id": str(user_id), "month_year": month_year},
            )
        return reset

    # ==================== Limits ====================

    async def check_limit(self, user_id: uuid.UUID, resource_type) -> LimitCheckResult:
        """Pre-flight check whether the user may consume one more unit.

        Users without an active subscription may not proceed.

        Raises:
            ValidationError: Unknown resource type, or one without a plan limit
        """
        resource = parse_resource_type(resource_type)
        if resource not in LIMIT_COLUMNS:
            raise ValidationError(f"Resource type {resource.value} has no plan limit")

        subscription = await self.subscription_repo.get_active(user_id, utcnow())
        if subscription is None:
            USAGE_LIMIT_DENIALS_TOTAL.labels(resource_type=resource.value).inc()
            return LimitCheckResult(
                resource_type=resource, can_proceed=False, current=0, limit=0, remaining=0
            )

        limits = await self._limits_for(subscription.plan_id)
        usage = await self.get_monthly_usage(user_id)
        current = getattr(usage, USAGE_COLUMNS[resource]) if usage else 0
        limit = limits.get(resource)
        can_proceed, remaining = evaluate_limit(current, limit)

        if not can_proceed:
            USAGE_LIMIT_DENIALS_TOTAL.labels(resource_type=resource.value).inc()
            logger.info(
                "Usage limit reached",
                extra={
                    "user_id": str(user_id),
                    "resource_type": resource.value,
                    "current": current,
                    "limit": limit,
                },
            )
        return LimitCheckResult(
            resource_type=resource,
            can_proceed=can_proceed,
            current=current,
            limit=limit,
            remaining=remaining,
        )

    async def get_current_usage(self, user_id: uuid.UUID) -> CurrentUsageResponse:
        """Counters, limits and remaining headroom for the current month."""
        subscription = await self.subscription_repo.get_active(user_id, utcnow())
        if subscription is None:
            raise NotFoundError("No active subscription found")

        record = await self.get_or_create_monthly_usage(user_id, subscription.id)
        usage = await self.get_monthly_usage(user_id, record.month_year)
        limits = await self._limits_for(subscription.plan_id)

        resources = {}
        for resource in LIMIT_COLUMNS:
            current = getattr(usage, USAGE_COLUMNS[resource])
            limit = limits.get(resource)
            _, remaining = evaluate_limit(current, limit)
            resources[resource] = ResourceUsage(current=current, limit=limit, remaining=remaining)

        return CurrentUsageResponse(
            month_year=usage.month_year,
            subscription_id=subscription.id,
            resources=resources,
            message_breakdown=MessageBreakdown(
                marketing=usage.marketing_messages,
                utility=usage.utility_messages,
                auth=usage.auth_messages,
            ),
            last_reset_date=usage.last_reset_date,
        )

    async def get_usage_history(
        self, user_id: uuid.UUID, months: int = settings.USAGE_HISTORY_DEFAULT_MONTHS
    ) -> list[UsageRecordResponse]:
        """The last ``months`` monthly records, most recent first."""
        if months < 1 or months > MAX_HISTORY_MONTHS:
            raise ValidationError(f"Months must be between 1 and {MAX_HISTORY_MONTHS}")
        records = await self.usage_repo.list_history(user_id, months)
        return [UsageRecordResponse.model_validate(record) for record in records]

    # ==================== Helpers ====================

    async def _limits_for(self, plan_id: uuid.UUID) -> dict[UsageResourceType, Optional[int]]:
        # Plans retired after purchase still bound their subscribers
        plan = await self.catalog.find_by_id(plan_id, include_inactive=True)
        if plan is None:
            raise NotFoundError("Plan not found")
        return limits_by_resource(plan.limits)

    async def invalidate(self, user_id: uuid.UUID, month_year: Optional[str] = None) -> None:
        await self._invalidate(user_id, month_year or month_key(utcnow()))

    async def _invalidate(self, user_id: uuid.UUID, month_year: str) -> None:
        await self.cache.delete(CacheKeys.usage(user_id, month_year))
