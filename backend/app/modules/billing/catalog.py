"""Plan catalog: read-mostly plan reference data behind the cache."""

import logging
import uuid
from decimal import Decimal
from typing import Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, CacheKeys
from app.core.config import settings
from app.modules.billing.exceptions import ConflictError, NotFoundError, ValidationError
from app.modules.billing.models import (
    LIMIT_COLUMNS,
    BillingCycle,
    Plan,
    PlanFeature,
    UsageResourceType,
)
from app.modules.billing.repository import PlanRepository
from app.modules.billing.schemas import (
    MessagePricing,
    PlanCreate,
    PlanFeatures,
    PlanLimits,
    PlanPricing,
    PlanResponse,
    PlanUpdate,
    PricingResponse,
    to_money,
)

logger = logging.getLogger(__name__)

# Columns an admin may clear to NULL (limits: NULL = unlimited)
_NULLABLE_PLAN_FIELDS = frozenset(LIMIT_COLUMNS.values()) | {"plan_description"}


def parse_billing_cycle(value) -> BillingCycle:
    """Coerce a raw value to a BillingCycle.

    Raises:
        ValidationError: If the value is not MONTHLY, YEARLY or LIFETIME
    """
    if isinstance(value, BillingCycle):
        return value
    try:
        return BillingCycle(str(value).upper())
    except ValueError:
        raise ValidationError(
            "Valid billing cycle is required (MONTHLY, YEARLY, or LIFETIME)"
        )


def price_for_cycle(plan: PlanResponse, cycle: BillingCycle) -> Decimal:
    prices = {
        BillingCycle.MONTHLY: plan.pricing.monthly,
        BillingCycle.YEARLY: plan.pricing.yearly,
        BillingCycle.LIFETIME: plan.pricing.lifetime,
    }
    return prices[cycle]


class PlanCatalog:
    """Plan lookups and admin maintenance.

    Public reads only see active plans and are served from the cache; admin
    writes invalidate the whole ``plans:*`` namespace plus the plan's own keys.
    """

    def __init__(self, session: AsyncSession, cache: Cache):
        self.session = session
        self.cache = cache
        self.plan_repo = PlanRepository(session)

    # ==================== Reads ====================

    async def list_active_plans(self) -> list[PlanResponse]:
        cached = await self.cache.get(CacheKeys.ALL_ACTIVE_PLANS)
        if cached is not None:
            return [PlanResponse.model_validate(item) for item in cached]

        plans = [self._to_response(plan) for plan in await self.plan_repo.list_offered()]
        await self.cache.set(
            CacheKeys.ALL_ACTIVE_PLANS,
            [plan.model_dump(mode="json") for plan in plans],
            settings.PLAN_CACHE_TTL,
        )
        return plans

    async def list_all_plans(self) -> list[PlanResponse]:
        """Admin view including inactive and hidden plans. Never cached."""
        return [self._to_response(plan) for plan in await self.plan_repo.list_all()]

    async def find_by_id(
        self, plan_id: uuid.UUID, include_inactive: bool = False
    ) -> Optional[PlanResponse]:
        """Plan by id. Only active plans are cached.

        ``include_inactive`` also returns retired plans, for rows that still
        reference a plan withdrawn after purchase.
        """
        key = CacheKeys.plan(plan_id)
        cached = await self.cache.get(key)
        if cached is not None:
            return PlanResponse.model_validate(cached)

        plan = await self.plan_repo.get_by_id(plan_id, include_inactive=include_inactive)
        if plan is None:
            return None
        response = self._to_response(plan)
        if plan.is_active:
            await self.cache.set(key, response.model_dump(mode="json"), settings.PLAN_CACHE_TTL)
        return response

    async def find_by_code(self, code: str) -> Optional[PlanResponse]:
        key = CacheKeys.plan_code(code)
        cached = await self.cache.get(key)
        if cached is not None:
            return PlanResponse.model_validate(cached)

        plan = await self.plan_repo.get_by_code(code)
        if plan is None:
            return None
        response = self._to_response(plan)
        await self.cache.set(key, response.model_dump(mode="json"), settings.PLAN_CACHE_TTL)
        return response

    async def get_plan(self, plan_id: uuid.UUID) -> PlanResponse:
        plan = await self.find_by_id(plan_id)
        if plan is None:
            raise NotFoundError("Plan not found")
        return plan

    async def get_pricing(self, plan_id: uuid.UUID, billing_cycle) -> PricingResponse:
        """Price of one period of ``billing_cycle`` for a plan.

        Raises:
            ValidationError: Unsupported billing cycle
            NotFoundError: Unknown or inactive plan
        """
        cycle = parse_billing_cycle(billing_cycle)
        plan = await self.get_plan(plan_id)
        return PricingResponse(
            plan_id=plan.id,
            plan_name=plan.name,
            billing_cycle=cycle,
            amount=price_for_cycle(plan, cycle),
            currency=settings.CURRENCY,
        )

    async def has_feature(self, plan_id: uuid.UUID, feature: PlanFeature) -> bool:
        plan = await self.find_by_id(plan_id)
        if plan is None:
            return False
        return bool(getattr(plan.features, feature.value))

    async def get_limits(self, plan_id: uuid.UUID) -> dict[UsageResourceType, Optional[int]]:
        """Per-resource limits for a plan; None means unlimited."""
        plan = await self.get_plan(plan_id)
        return limits_by_resource(plan.limits)

    async def compare(self, plan_ids: Sequence[uuid.UUID]) -> list[PlanResponse]:
        """Side-by-side view of several plans. Unknown ids are skipped."""
        plans = await self.plan_repo.get_many(list(dict.fromkeys(plan_ids)))
        return [self._to_response(plan) for plan in plans]

    # ==================== Admin ====================

    async def create_plan(self, data: PlanCreate) -> PlanResponse:
        try:
            plan = await self.plan_repo.create(**data.model_dump())
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError(f"Plan code {data.plan_code} already exists")

        await self._invalidate(plan)
        logger.info("Plan created", extra={"plan_id": str(plan.id), "plan_code": plan.plan_code})
        return self._to_response(plan)

    async def update_plan(self, plan_id: uuid.UUID, data: PlanUpdate) -> PlanResponse:
        plan = await self.plan_repo.get_by_id(plan_id, include_inactive=True)
        if plan is None:
            raise NotFoundError("Plan not found")

        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in _NULLABLE_PLAN_FIELDS
        }
        if not changes:
            raise ValidationError("No fields to update")

        await self.plan_repo.update(plan, **changes)
        await self.session.commit()

        await self._invalidate(plan)
        logger.info(
            "Plan updated",
            extra={"plan_id": str(plan.id), "fields": sorted(changes)},
        )
        return self._to_response(plan)

    async def _invalidate(self, plan: Plan) -> None:
        await self.cache.delete_pattern(f"{CacheKeys.PLANS_PREFIX}*")
        await self.cache.delete(CacheKeys.plan(plan.id))
        await self.cache.delete(CacheKeys.plan_code(plan.plan_code))

    # ==================== Helpers ====================

    def _to_response(self, plan: Plan) -> PlanResponse:
        return PlanResponse(
            id=plan.id,
            code=plan.plan_code,
            name=plan.plan_name,
            description=plan.plan_description,
            type=plan.plan_type,
            pricing=PlanPricing(
                monthly=plan.monthly_price,
                yearly=plan.yearly_price,
                lifetime=plan.lifetime_price,
                currency=settings.CURRENCY,
            ),
            limits=PlanLimits(
                contacts=plan.max_contacts,
                templates=plan.max_templates,
                campaigns_per_month=plan.max_campaigns_per_month,
                messages_per_month=plan.max_messages_per_month,
                team_members=plan.max_team_members,
                whatsapp_numbers=plan.max_whatsapp_numbers,
            ),
            features=PlanFeatures(
                **{feature.value: plan.has_feature(feature) for feature in PlanFeature}
            ),
            message_pricing=MessagePricing(
                marketing=to_money(plan.marketing_message_price),
                utility=to_money(plan.utility_message_price),
                auth=to_money(plan.auth_message_price),
                currency=settings.CURRENCY,
            ),
            is_active=plan.is_active,
            is_visible=plan.is_visible,
            display_order=plan.display_order,
        )


def limits_by_resource(limits: PlanLimits) -> dict[UsageResourceType, Optional[int]]:
    return {
        UsageResourceType.CONTACTS: limits.contacts,
        UsageResourceType.TEMPLATES: limits.templates,
        UsageResourceType.CAMPAIGNS: limits.campaigns_per_month,
        UsageResourceType.MESSAGES: limits.messages_per_month,
        UsageResourceType.TEAM_MEMBERS: limits.team_members,
        UsageResourceType.NUMBERS: limits.whatsapp_numbers,
    }
