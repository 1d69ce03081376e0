"""Tests for the plan catalog."""

import uuid
from decimal import Decimal

import pytest

from app.core.cache import CacheKeys
from app.modules.billing.catalog import PlanCatalog
from app.modules.billing.exceptions import ConflictError, NotFoundError, ValidationError
from app.modules.billing.models import BillingCycle, PlanFeature, UsageResourceType
from app.modules.billing.schemas import PlanCreate, PlanUpdate


class TestReads:

    @pytest.mark.asyncio
    async def test_active_plans_exclude_hidden_and_inactive(self, session, cache, make_plan):
        await make_plan(plan_name="Second", display_order=2)
        await make_plan(plan_name="First", display_order=1)
        await make_plan(plan_name="Hidden", is_visible=False)
        await make_plan(plan_name="Retired", is_active=False)

        plans = await PlanCatalog(session, cache).list_active_plans()

        assert [plan.name for plan in plans] == ["First", "Second"]
        assert CacheKeys.ALL_ACTIVE_PLANS in cache.store

    @pytest.mark.asyncio
    async def test_cached_list_is_served_without_the_database(self, session, cache, make_plan):
        await make_plan(plan_name="Cached")
        catalog = PlanCatalog(session, cache)
        await catalog.list_active_plans()
        await make_plan(plan_name="Added later")

        plans = await catalog.list_active_plans()

        assert [plan.name for plan in plans] == ["Cached"]

    @pytest.mark.asyncio
    async def test_pricing_per_cycle(self, session, cache, make_plan):
        plan = await make_plan()
        catalog = PlanCatalog(session, cache)

        yearly = await catalog.get_pricing(plan.id, "yearly")

        assert yearly.billing_cycle == BillingCycle.YEARLY
        assert yearly.amount == Decimal("9999.00")
        assert yearly.currency == "INR"
        with pytest.raises(ValidationError):
            await catalog.get_pricing(plan.id, "WEEKLY")
        with pytest.raises(NotFoundError):
            await catalog.get_pricing(uuid.uuid4(), "MONTHLY")

    @pytest.mark.asyncio
    async def test_admin_listing_includes_inactive_and_hidden(self, session, cache, make_plan):
        await make_plan(plan_name="Live", display_order=1)
        await make_plan(plan_name="Hidden", is_visible=False, display_order=2)
        await make_plan(plan_name="Retired", is_active=False, display_order=3)

        plans = await PlanCatalog(session, cache).list_all_plans()

        assert [plan.name for plan in plans] == ["Live", "Hidden", "Retired"]
        assert CacheKeys.ALL_ACTIVE_PLANS not in cache.store

    @pytest.mark.asyncio
    async def test_find_by_code_is_cached(self, session, cache, make_plan):
        await make_plan(plan_code="GROWTH", plan_name="Growth")
        catalog = PlanCatalog(session, cache)

        found = await catalog.find_by_code("GROWTH")

        assert found.name == "Growth"
        assert CacheKeys.plan_code("GROWTH") in cache.store
        assert await catalog.find_by_code("MISSING") is None

    @pytest.mark.asyncio
    async def test_retired_plan_lookup_is_not_cached(self, session, cache, make_plan):
        plan = await make_plan(plan_name="Legacy", is_active=False)
        catalog = PlanCatalog(session, cache)

        assert await catalog.find_by_id(plan.id) is None
        found = await catalog.find_by_id(plan.id, include_inactive=True)

        assert found.name == "Legacy"
        assert found.is_active is False
        assert CacheKeys.plan(plan.id) not in cache.store

    @pytest.mark.asyncio
    async def test_inactive_plan_is_not_found(self, session, cache, make_plan):
        plan = await make_plan(is_active=False)

        with pytest.raises(NotFoundError):
            await PlanCatalog(session, cache).get_plan(plan.id)

    @pytest.mark.asyncio
    async def test_limits_and_features(self, session, cache, make_plan):
        plan = await make_plan(max_contacts=None, has_api_access=True)
        catalog = PlanCatalog(session, cache)

        limits = await catalog.get_limits(plan.id)

        assert limits[UsageResourceType.CONTACTS] is None
        assert limits[UsageResourceType.MESSAGES] == 100
        assert await catalog.has_feature(plan.id, PlanFeature.API_ACCESS) is True
        assert await catalog.has_feature(plan.id, PlanFeature.WHITE_LABEL) is False
        assert await catalog.has_feature(uuid.uuid4(), PlanFeature.API_ACCESS) is False

    @pytest.mark.asyncio
    async def test_compare_skips_unknown_ids(self, session, cache, make_plan):
        first = await make_plan(plan_name="A", display_order=1)
        second = await make_plan(plan_name="B", display_order=2)

        plans = await PlanCatalog(session, cache).compare(
            [second.id, uuid.uuid4(), first.id, second.id]
        )

        assert sorted(plan.name for plan in plans) == ["A", "B"]


class TestAdministration:

    @pytest.mark.asyncio
    async def test_create_and_duplicate_code(self, session, cache):
        catalog = PlanCatalog(session, cache)
        data = PlanCreate(
            plan_code="ENTERPRISE",
            plan_name="Enterprise",
            monthly_price=Decimal("4999"),
            max_contacts=-1,
        )

        plan = await catalog.create_plan(data)

        assert plan.code == "ENTERPRISE"
        assert plan.pricing.monthly == Decimal("4999.00")
        assert plan.limits.contacts is None
        with pytest.raises(ConflictError):
            await catalog.create_plan(data)

    @pytest.mark.asyncio
    async def test_update_invalidates_cached_entries(self, session, cache, make_plan):
        plan = await make_plan(plan_name="Old")
        catalog = PlanCatalog(session, cache)
        await catalog.list_active_plans()
        await catalog.get_plan(plan.id)

        updated = await catalog.update_plan(
            plan.id, PlanUpdate(plan_name="New", max_templates=-1)
        )

        assert updated.name == "New"
        assert updated.limits.templates is None
        assert CacheKeys.ALL_ACTIVE_PLANS not in cache.store
        assert CacheKeys.plan(plan.id) not in cache.store
        assert (await catalog.get_plan(plan.id)).name == "New"

    @pytest.mark.asyncio
    async def test_update_leaves_absent_fields_alone(self, session, cache, make_plan):
        plan = await make_plan(max_contacts=1000)

        updated = await PlanCatalog(session, cache).update_plan(
            plan.id, PlanUpdate(display_order=9)
        )

        assert updated.display_order == 9
        assert updated.limits.contacts == 1000

    @pytest.mark.asyncio
    async def test_empty_update_is_rejected(self, session, cache, make_plan):
        plan = await make_plan()

        with pytest.raises(ValidationError):
            await PlanCatalog(session, cache).update_plan(plan.id, PlanUpdate())
