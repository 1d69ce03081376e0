"""Tests for monthly usage counters and limit checks."""

import pytest

from app.core.cache import CacheKeys
from app.core.time import month_key, utcnow
from app.modules.billing.exceptions import NotFoundError, ValidationError
from app.modules.billing.metering import MAX_HISTORY_MONTHS, UNLIMITED, UsageMeter
from app.modules.billing.models import UsageResourceType
from app.modules.billing.repository import UsageRepository


class TestCounters:

    @pytest.mark.asyncio
    async def test_increment_creates_record_and_adds(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)

        await meter.increment_usage(user_id, UsageResourceType.CONTACTS, 3)
        usage = await meter.increment_usage(user_id, "contacts")

        assert usage.contacts_count == 4
        assert usage.subscription_id == subscription.id
        assert usage.month_year == month_key(utcnow())

    @pytest.mark.asyncio
    async def test_decrement_never_goes_below_zero(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)
        await meter.increment_usage(user_id, UsageResourceType.TEMPLATES, 2)

        usage = await meter.decrement_usage(user_id, UsageResourceType.TEMPLATES, 5)

        assert usage.templates_count == 0

    @pytest.mark.asyncio
    async def test_adjusting_invalidates_cached_usage(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)
        await meter.increment_usage(user_id, UsageResourceType.MESSAGES)
        await meter.get_monthly_usage(user_id)
        key = CacheKeys.usage(user_id, month_key(utcnow()))
        assert key in cache.store

        await meter.increment_usage(user_id, UsageResourceType.MESSAGES)

        assert key not in cache.store
        assert (await meter.get_monthly_usage(user_id)).messages_sent == 2

    @pytest.mark.asyncio
    async def test_message_categories_are_tracked_separately(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)

        await meter.increment_usage(user_id, UsageResourceType.MARKETING_MESSAGES, 4)
        usage = await meter.increment_usage(user_id, UsageResourceType.AUTH_MESSAGES, 1)

        assert usage.marketing_messages == 4
        assert usage.auth_messages == 1
        assert usage.utility_messages == 0
        assert usage.messages_sent == 0

    @pytest.mark.asyncio
    async def test_counters_require_active_subscription(self, session, cache, user_id):
        with pytest.raises(NotFoundError):
            await UsageMeter(session, cache).increment_usage(user_id, UsageResourceType.CONTACTS)

    @pytest.mark.asyncio
    async def test_invalid_count_and_resource_are_rejected(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)

        with pytest.raises(ValidationError):
            await meter.increment_usage(user_id, UsageResourceType.CONTACTS, 0)
        with pytest.raises(ValidationError):
            await meter.increment_usage(user_id, "widgets")

    @pytest.mark.asyncio
    async def test_set_usage_overwrites_counter(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)
        await meter.increment_usage(user_id, UsageResourceType.CAMPAIGNS, 4)

        usage = await meter.set_usage(user_id, UsageResourceType.CAMPAIGNS, 1)

        assert usage.campaigns_count == 1
        with pytest.raises(ValidationError):
            await meter.set_usage(user_id, UsageResourceType.CAMPAIGNS, -1)

    @pytest.mark.asyncio
    async def test_months_are_independent(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)
        repo = UsageRepository(session)
        await repo.create(
            user_id=user_id,
            subscription_id=subscription.id,
            month_year="2020-01",
            contacts_count=50,
        )
        await session.commit()
        meter = UsageMeter(session, cache)

        current = await meter.increment_usage(user_id, UsageResourceType.CONTACTS, 2)

        assert current.contacts_count == 2
        assert (await repo.get(user_id, "2020-01")).contacts_count == 50

        history = await meter.get_usage_history(user_id, months=6)
        assert [record.month_year for record in history] == [month_key(utcnow()), "2020-01"]

    @pytest.mark.asyncio
    async def test_history_window_is_bounded(self, session, cache, user_id):
        meter = UsageMeter(session, cache)

        with pytest.raises(ValidationError):
            await meter.get_usage_history(user_id, months=0)
        with pytest.raises(ValidationError):
            await meter.get_usage_history(user_id, months=MAX_HISTORY_MONTHS + 1)
        assert await meter.get_usage_history(user_id, months=MAX_HISTORY_MONTHS) == []

    @pytest.mark.asyncio
    async def test_reset_keeps_standing_inventory(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)
        await meter.increment_usage(user_id, UsageResourceType.CONTACTS, 9)
        await meter.increment_usage(user_id, UsageResourceType.CAMPAIGNS, 3)
        await meter.increment_usage(user_id, UsageResourceType.UTILITY_MESSAGES, 8)

        assert await meter.reset_monthly_counters(user_id) is True

        usage = await meter.get_monthly_usage(user_id)
        assert usage.contacts_count == 9
        assert usage.campaigns_count == 0
        assert usage.utility_messages == 0
        assert usage.last_reset_date is not None

    @pytest.mark.asyncio
    async def test_reset_without_record_reports_nothing_done(self, session, cache, user_id):
        assert await UsageMeter(session, cache).reset_monthly_counters(user_id) is False


class TestLimits:

    @pytest.mark.asyncio
    async def test_limit_reached_blocks_next_unit(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan(max_campaigns_per_month=5)
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)

        await meter.set_usage(user_id, UsageResourceType.CAMPAIGNS, 4)
        below = await meter.check_limit(user_id, UsageResourceType.CAMPAIGNS)
        await meter.increment_usage(user_id, UsageResourceType.CAMPAIGNS)
        at = await meter.check_limit(user_id, UsageResourceType.CAMPAIGNS)

        assert (below.can_proceed, below.current, below.limit, below.remaining) == (True, 4, 5, 1)
        assert (at.can_proceed, at.current, at.limit, at.remaining) == (False, 5, 5, 0)

    @pytest.mark.asyncio
    async def test_retired_plan_still_bounds_its_subscribers(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan(max_templates=3, is_active=False)
        await make_subscription(user_id, plan)

        result = await UsageMeter(session, cache).check_limit(user_id, UsageResourceType.TEMPLATES)

        assert (result.can_proceed, result.limit, result.remaining) == (True, 3, 3)

    @pytest.mark.asyncio
    async def test_unlimited_resource_always_proceeds(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan(max_contacts=None)
        await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)
        await meter.set_usage(user_id, UsageResourceType.CONTACTS, 1_000_000)

        result = await meter.check_limit(user_id, "contacts")

        assert result.can_proceed is True
        assert result.limit is None
        assert result.remaining == UNLIMITED

    @pytest.mark.asyncio
    async def test_no_subscription_cannot_proceed(self, session, cache, user_id):
        result = await UsageMeter(session, cache).check_limit(user_id, UsageResourceType.MESSAGES)

        assert result.can_proceed is False
        assert (result.current, result.limit, result.remaining) == (0, 0, 0)

    @pytest.mark.asyncio
    async def test_message_categories_have_no_limit_check(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)

        with pytest.raises(ValidationError):
            await UsageMeter(session, cache).check_limit(
                user_id, UsageResourceType.MARKETING_MESSAGES
            )

    @pytest.mark.asyncio
    async def test_current_usage_reports_every_limited_resource(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan(max_messages_per_month=100, max_team_members=None)
        subscription = await make_subscription(user_id, plan)
        meter = UsageMeter(session, cache)
        await meter.increment_usage(user_id, UsageResourceType.MESSAGES, 30)
        await meter.increment_usage(user_id, UsageResourceType.MARKETING_MESSAGES, 30)

        current = await meter.get_current_usage(user_id)

        assert current.subscription_id == subscription.id
        assert set(current.resources) == {
            UsageResourceType.CONTACTS,
            UsageResourceType.TEMPLATES,
            UsageResourceType.CAMPAIGNS,
            UsageResourceType.MESSAGES,
            UsageResourceType.TEAM_MEMBERS,
            UsageResourceType.NUMBERS,
        }
        messages = current.resources[UsageResourceType.MESSAGES]
        assert (messages.current, messages.limit, messages.remaining) == (30, 100, 70)
        team = current.resources[UsageResourceType.TEAM_MEMBERS]
        assert (team.limit, team.remaining) == (None, UNLIMITED)
        assert current.message_breakdown.marketing == 30

    @pytest.mark.asyncio
    async def test_current_usage_requires_subscription(self, session, cache, user_id):
        with pytest.raises(NotFoundError):
            await UsageMeter(session, cache).get_current_usage(user_id)
