"""Tests for subscription lifecycle transitions."""

import uuid
from datetime import timedelta

import pytest

from app.core.cache import CacheKeys
from app.core.time import utcnow
from app.modules.billing.exceptions import AuthorizationError, ConflictError, NotFoundError
from app.modules.billing.ledger import SubscriptionLedger
from app.modules.billing.models import BillingCycle, SubscriptionStatus
from app.modules.billing.repository import SubscriptionRepository


class TestCancel:

    @pytest.mark.asyncio
    async def test_cancel_stamps_reason_and_disables_auto_renew(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)

        response = await SubscriptionLedger(session, cache).cancel(
            subscription.id, user_id, reason="Too expensive"
        )

        assert response.status == SubscriptionStatus.CANCELLED.value
        assert response.cancellation_reason == "Too expensive"
        assert response.cancelled_by == user_id
        assert response.cancelled_at is not None
        assert response.auto_renew is False
        assert CacheKeys.user_subscriptions_pattern(user_id) in cache.deleted

    @pytest.mark.asyncio
    async def test_cancelling_twice_conflicts(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)
        subscription_id = subscription.id
        ledger = SubscriptionLedger(session, cache)
        await ledger.cancel(subscription_id, user_id)

        with pytest.raises(ConflictError) as exc:
            await ledger.cancel(subscription_id, user_id)

        assert exc.value.message == "Subscription is already cancelled"

    @pytest.mark.asyncio
    async def test_overdue_subscription_cannot_be_cancelled(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        now = utcnow()
        subscription = await make_subscription(
            user_id, plan, start_date=now - timedelta(days=31), end_date=now - timedelta(days=1)
        )

        with pytest.raises(ConflictError) as exc:
            await SubscriptionLedger(session, cache).cancel(subscription.id, user_id)

        assert exc.value.message == "Subscription has already expired"

    @pytest.mark.asyncio
    async def test_only_the_owner_may_cancel(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)

        with pytest.raises(AuthorizationError):
            await SubscriptionLedger(session, cache).cancel(subscription.id, uuid.uuid4())

    @pytest.mark.asyncio
    async def test_admin_cancel_records_the_admin(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)
        admin_id = uuid.uuid4()

        response = await SubscriptionLedger(session, cache).cancel(
            subscription.id, None, cancelled_by=admin_id
        )

        assert response.cancelled_by == admin_id

    @pytest.mark.asyncio
    async def test_unknown_subscription(self, session, cache, user_id):
        with pytest.raises(NotFoundError):
            await SubscriptionLedger(session, cache).cancel(uuid.uuid4(), user_id)


class TestAutoRenew:

    @pytest.mark.asyncio
    async def test_toggle_auto_renew(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)
        ledger = SubscriptionLedger(session, cache)

        off = await ledger.toggle_auto_renew(subscription.id, user_id, False)
        on = await ledger.toggle_auto_renew(subscription.id, user_id, True)

        assert off.auto_renew is False
        assert on.auto_renew is True

    @pytest.mark.asyncio
    async def test_toggle_on_cancelled_subscription_conflicts(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(
            user_id, plan, status=SubscriptionStatus.CANCELLED.value, auto_renew=False
        )

        with pytest.raises(ConflictError):
            await SubscriptionLedger(session, cache).toggle_auto_renew(
                subscription.id, user_id, True
            )


class TestExpiry:

    @pytest.mark.asyncio
    async def test_expire_overdue_only_touches_past_due_rows(
        self, session, cache, make_plan, make_subscription
    ):
        plan = await make_plan()
        now = utcnow()
        overdue = await make_subscription(
            uuid.uuid4(), plan, start_date=now - timedelta(days=31), end_date=now - timedelta(minutes=5)
        )
        current = await make_subscription(uuid.uuid4(), plan)
        lifetime = await make_subscription(
            uuid.uuid4(),
            plan,
            billing_cycle=BillingCycle.LIFETIME.value,
            end_date=None,
            next_billing_date=None,
        )
        overdue_id, current_id, lifetime_id = overdue.id, current.id, lifetime.id

        expired = await SubscriptionLedger(session, cache).expire_overdue()

        assert [s.id for s in expired] == [overdue_id]
        repo = SubscriptionRepository(session)
        assert (await repo.refresh(overdue_id)).status == SubscriptionStatus.EXPIRED.value
        assert (await repo.refresh(overdue_id)).auto_renew is False
        assert (await repo.refresh(current_id)).status == SubscriptionStatus.ACTIVE.value
        assert (await repo.refresh(lifetime_id)).status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_check_expiration_moves_single_row(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        now = utcnow()
        subscription = await make_subscription(
            user_id, plan, start_date=now - timedelta(days=31), end_date=now - timedelta(hours=1)
        )

        response = await SubscriptionLedger(session, cache).check_expiration(subscription.id)

        assert response.status == SubscriptionStatus.EXPIRED.value

    @pytest.mark.asyncio
    async def test_active_lookup_ignores_overdue_rows(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        now = utcnow()
        await make_subscription(
            user_id, plan, start_date=now - timedelta(days=31), end_date=now - timedelta(hours=1)
        )

        assert await SubscriptionLedger(session, cache).get_active_subscription(user_id) is None

    @pytest.mark.asyncio
    async def test_stale_cached_active_subscription_is_discarded(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        subscription = await make_subscription(user_id, plan)
        ledger = SubscriptionLedger(session, cache)
        cached = await ledger.get_active_subscription(user_id)
        key = CacheKeys.active_subscription(user_id)
        assert cache.store[key]["id"] == str(subscription.id)

        cache.store[key]["end_date"] = (utcnow() - timedelta(minutes=1)).isoformat()

        fresh = await ledger.get_active_subscription(user_id)

        assert key in cache.deleted
        assert fresh.id == cached.id
        assert fresh.end_date > utcnow()


class TestHistory:

    @pytest.mark.asyncio
    async def test_history_pages_newest_first(
        self, session, cache, user_id, make_plan, make_subscription
    ):
        plan = await make_plan()
        now = utcnow()
        oldest = await make_subscription(
            user_id,
            plan,
            status=SubscriptionStatus.EXPIRED.value,
            start_date=now - timedelta(days=90),
            end_date=now - timedelta(days=60),
        )
        middle = await make_subscription(
            user_id,
            plan,
            status=SubscriptionStatus.CANCELLED.value,
            start_date=now - timedelta(days=59),
            end_date=now - timedelta(days=29),
        )
        newest = await make_subscription(user_id, plan)
        ledger = SubscriptionLedger(session, cache)

        first = await ledger.list_history(user_id, page=1, limit=2)
        second = await ledger.list_history(user_id, page=2, limit=2)

        assert first.total == 3
        assert [s.id for s in first.items] == [newest.id, middle.id]
        assert [s.id for s in second.items] == [oldest.id]
        assert first.items[0].plan_name == "Starter"

        counts = await ledger.count_by_status(user_id)
        assert counts == {"ACTIVE": 1, "CANCELLED": 1, "EXPIRED": 1}


class TestExpiringSoon:

    @pytest.mark.asyncio
    async def test_only_auto_renewing_rows_inside_window(
        self, session, cache, make_plan, make_subscription
    ):
        plan = await make_plan(plan_name="Starter")
        now = utcnow()
        soon = await make_subscription(
            uuid.uuid4(), plan, end_date=now + timedelta(days=2), next_billing_date=now + timedelta(days=2)
        )
        await make_subscription(
            uuid.uuid4(),
            plan,
            end_date=now + timedelta(days=1),
            next_billing_date=now + timedelta(days=1),
            auto_renew=False,
        )
        await make_subscription(uuid.uuid4(), plan, end_date=now + timedelta(days=20))
        soon_id = soon.id

        expiring = await SubscriptionLedger(session, cache).get_expiring(days=7)

        assert [s.id for s in expiring] == [soon_id]
        assert expiring[0].plan_name == "Starter"
