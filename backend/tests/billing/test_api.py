"""HTTP tests for the billing API."""

import uuid
from datetime import timedelta

import pytest

from app.core.security import create_access_token
from app.core.time import utcnow
from app.modules.billing.metering import UsageMeter

API = "/api/v1"


class TestPlansApi:

    @pytest.mark.asyncio
    async def test_list_plans_is_public_and_camel_cased(self, client, make_plan):
        await make_plan(plan_name="Pro", max_contacts=None)

        response = await client.get(f"{API}/plans")

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        plan = body["data"][0]
        assert plan["name"] == "Pro"
        assert plan["pricing"]["monthly"] == 999.0
        assert plan["limits"]["contacts"] == -1
        assert plan["limits"]["messagesPerMonth"] == 100
        assert plan["messagePricing"]["marketing"] == 0.35
        assert plan["isActive"] is True

    @pytest.mark.asyncio
    async def test_pricing_rejects_unknown_cycle(self, client, make_plan):
        plan = await make_plan()

        ok = await client.get(f"{API}/plans/{plan.id}/pricing", params={"billingCycle": "LIFETIME"})
        bad = await client.get(f"{API}/plans/{plan.id}/pricing", params={"billingCycle": "DAILY"})

        assert ok.json()["data"]["amount"] == 49999.0
        assert bad.status_code == 400
        assert bad.json()["success"] is False

    @pytest.mark.asyncio
    async def test_unknown_plan_is_404(self, client):
        response = await client.get(f"{API}/plans/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json() == {"success": False, "error": "Plan not found"}

    @pytest.mark.asyncio
    async def test_plan_creation_requires_admin(self, client, auth_headers):
        payload = {"planCode": "BIZ", "planName": "Business", "monthlyPrice": 1999}

        anonymous = await client.post(f"{API}/plans", json=payload)
        regular = await client.post(
            f"{API}/plans", json=payload, headers=auth_headers(uuid.uuid4())
        )
        admin = await client.post(
            f"{API}/plans", json=payload, headers=auth_headers(uuid.uuid4(), role="admin")
        )

        assert anonymous.status_code == 401
        assert regular.status_code == 403
        assert regular.json()["error"] == "Admin access required"
        assert admin.status_code == 201
        assert admin.json()["data"]["code"] == "BIZ"

    @pytest.mark.asyncio
    async def test_admin_listing_shows_retired_plans(self, client, make_plan, auth_headers):
        await make_plan(plan_name="Retired", is_active=False)

        public = await client.get(f"{API}/plans")
        regular = await client.get(f"{API}/plans-all", headers=auth_headers(uuid.uuid4()))
        admin = await client.get(
            f"{API}/plans-all", headers=auth_headers(uuid.uuid4(), role="admin")
        )

        assert public.json()["data"] == []
        assert regular.status_code == 403
        assert [plan["name"] for plan in admin.json()["data"]] == ["Retired"]
        assert admin.json()["data"][0]["isActive"] is False


class TestSubscriptionsApi:

    @pytest.mark.asyncio
    async def test_subscribe_then_conflict(self, client, user_id, make_plan, auth_headers):
        plan = await make_plan(plan_name="Starter")
        headers = auth_headers(user_id)
        payload = {"planId": str(plan.id), "billingCycle": "MONTHLY"}

        created = await client.post(f"{API}/subscriptions/subscribe", json=payload, headers=headers)
        duplicate = await client.post(f"{API}/subscriptions/subscribe", json=payload, headers=headers)

        assert created.status_code == 201
        data = created.json()["data"]
        assert data["planName"] == "Starter"
        assert data["amount"] == 999.0
        assert data["discountApplied"] == 0.0
        assert data["status"] == "ACTIVE"

        assert duplicate.status_code == 409
        body = duplicate.json()
        assert body["success"] is False
        assert body["error"].startswith("You already have an active subscription")
        assert body["currentSubscription"]["planName"] == "Starter"
        assert body["currentSubscription"]["endDate"] is not None

    @pytest.mark.asyncio
    async def test_subscribe_requires_token(self, client, make_plan):
        plan = await make_plan()

        response = await client.post(
            f"{API}/subscriptions/subscribe",
            json={"planId": str(plan.id), "billingCycle": "MONTHLY"},
        )

        assert response.status_code == 401
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_expired_token_is_rejected(self, client):
        token = create_access_token(uuid.uuid4(), expires_delta=timedelta(minutes=-1))

        response = await client.get(
            f"{API}/subscriptions/current", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_malformed_body_is_400(self, client, auth_headers):
        response = await client.post(
            f"{API}/subscriptions/subscribe",
            json={"planId": "not-a-uuid", "billingCycle": "WEEKLY"},
            headers=auth_headers(uuid.uuid4()),
        )

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert {detail["field"] for detail in body["details"]} >= {"planId", "billingCycle"}

    @pytest.mark.asyncio
    async def test_current_without_subscription(self, client, auth_headers):
        response = await client.get(
            f"{API}/subscriptions/current", headers=auth_headers(uuid.uuid4())
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "data": None,
            "error": "No active subscription",
        }

    @pytest.mark.asyncio
    async def test_cancel_flow(self, client, user_id, make_plan, auth_headers):
        plan = await make_plan()
        headers = auth_headers(user_id)
        created = await client.post(
            f"{API}/subscriptions/subscribe",
            json={"planId": str(plan.id), "billingCycle": "YEARLY"},
            headers=headers,
        )
        subscription_id = created.json()["data"]["subscriptionId"]

        stranger = await client.post(
            f"{API}/subscriptions/{subscription_id}/cancel",
            headers=auth_headers(uuid.uuid4()),
        )
        cancelled = await client.post(
            f"{API}/subscriptions/{subscription_id}/cancel",
            json={"reason": "Switching provider"},
            headers=headers,
        )
        again = await client.post(f"{API}/subscriptions/{subscription_id}/cancel", headers=headers)

        assert stranger.status_code == 403
        assert cancelled.status_code == 200
        assert cancelled.json()["data"]["status"] == "CANCELLED"
        assert cancelled.json()["data"]["cancellationReason"] == "Switching provider"
        assert again.status_code == 409

        history = await client.get(f"{API}/subscriptions/history", headers=headers)
        assert history.json()["data"]["total"] == 1


class TestUsageApi:

    @pytest.mark.asyncio
    async def test_check_limit(
        self, client, session, cache, user_id, make_plan, make_subscription, auth_headers
    ):
        plan = await make_plan(max_templates=2, max_contacts=None)
        await make_subscription(user_id, plan)
        headers = auth_headers(user_id)
        await UsageMeter(session, cache).increment_usage(user_id, "templates", 2)

        templates = await client.get(f"{API}/usage/check-limit/templates", headers=headers)
        contacts = await client.get(f"{API}/usage/check-limit/contacts", headers=headers)
        unknown = await client.get(f"{API}/usage/check-limit/widgets", headers=headers)

        assert templates.json()["data"] == {
            "resourceType": "templates",
            "canProceed": False,
            "current": 2,
            "limit": 2,
            "remaining": 0,
        }
        assert contacts.json()["data"]["limit"] == -1
        assert contacts.json()["data"]["remaining"] == -1
        assert unknown.status_code == 400

    @pytest.mark.asyncio
    async def test_users_cannot_adjust_their_own_counters(
        self, client, session, cache, user_id, make_plan, make_subscription, auth_headers
    ):
        plan = await make_plan(max_messages_per_month=2)
        await make_subscription(user_id, plan)
        headers = auth_headers(user_id)
        await UsageMeter(session, cache).increment_usage(user_id, "messages", 2)

        decrement = await client.post(
            f"{API}/usage/decrement",
            json={"resourceType": "messages", "count": 2},
            headers=headers,
        )
        increment = await client.post(
            f"{API}/usage/increment",
            json={"resourceType": "messages", "count": 1},
            headers=headers,
        )
        check = await client.get(f"{API}/usage/check-limit/messages", headers=headers)

        assert decrement.status_code in (404, 405)
        assert increment.status_code in (404, 405)
        assert check.json()["data"]["canProceed"] is False
        assert check.json()["data"]["current"] == 2

    @pytest.mark.asyncio
    async def test_only_admins_set_usage(
        self, client, user_id, make_plan, make_subscription, auth_headers
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)

        response = await client.put(
            f"{API}/usage/{user_id}/messages",
            json={"value": 0},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 403

    @pytest.mark.asyncio
    async def test_current_usage_without_subscription_is_404(self, client, auth_headers):
        response = await client.get(f"{API}/usage/current", headers=auth_headers(uuid.uuid4()))

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_admin_sets_usage(
        self, client, user_id, make_plan, make_subscription, auth_headers
    ):
        plan = await make_plan()
        await make_subscription(user_id, plan)

        response = await client.put(
            f"{API}/usage/{user_id}/messages",
            json={"value": 42},
            headers=auth_headers(uuid.uuid4(), role="admin"),
        )

        assert response.status_code == 200
        assert response.json()["data"]["messagesSent"] == 42


class TestPromoApi:

    @pytest.mark.asyncio
    async def test_validate_reports_reason(self, client, make_plan, make_promo, auth_headers):
        plan = await make_plan()
        await make_promo(code="GOOD")
        await make_promo(code="LATE", valid_from=utcnow() + timedelta(days=3))
        headers = auth_headers(uuid.uuid4())

        good = await client.post(
            f"{API}/promo-codes/validate",
            json={"code": "good", "planId": str(plan.id), "billingCycle": "MONTHLY"},
            headers=headers,
        )
        late = await client.post(
            f"{API}/promo-codes/validate",
            json={"code": "LATE", "planId": str(plan.id), "billingCycle": "MONTHLY"},
            headers=headers,
        )

        assert good.status_code == 200
        assert good.json()["data"]["valid"] is True
        assert good.json()["data"]["discountValue"] == 10.0
        assert late.status_code == 400
        assert late.json() == {
            "success": False,
            "valid": False,
            "error": "Promo code is not yet valid",
        }

    @pytest.mark.asyncio
    async def test_subscribe_with_promo(
        self, client, user_id, make_plan, make_promo, auth_headers
    ):
        plan = await make_plan()
        await make_promo(code="TAKE20", discount_value=20)

        response = await client.post(
            f"{API}/subscriptions/subscribe",
            json={"planId": str(plan.id), "billingCycle": "MONTHLY", "promoCode": "take20"},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 201
        assert response.json()["data"]["discountApplied"] == 199.8
        assert response.json()["data"]["amount"] == 799.2

    @pytest.mark.asyncio
    async def test_active_codes_are_public(self, client, make_promo):
        await make_promo(code="PUBLIC")

        response = await client.get(f"{API}/promo-codes/active")

        assert response.status_code == 200
        codes = response.json()["data"]
        assert [code["code"] for code in codes] == ["PUBLIC"]
        assert "currentUses" not in codes[0]

    @pytest.mark.asyncio
    async def test_admin_crud(self, client, auth_headers):
        admin = auth_headers(uuid.uuid4(), role="admin")
        now = utcnow()
        created = await client.post(
            f"{API}/promo-codes",
            json={
                "code": "launch",
                "discountType": "FIXED_AMOUNT",
                "discountValue": 100,
                "validFrom": (now - timedelta(hours=1)).isoformat(),
                "validUntil": (now + timedelta(days=7)).isoformat(),
                "maxUses": 10,
            },
            headers=admin,
        )
        promo_id = created.json()["data"]["id"]

        detail = await client.get(f"{API}/promo-codes/{promo_id}", headers=admin)
        null_update = await client.put(
            f"{API}/promo-codes/{promo_id}", json={"isActive": None}, headers=admin
        )
        deleted = await client.delete(f"{API}/promo-codes/{promo_id}", headers=admin)
        listing = await client.get(f"{API}/promo-codes", headers=admin)

        assert created.status_code == 201
        assert created.json()["data"]["code"] == "LAUNCH"
        assert detail.json()["data"]["stats"] == {
            "totalUses": 0,
            "totalDiscount": 0.0,
            "uniqueUsers": 0,
        }
        assert deleted.json()["data"]["isActive"] is False
        assert null_update.status_code == 400
        assert null_update.json()["success"] is False
        assert listing.json()["data"]["total"] == 1


class TestTransactionsApi:

    @pytest.mark.asyncio
    async def test_history_and_revenue(self, client, user_id, make_plan, auth_headers):
        plan = await make_plan()
        headers = auth_headers(user_id)
        await client.post(
            f"{API}/subscriptions/subscribe",
            json={"planId": str(plan.id), "billingCycle": "MONTHLY"},
            headers=headers,
        )

        listing = await client.get(f"{API}/transactions", headers=headers)
        revenue = await client.get(f"{API}/transactions/stats/revenue", headers=headers)
        stranger = await client.get(
            f"{API}/transactions/{listing.json()['data']['items'][0]['id']}",
            headers=auth_headers(uuid.uuid4()),
        )

        items = listing.json()["data"]["items"]
        assert len(items) == 1
        assert items[0]["transactionType"] == "NEW"
        assert items[0]["paymentStatus"] == "SUCCESS"
        assert items[0]["metadata"]["original_amount"] == "999.00"
        assert revenue.json()["data"] == {"totalRevenue": 999.0, "currency": "INR"}
        assert stranger.status_code == 403


class TestOperationalEndpoints:

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}
