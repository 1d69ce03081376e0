"""Seed the plan catalog.

Run with: python -m scripts.seed_plans
"""

import asyncio
from decimal import Decimal

from sqlalchemy import delete, select

from app.core.database import async_session_maker
from app.modules.billing.models import Plan


# Limits of None mean unlimited
PLANS_DATA = [
    {
        "plan_code": "FREE",
        "plan_name": "Free",
        "plan_description": "Try the platform with a single number",
        "plan_type": "STANDARD",
        "monthly_price": Decimal("0.00"),
        "yearly_price": Decimal("0.00"),
        "lifetime_price": Decimal("0.00"),
        "max_contacts": 100,
        "max_templates": 2,
        "max_campaigns_per_month": 1,
        "max_messages_per_month": 250,
        "max_team_members": 1,
        "max_whatsapp_numbers": 1,
        "display_order": 0,
    },
    {
        "plan_code": "STARTER",
        "plan_name": "Starter",
        "plan_description": "For small teams running their first campaigns",
        "plan_type": "STANDARD",
        "monthly_price": Decimal("999.00"),
        "yearly_price": Decimal("9999.00"),
        "lifetime_price": Decimal("49999.00"),
        "max_contacts": 1000,
        "max_templates": 10,
        "max_campaigns_per_month": 10,
        "max_messages_per_month": 5000,
        "max_team_members": 3,
        "max_whatsapp_numbers": 1,
        "has_automation": True,
        "has_bulk_messaging": True,
        "display_order": 1,
    },
    {
        "plan_code": "PRO",
        "plan_name": "Pro",
        "plan_description": "Automation, analytics and API access for growing businesses",
        "plan_type": "STANDARD",
        "monthly_price": Decimal("2999.00"),
        "yearly_price": Decimal("29999.00"),
        "lifetime_price": Decimal("149999.00"),
        "max_contacts": 10000,
        "max_templates": 50,
        "max_campaigns_per_month": 100,
        "max_messages_per_month": 50000,
        "max_team_members": 10,
        "max_whatsapp_numbers": 3,
        "has_advanced_analytics": True,
        "has_automation": True,
        "has_api_access": True,
        "has_webhooks": True,
        "has_bulk_messaging": True,
        "display_order": 2,
    },
    {
        "plan_code": "ENTERPRISE",
        "plan_name": "Enterprise",
        "plan_description": "Unlimited usage with white label and priority support",
        "plan_type": "ENTERPRISE",
        "monthly_price": Decimal("9999.00"),
        "yearly_price": Decimal("99999.00"),
        "lifetime_price": Decimal("499999.00"),
        "max_contacts": None,
        "max_templates": None,
        "max_campaigns_per_month": None,
        "max_messages_per_month": None,
        "max_team_members": None,
        "max_whatsapp_numbers": 10,
        "has_advanced_analytics": True,
        "has_automation": True,
        "has_api_access": True,
        "has_priority_support": True,
        "has_white_label": True,
        "has_custom_reports": True,
        "has_webhooks": True,
        "has_bulk_messaging": True,
        "display_order": 3,
    },
]


def _limit(value) -> str:
    return "Unlimited" if value is None else str(value)


async def seed_plans(reset: bool = False):
    """Create or update the catalog plans, keyed by plan code.

    Args:
        reset: If True, delete all existing plans first
    """
    async with async_session_maker() as session:
        if reset:
            print("Deleting existing plans...")
            await session.execute(delete(Plan))
            await session.commit()

        for plan_data in PLANS_DATA:
            result = await session.execute(
                select(Plan).where(Plan.plan_code == plan_data["plan_code"])
            )
            existing = result.scalar_one_or_none()

            if existing:
                print(f"Updating plan: {plan_data['plan_code']}")
                for key, value in plan_data.items():
                    setattr(existing, key, value)
            else:
                print(f"Creating plan: {plan_data['plan_code']}")
                session.add(Plan(**plan_data))

        await session.commit()
        print("\nPlans seeded successfully!")

        result = await session.execute(select(Plan).order_by(Plan.display_order))
        print("\n" + "=" * 60)
        print("PLANS SUMMARY")
        print("=" * 60)
        for plan in result.scalars().all():
            print(f"\n{plan.plan_name} ({plan.plan_code})")
            print(f"  Monthly: {plan.monthly_price}  Yearly: {plan.yearly_price}  Lifetime: {plan.lifetime_price}")
            print(f"  Contacts: {_limit(plan.max_contacts)}")
            print(f"  Messages: {_limit(plan.max_messages_per_month)}/month")
            print(f"  Team members: {_limit(plan.max_team_members)}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Seed subscription plans")
    parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete all existing plans before seeding",
    )
    args = parser.parse_args()

    asyncio.run(seed_plans(reset=args.reset))
