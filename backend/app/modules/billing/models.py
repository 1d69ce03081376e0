"""Billing models for plans, subscriptions, promotions, usage and transactions.

Money columns are ``Numeric(12, 2)`` in a single currency. Plan limits are
nullable integers where ``None`` means unlimited.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from app.core.database import Base
from app.core.time import ensure_utc, utcnow


class BillingCycle(str, Enum):
    """Supported billing cycles."""
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    LIFETIME = "LIFETIME"


class SubscriptionStatus(str, Enum):
    """Subscription status values. ACTIVE is the only non-terminal state."""
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


class DiscountType(str, Enum):
    PERCENTAGE = "PERCENTAGE"
    FIXED_AMOUNT = "FIXED_AMOUNT"


class TransactionType(str, Enum):
    NEW = "NEW"
    RENEWAL = "RENEWAL"
    UPGRADE = "UPGRADE"
    DOWNGRADE = "DOWNGRADE"
    REFUND = "REFUND"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class UsageResourceType(str, Enum):
    """Metered resources.

    The first six carry a plan limit. The message categories are a breakdown
    of ``messages`` and are counted without a limit of their own.
    """
    CONTACTS = "contacts"
    TEMPLATES = "templates"
    CAMPAIGNS = "campaigns"
    MESSAGES = "messages"
    TEAM_MEMBERS = "team_members"
    NUMBERS = "whatsapp_numbers"
    MARKETING_MESSAGES = "marketing_messages"
    UTILITY_MESSAGES = "utility_messages"
    AUTH_MESSAGES = "auth_messages"


class PlanFeature(str, Enum):
    """Boolean feature flags a plan can grant."""
    ADVANCED_ANALYTICS = "advanced_analytics"
    AUTOMATION = "automation"
    API_ACCESS = "api_access"
    PRIORITY_SUPPORT = "priority_support"
    WHITE_LABEL = "white_label"
    CUSTOM_REPORTS = "custom_reports"
    WEBHOOKS = "webhooks"
    BULK_MESSAGING = "bulk_messaging"


# UsageRecord counter column per resource
USAGE_COLUMNS: dict[UsageResourceType, str] = {
    UsageResourceType.CONTACTS: "contacts_count",
    UsageResourceType.TEMPLATES: "templates_count",
    UsageResourceType.CAMPAIGNS: "campaigns_count",
    UsageResourceType.MESSAGES: "messages_sent",
    UsageResourceType.TEAM_MEMBERS: "team_members_count",
    UsageResourceType.NUMBERS: "whatsapp_numbers_count",
    UsageResourceType.MARKETING_MESSAGES: "marketing_messages",
    UsageResourceType.UTILITY_MESSAGES: "utility_messages",
    UsageResourceType.AUTH_MESSAGES: "auth_messages",
}

# Plan limit column per limited resource
LIMIT_COLUMNS: dict[UsageResourceType, str] = {
    UsageResourceType.CONTACTS: "max_contacts",
    UsageResourceType.TEMPLATES: "max_templates",
    UsageResourceType.CAMPAIGNS: "max_campaigns_per_month",
    UsageResourceType.MESSAGES: "max_messages_per_month",
    UsageResourceType.TEAM_MEMBERS: "max_team_members",
    UsageResourceType.NUMBERS: "max_whatsapp_numbers",
}

# Counters that start over every billing period
RENEWABLE_RESOURCES = frozenset({
    UsageResourceType.CAMPAIGNS,
    UsageResourceType.MESSAGES,
    UsageResourceType.MARKETING_MESSAGES,
    UsageResourceType.UTILITY_MESSAGES,
    UsageResourceType.AUTH_MESSAGES,
})

# Allowed forward moves of a transaction's payment status
PAYMENT_STATUS_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset({PaymentStatus.SUCCESS, PaymentStatus.FAILED}),
    PaymentStatus.SUCCESS: frozenset({PaymentStatus.REFUNDED}),
    PaymentStatus.FAILED: frozenset(),
    PaymentStatus.REFUNDED: frozenset(),
}


def _money(nullable: bool = False, default: Optional[str] = "0.00"):
    return mapped_column(
        Numeric(12, 2),
        nullable=nullable,
        default=Decimal(default) if default is not None else None,
    )


class Plan(Base):
    """Subscription plan offered in the catalog."""

    __tablename__ = "subscription_plans"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    plan_code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    plan_name: Mapped[str] = mapped_column(String(100), nullable=False)
    plan_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    plan_type: Mapped[str] = mapped_column(String(50), default="STANDARD", nullable=False)

    # Pricing per billing cycle
    monthly_price: Mapped[Decimal] = _money()
    yearly_price: Mapped[Decimal] = _money()
    lifetime_price: Mapped[Decimal] = _money()

    # Resource limits (None = unlimited)
    max_contacts: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_templates: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_campaigns_per_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_messages_per_month: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_team_members: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_whatsapp_numbers: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Feature flags
    has_advanced_analytics: Mapped[bool] = mapped_column(Boolean, default=False)
    has_automation: Mapped[bool] = mapped_column(Boolean, default=False)
    has_api_access: Mapped[bool] = mapped_column(Boolean, default=False)
    has_priority_support: Mapped[bool] = mapped_column(Boolean, default=False)
    has_white_label: Mapped[bool] = mapped_column(Boolean, default=False)
    has_custom_reports: Mapped[bool] = mapped_column(Boolean, default=False)
    has_webhooks: Mapped[bool] = mapped_column(Boolean, default=False)
    has_bulk_messaging: Mapped[bool] = mapped_column(Boolean, default=False)

    # Per-message pricing by category
    marketing_message_price: Mapped[Decimal] = _money(default="0.35")
    utility_message_price: Mapped[Decimal] = _money(default="0.15")
    auth_message_price: Mapped[Decimal] = _money(default="0.15")

    # Catalog visibility
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True)
    display_order: Mapped[int] = mapped_column(Integer, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, code={self.plan_code})>"

    def price_for(self, cycle: BillingCycle) -> Decimal:
        """Price charged for one period of ``cycle``."""
        prices = {
            BillingCycle.MONTHLY: self.monthly_price,
            BillingCycle.YEARLY: self.yearly_price,
            BillingCycle.LIFETIME: self.lifetime_price,
        }
        return Decimal(prices[cycle] or 0)

    def has_feature(self, feature: PlanFeature) -> bool:
        return bool(getattr(self, f"has_{feature.value}"))


class Subscription(Base):
    """A user's purchase of a plan for one billing cycle.

    At most one row per user may be ACTIVE; the partial unique index
    enforces it at the database.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    plan_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscription_plans.id"), nullable=False, index=True
    )

    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)
    amount_paid: Mapped[Decimal] = _money()
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )

    # Billing period (end_date is None for LIFETIME)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)

    # Trial
    is_trial: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_end_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Cancellation
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index(
            "uq_subscriptions_user_active",
            "user_id",
            unique=True,
            postgresql_where=text("status = 'ACTIVE'"),
            sqlite_where=text("status = 'ACTIVE'"),
        ),
        Index("ix_subscriptions_status_end_date", "status", "end_date"),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user={self.user_id}, status={self.status})>"

    def is_lifetime(self) -> bool:
        return self.billing_cycle == BillingCycle.LIFETIME.value

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        """True when the row is past its end date. LIFETIME rows never are."""
        if self.end_date is None:
            return False
        return ensure_utc(self.end_date) < (now or utcnow())


class PromoCode(Base):
    """Discount code redeemable at checkout."""

    __tablename__ = "promo_codes"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False, index=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    discount_type: Mapped[str] = mapped_column(String(20), nullable=False)
    discount_value: Mapped[Decimal] = _money(default=None)
    max_discount_amount: Mapped[Optional[Decimal]] = _money(nullable=True, default=None)

    # Empty or None means no restriction
    applicable_plans: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    applicable_billing_cycles: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    max_uses: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    max_uses_per_user: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_uses: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<PromoCode(code={self.code}, type={self.discount_type})>"


class PromoUsage(Base):
    """One successful redemption of a promo code."""

    __tablename__ = "promo_code_usage"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    promo_code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("promo_codes.id"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=True
    )
    transaction_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("transactions.id"), nullable=True
    )
    discount_amount: Mapped[Decimal] = _money()
    used_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )

    __table_args__ = (
        Index("ix_promo_usage_promo_user", "promo_code_id", "user_id"),
    )


class UsageRecord(Base):
    """Per-user counters for one calendar month (``YYYY-MM``)."""

    __tablename__ = "usage_tracking"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    month_year: Mapped[str] = mapped_column(String(7), nullable=False)

    # Standing inventory
    contacts_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    templates_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    team_members_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    whatsapp_numbers_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    # Renewable per period
    campaigns_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    messages_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    marketing_messages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    utility_messages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    auth_messages: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    last_reset_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "month_year", name="uq_usage_user_month"),
    )

    def __repr__(self) -> str:
        return f"<UsageRecord(user={self.user_id}, month={self.month_year})>"

    def get_count(self, resource: UsageResourceType) -> int:
        return getattr(self, USAGE_COLUMNS[resource]) or 0


class Transaction(Base):
    """Append-only monetary event tied to a subscription."""

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[Decimal] = _money()
    currency: Mapped[str] = mapped_column(String(3), default="INR", nullable=False)

    payment_method: Mapped[str] = mapped_column(String(50), default="RAZORPAY", nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Gateway references
    gateway_order_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    gateway_payment_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    gateway_signature: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    gateway_response: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Invoice
    invoice_number: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    invoice_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    transaction_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow, server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, type={self.transaction_type}, status={self.payment_status})>"
