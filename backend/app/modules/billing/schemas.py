"""Pydantic schemas for the billing API.

JSON keys are camelCase. Monetary fields are 2-dp decimals rendered as JSON
numbers; plan limits are ``None`` internally and ``-1`` on the wire.
"""

import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Annotated, Any, Generic, Optional, TypeVar

from pydantic import (
    AfterValidator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    PlainSerializer,
)
from pydantic.alias_generators import to_camel

from app.core.time import ensure_utc
from app.modules.billing.models import BillingCycle, UsageResourceType

T = TypeVar("T")

CENT = Decimal("0.01")


def to_money(value: Any) -> Decimal:
    """Coerce to a Decimal rounded half-up to 2 decimal places."""
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValueError(f"Invalid monetary amount: {value!r}")


def _to_limit(value: Any) -> Optional[int]:
    if value is None:
        return None
    value = int(value)
    return None if value < 0 else value


Money = Annotated[
    Decimal,
    BeforeValidator(to_money),
    PlainSerializer(float, return_type=float, when_used="json"),
]

UtcDatetime = Annotated[datetime, AfterValidator(ensure_utc)]

Limit = Annotated[
    Optional[int],
    BeforeValidator(_to_limit),
    PlainSerializer(lambda v: -1 if v is None else v, return_type=int, when_used="json"),
]


class CamelModel(BaseModel):
    """Base schema with camelCase aliases; accepts either spelling on input."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ApiResponse(BaseModel, Generic[T]):
    """Success envelope shared by every endpoint."""
    success: bool = True
    data: Optional[T] = None
    error: Optional[str] = None


class Page(CamelModel, Generic[T]):
    items: list[T]
    total: int
    page: int
    limit: int


# ==================== Plan Schemas ====================

class PlanPricing(CamelModel):
    monthly: Money
    yearly: Money
    lifetime: Money
    currency: str


class PlanLimits(CamelModel):
    """Resource limits; -1 on the wire means unlimited."""
    contacts: Limit = None
    templates: Limit = None
    campaigns_per_month: Limit = None
    messages_per_month: Limit = None
    team_members: Limit = None
    whatsapp_numbers: Limit = None


class PlanFeatures(CamelModel):
    advanced_analytics: bool = False
    automation: bool = False
    api_access: bool = False
    priority_support: bool = False
    white_label: bool = False
    custom_reports: bool = False
    webhooks: bool = False
    bulk_messaging: bool = False


class MessagePricing(CamelModel):
    marketing: Money
    utility: Money
    auth: Money
    currency: str


class PlanResponse(CamelModel):
    id: uuid.UUID
    code: str
    name: str
    description: Optional[str] = None
    type: str
    pricing: PlanPricing
    limits: PlanLimits
    features: PlanFeatures
    message_pricing: MessagePricing
    is_active: bool
    is_visible: bool
    display_order: int


class PlanCreate(CamelModel):
    """Admin payload for a new plan. Limits of -1 or null mean unlimited."""
    plan_code: str = Field(..., min_length=1, max_length=50)
    plan_name: str = Field(..., min_length=1, max_length=100)
    plan_description: Optional[str] = None
    plan_type: str = "STANDARD"
    monthly_price: Money = Decimal("0.00")
    yearly_price: Money = Decimal("0.00")
    lifetime_price: Money = Decimal("0.00")
    max_contacts: Limit = None
    max_templates: Limit = None
    max_campaigns_per_month: Limit = None
    max_messages_per_month: Limit = None
    max_team_members: Limit = None
    max_whatsapp_numbers: Limit = None
    has_advanced_analytics: bool = False
    has_automation: bool = False
    has_api_access: bool = False
    has_priority_support: bool = False
    has_white_label: bool = False
    has_custom_reports: bool = False
    has_webhooks: bool = False
    has_bulk_messaging: bool = False
    marketing_message_price: Money = Decimal("0.35")
    utility_message_price: Money = Decimal("0.15")
    auth_message_price: Money = Decimal("0.15")
    is_active: bool = True
    is_visible: bool = True
    display_order: int = 0


class PlanUpdate(CamelModel):
    """Admin partial update; only fields present in the payload are applied."""
    plan_name: Optional[str] = Field(None, min_length=1, max_length=100)
    plan_description: Optional[str] = None
    plan_type: Optional[str] = None
    monthly_price: Optional[Money] = None
    yearly_price: Optional[Money] = None
    lifetime_price: Optional[Money] = None
    max_contacts: Limit = None
    max_templates: Limit = None
    max_campaigns_per_month: Limit = None
    max_messages_per_month: Limit = None
    max_team_members: Limit = None
    max_whatsapp_numbers: Limit = None
    has_advanced_analytics: Optional[bool] = None
    has_automation: Optional[bool] = None
    has_api_access: Optional[bool] = None
    has_priority_support: Optional[bool] = None
    has_white_label: Optional[bool] = None
    has_custom_reports: Optional[bool] = None
    has_webhooks: Optional[bool] = None
    has_bulk_messaging: Optional[bool] = None
    marketing_message_price: Optional[Money] = None
    utility_message_price: Optional[Money] = None
    auth_message_price: Optional[Money] = None
    is_active: Optional[bool] = None
    is_visible: Optional[bool] = None
    display_order: Optional[int] = None


class PricingResponse(CamelModel):
    plan_id: uuid.UUID
    plan_name: str
    billing_cycle: BillingCycle
    amount: Money
    currency: str


# ==================== Subscription Schemas ====================

class SubscribeRequest(CamelModel):
    plan_id: uuid.UUID
    billing_cycle: BillingCycle
    promo_code: Optional[str] = Field(None, max_length=50)
    payment_method: Optional[str] = Field(None, max_length=50)


class SubscribeResult(CamelModel):
    subscription_id: uuid.UUID
    transaction_id: uuid.UUID
    plan_name: str
    billing_cycle: BillingCycle
    amount: Money
    discount_applied: Money
    currency: str
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    status: str


class SubscriptionResponse(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    plan_id: uuid.UUID
    plan_name: Optional[str] = None
    plan_code: Optional[str] = None
    billing_cycle: BillingCycle
    amount_paid: Money
    currency: str
    status: str
    start_date: UtcDatetime
    end_date: Optional[UtcDatetime] = None
    next_billing_date: Optional[UtcDatetime] = None
    auto_renew: bool
    is_trial: bool = False
    trial_end_date: Optional[UtcDatetime] = None
    cancelled_at: Optional[UtcDatetime] = None
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[uuid.UUID] = None
    created_at: UtcDatetime


class CancelSubscriptionRequest(CamelModel):
    reason: Optional[str] = Field(None, max_length=1000)


class AutoRenewRequest(CamelModel):
    auto_renew: bool


# ==================== Usage Schemas ====================

class UsageRecordResponse(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: uuid.UUID
    month_year: str
    contacts_count: int
    templates_count: int
    campaigns_count: int
    messages_sent: int
    team_members_count: int
    whatsapp_numbers_count: int
    marketing_messages: int
    utility_messages: int
    auth_messages: int
    last_reset_date: Optional[UtcDatetime] = None


class ResourceUsage(CamelModel):
    current: int
    limit: Limit = None
    remaining: int


class MessageBreakdown(CamelModel):
    marketing: int
    utility: int
    auth: int


class CurrentUsageResponse(CamelModel):
    month_year: str
    subscription_id: uuid.UUID
    resources: dict[UsageResourceType, ResourceUsage]
    message_breakdown: MessageBreakdown
    last_reset_date: Optional[UtcDatetime] = None


class LimitCheckResult(CamelModel):
    """Outcome of a pre-flight limit check.

    ``limit`` and ``remaining`` are -1 when the resource is unlimited.
    """
    resource_type: UsageResourceType
    can_proceed: bool
    current: int
    limit: Limit = None
    remaining: int


class SetUsageRequest(CamelModel):
    value: int = Field(..., ge=0)


class CurrentSubscriptionResponse(CamelModel):
    subscription: SubscriptionResponse
    plan: PlanResponse
    usage: Optional[CurrentUsageResponse] = None


# ==================== Promo Code Schemas ====================

class PromoCodeCreate(CamelModel):
    """Admin payload for a new code. Business rules are checked by the engine."""
    code: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = None
    discount_type: str
    discount_value: Money
    max_discount_amount: Optional[Money] = None
    applicable_plans: Optional[list[uuid.UUID]] = None
    applicable_billing_cycles: Optional[list[BillingCycle]] = None
    valid_from: UtcDatetime
    valid_until: UtcDatetime
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: int = Field(1, ge=1)


class PromoCodeUpdate(CamelModel):
    description: Optional[str] = None
    valid_from: Optional[UtcDatetime] = None
    valid_until: Optional[UtcDatetime] = None
    max_uses: Optional[int] = Field(None, ge=1)
    max_uses_per_user: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None


class PromoCodeResponse(CamelModel):
    id: uuid.UUID
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Money
    max_discount_amount: Optional[Money] = None
    applicable_plans: Optional[list[uuid.UUID]] = None
    applicable_billing_cycles: Optional[list[BillingCycle]] = None
    valid_from: UtcDatetime
    valid_until: UtcDatetime
    max_uses: Optional[int] = None
    max_uses_per_user: int
    current_uses: int
    is_active: bool
    created_at: UtcDatetime


class PromoCodeStats(CamelModel):
    total_uses: int
    total_discount: Money
    unique_users: int


class PromoCodeDetail(PromoCodeResponse):
    stats: PromoCodeStats


class PublicPromoCode(CamelModel):
    """Browsable view of an active code; hides caps and counters."""
    code: str
    description: Optional[str] = None
    discount_type: str
    discount_value: Money
    max_discount_amount: Optional[Money] = None
    valid_until: UtcDatetime


class PromoValidateRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=50)
    plan_id: uuid.UUID
    billing_cycle: BillingCycle


class PromoValidation(CamelModel):
    valid: bool
    code: str
    discount_type: str
    discount_value: Money
    max_discount_amount: Optional[Money] = None
    description: Optional[str] = None


class CalculateDiscountRequest(CamelModel):
    code: str = Field(..., min_length=1, max_length=50)
    amount: Money = Field(..., gt=0)


class DiscountCalculation(CamelModel):
    code: Optional[str] = None
    original_amount: Money
    discount_amount: Money
    final_amount: Money
    currency: Optional[str] = None


# ==================== Transaction Schemas ====================

class TransactionResponse(CamelModel):
    id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: Optional[uuid.UUID] = None
    transaction_type: str
    amount: Money
    currency: str
    payment_method: str
    payment_status: str
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    invoice_number: Optional[str] = None
    invoice_url: Optional[str] = None
    description: Optional[str] = None
    metadata: Optional[dict[str, Any]] = Field(
        None, validation_alias="transaction_metadata", serialization_alias="metadata"
    )
    created_at: UtcDatetime


class RevenueStats(CamelModel):
    total_revenue: Money
    currency: str
