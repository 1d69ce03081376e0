"""API routers for the billing service.

Plans, subscriptions, usage, promo codes and transactions. Every response is
wrapped in ``{success, data, error}``; failures are rendered by the exception
handlers registered in ``app.main``.
"""

import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, get_cache
from app.core.config import settings
from app.core.database import get_session
from app.core.security import CurrentUser, get_current_user, require_admin
from app.modules.billing.catalog import PlanCatalog
from app.modules.billing.exceptions import ValidationError
from app.modules.billing.ledger import SubscriptionLedger
from app.modules.billing.metering import MAX_HISTORY_MONTHS, UsageMeter
from app.modules.billing.payments import PaymentConfirmer, get_payment_confirmer
from app.modules.billing.promotions import PromoEngine
from app.modules.billing.schemas import (
    ApiResponse,
    AutoRenewRequest,
    CalculateDiscountRequest,
    CancelSubscriptionRequest,
    CurrentSubscriptionResponse,
    CurrentUsageResponse,
    DiscountCalculation,
    LimitCheckResult,
    Page,
    PlanCreate,
    PlanResponse,
    PlanUpdate,
    PricingResponse,
    PromoCodeCreate,
    PromoCodeDetail,
    PromoCodeResponse,
    PromoCodeUpdate,
    PromoValidateRequest,
    PromoValidation,
    PublicPromoCode,
    RevenueStats,
    SetUsageRequest,
    SubscribeRequest,
    SubscribeResult,
    SubscriptionResponse,
    TransactionResponse,
    UsageRecordResponse,
)
from app.modules.billing.service import BillingService
from app.modules.billing.transactions import TransactionLog


# ==================== Dependencies ====================

def get_catalog(
    session: AsyncSession = Depends(get_session),
    cache: Cache = Depends(get_cache),
) -> PlanCatalog:
    return PlanCatalog(session, cache)


def get_promo_engine(
    session: AsyncSession = Depends(get_session),
    cache: Cache = Depends(get_cache),
) -> PromoEngine:
    return PromoEngine(session, cache)


def get_usage_meter(
    session: AsyncSession = Depends(get_session),
    cache: Cache = Depends(get_cache),
) -> UsageMeter:
    return UsageMeter(session, cache)


def get_ledger(
    session: AsyncSession = Depends(get_session),
    cache: Cache = Depends(get_cache),
) -> SubscriptionLedger:
    return SubscriptionLedger(session, cache)


def get_transaction_log(
    session: AsyncSession = Depends(get_session),
    cache: Cache = Depends(get_cache),
) -> TransactionLog:
    return TransactionLog(session, cache)


def get_billing_service(
    session: AsyncSession = Depends(get_session),
    cache: Cache = Depends(get_cache),
    confirmer: PaymentConfirmer = Depends(get_payment_confirmer),
) -> BillingService:
    return BillingService(session, cache, confirmer)


def _parse_uuid_list(raw: str) -> list[uuid.UUID]:
    try:
        return [uuid.UUID(part.strip()) for part in raw.split(",") if part.strip()]
    except ValueError:
        raise ValidationError("planIds must be a comma-separated list of plan ids")


# ==================== Plans ====================

plans_router = APIRouter(tags=["plans"])


@plans_router.get("/plans", response_model=ApiResponse[list[PlanResponse]])
async def list_plans(catalog: PlanCatalog = Depends(get_catalog)):
    """Active, visible plans ordered for display. No authentication required."""
    return ApiResponse(data=await catalog.list_active_plans())


@plans_router.get("/plans-compare", response_model=ApiResponse[list[PlanResponse]])
async def compare_plans(
    plan_ids: str = Query(..., alias="planIds"),
    catalog: PlanCatalog = Depends(get_catalog),
):
    ids = _parse_uuid_list(plan_ids)
    if not ids:
        raise ValidationError("At least one plan id is required")
    return ApiResponse(data=await catalog.compare(ids))


@plans_router.get("/plans-all", response_model=ApiResponse[list[PlanResponse]])
async def list_all_plans(
    catalog: PlanCatalog = Depends(get_catalog),
    _: CurrentUser = Depends(require_admin),
):
    """Every plan, inactive and hidden included."""
    return ApiResponse(data=await catalog.list_all_plans())


@plans_router.get("/plans/{plan_id}", response_model=ApiResponse[PlanResponse])
async def get_plan(plan_id: uuid.UUID, catalog: PlanCatalog = Depends(get_catalog)):
    return ApiResponse(data=await catalog.get_plan(plan_id))


@plans_router.get("/plans/{plan_id}/pricing", response_model=ApiResponse[PricingResponse])
async def get_plan_pricing(
    plan_id: uuid.UUID,
    billing_cycle: Optional[str] = Query(None, alias="billingCycle"),
    catalog: PlanCatalog = Depends(get_catalog),
):
    return ApiResponse(data=await catalog.get_pricing(plan_id, billing_cycle))


@plans_router.post(
    "/plans",
    response_model=ApiResponse[PlanResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_plan(
    data: PlanCreate,
    catalog: PlanCatalog = Depends(get_catalog),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await catalog.create_plan(data))


@plans_router.put("/plans/{plan_id}", response_model=ApiResponse[PlanResponse])
async def update_plan(
    plan_id: uuid.UUID,
    data: PlanUpdate,
    catalog: PlanCatalog = Depends(get_catalog),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await catalog.update_plan(plan_id, data))


# ==================== Subscriptions ====================

subscriptions_router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@subscriptions_router.post(
    "/subscribe",
    response_model=ApiResponse[SubscribeResult],
    status_code=status.HTTP_201_CREATED,
)
async def subscribe(
    data: SubscribeRequest,
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    """Purchase a plan. 409 if the caller already has an active subscription."""
    return ApiResponse(data=await service.subscribe(user.id, data))


@subscriptions_router.get(
    "/current", response_model=ApiResponse[Optional[CurrentSubscriptionResponse]]
)
async def get_current_subscription(
    user: CurrentUser = Depends(get_current_user),
    service: BillingService = Depends(get_billing_service),
):
    current = await service.get_current_subscription(user.id)
    if current is None:
        return ApiResponse(data=None, error="No active subscription")
    return ApiResponse(data=current)


@subscriptions_router.get("/history", response_model=ApiResponse[Page[SubscriptionResponse]])
async def get_subscription_history(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    return ApiResponse(data=await ledger.list_history(user.id, page=page, limit=limit))


@subscriptions_router.get("/{subscription_id}", response_model=ApiResponse[SubscriptionResponse])
async def get_subscription(
    subscription_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    owner = None if user.is_admin else user.id
    return ApiResponse(data=await ledger.get_subscription(subscription_id, owner))


@subscriptions_router.post(
    "/{subscription_id}/cancel", response_model=ApiResponse[SubscriptionResponse]
)
async def cancel_subscription(
    subscription_id: uuid.UUID,
    data: Optional[CancelSubscriptionRequest] = None,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    owner = None if user.is_admin else user.id
    reason = data.reason if data else None
    cancelled = await ledger.cancel(subscription_id, owner, reason=reason, cancelled_by=user.id)
    return ApiResponse(data=cancelled)


@subscriptions_router.put(
    "/{subscription_id}/auto-renew", response_model=ApiResponse[SubscriptionResponse]
)
async def toggle_auto_renew(
    subscription_id: uuid.UUID,
    data: AutoRenewRequest,
    user: CurrentUser = Depends(get_current_user),
    ledger: SubscriptionLedger = Depends(get_ledger),
):
    return ApiResponse(
        data=await ledger.toggle_auto_renew(subscription_id, user.id, data.auto_renew)
    )


@subscriptions_router.post("/{subscription_id}/renew", response_model=ApiResponse[SubscribeResult])
async def renew_subscription(
    subscription_id: uuid.UUID,
    service: BillingService = Depends(get_billing_service),
    _: CurrentUser = Depends(require_admin),
):
    """Admin-triggered renewal; the scheduled job uses the same flow."""
    return ApiResponse(data=await service.renew_subscription(subscription_id))


# ==================== Usage ====================

usage_router = APIRouter(prefix="/usage", tags=["usage"])


@usage_router.get("/current", response_model=ApiResponse[CurrentUsageResponse])
async def get_current_usage(
    user: CurrentUser = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter),
):
    return ApiResponse(data=await meter.get_current_usage(user.id))


@usage_router.get("/check-limit/{resource_type}", response_model=ApiResponse[LimitCheckResult])
async def check_limit(
    resource_type: str,
    user: CurrentUser = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter),
):
    return ApiResponse(data=await meter.check_limit(user.id, resource_type))


@usage_router.get("/history", response_model=ApiResponse[list[UsageRecordResponse]])
async def get_usage_history(
    months: int = Query(settings.USAGE_HISTORY_DEFAULT_MONTHS, ge=1, le=MAX_HISTORY_MONTHS),
    user: CurrentUser = Depends(get_current_user),
    meter: UsageMeter = Depends(get_usage_meter),
):
    return ApiResponse(data=await meter.get_usage_history(user.id, months))


@usage_router.put("/{user_id}/{resource_type}", response_model=ApiResponse[UsageRecordResponse])
async def set_usage(
    user_id: uuid.UUID,
    resource_type: str,
    data: SetUsageRequest,
    meter: UsageMeter = Depends(get_usage_meter),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await meter.set_usage(user_id, resource_type, data.value))


# ==================== Promo Codes ====================

promo_router = APIRouter(prefix="/promo-codes", tags=["promo-codes"])


@promo_router.get("/active", response_model=ApiResponse[list[PublicPromoCode]])
async def list_active_promo_codes(engine: PromoEngine = Depends(get_promo_engine)):
    """Browsable codes. No authentication required."""
    return ApiResponse(data=await engine.list_active_promo_codes())


@promo_router.post("/validate", response_model=ApiResponse[PromoValidation])
async def validate_promo_code(
    data: PromoValidateRequest,
    user: CurrentUser = Depends(get_current_user),
    engine: PromoEngine = Depends(get_promo_engine),
):
    """Pre-checkout check. A rejected code is a 400 carrying the reason."""
    result = await engine.validate(data.code, user.id, data.plan_id, data.billing_cycle)
    if not result.valid:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"success": False, "valid": False, "error": result.message},
        )
    promo = result.promo
    return ApiResponse(
        data=PromoValidation(
            valid=True,
            code=promo.code,
            discount_type=promo.discount_type,
            discount_value=promo.discount_value,
            max_discount_amount=promo.max_discount_amount,
            description=promo.description,
        )
    )


@promo_router.post("/calculate-discount", response_model=ApiResponse[DiscountCalculation])
async def calculate_discount(
    data: CalculateDiscountRequest,
    _: CurrentUser = Depends(get_current_user),
    engine: PromoEngine = Depends(get_promo_engine),
):
    return ApiResponse(data=await engine.calculate_for_code(data.code, data.amount))


@promo_router.post(
    "",
    response_model=ApiResponse[PromoCodeResponse],
    status_code=status.HTTP_201_CREATED,
)
async def create_promo_code(
    data: PromoCodeCreate,
    engine: PromoEngine = Depends(get_promo_engine),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await engine.create_promo_code(data))


@promo_router.get("", response_model=ApiResponse[Page[PromoCodeResponse]])
async def list_promo_codes(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    engine: PromoEngine = Depends(get_promo_engine),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await engine.list_promo_codes(page=page, limit=limit))


@promo_router.get("/{promo_id}", response_model=ApiResponse[PromoCodeDetail])
async def get_promo_code(
    promo_id: uuid.UUID,
    engine: PromoEngine = Depends(get_promo_engine),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await engine.get_promo_code(promo_id))


@promo_router.put("/{promo_id}", response_model=ApiResponse[PromoCodeResponse])
async def update_promo_code(
    promo_id: uuid.UUID,
    data: PromoCodeUpdate,
    engine: PromoEngine = Depends(get_promo_engine),
    _: CurrentUser = Depends(require_admin),
):
    return ApiResponse(data=await engine.update_promo_code(promo_id, data))


@promo_router.delete("/{promo_id}", response_model=ApiResponse[PromoCodeResponse])
async def delete_promo_code(
    promo_id: uuid.UUID,
    engine: PromoEngine = Depends(get_promo_engine),
    _: CurrentUser = Depends(require_admin),
):
    """Deactivates the code; redemption history is kept."""
    return ApiResponse(data=await engine.deactivate_promo_code(promo_id))


# ==================== Transactions ====================

transactions_router = APIRouter(prefix="/transactions", tags=["transactions"])


@transactions_router.get("", response_model=ApiResponse[Page[TransactionResponse]])
async def list_transactions(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=100),
    user: CurrentUser = Depends(get_current_user),
    log: TransactionLog = Depends(get_transaction_log),
):
    return ApiResponse(data=await log.list_for_user(user.id, page=page, limit=limit))


@transactions_router.get("/stats/revenue", response_model=ApiResponse[RevenueStats])
async def get_revenue_stats(
    user: CurrentUser = Depends(get_current_user),
    log: TransactionLog = Depends(get_transaction_log),
):
    """Admins see the overall total, other callers their own spend."""
    return ApiResponse(data=await log.total_revenue(None if user.is_admin else user.id))


@transactions_router.get("/{transaction_id}", response_model=ApiResponse[TransactionResponse])
async def get_transaction(
    transaction_id: uuid.UUID,
    user: CurrentUser = Depends(get_current_user),
    log: TransactionLog = Depends(get_transaction_log),
):
    owner = None if user.is_admin else user.id
    return ApiResponse(data=await log.get(transaction_id, owner))


router = APIRouter()
router.include_router(plans_router)
router.include_router(subscriptions_router)
router.include_router(usage_router)
router.include_router(promo_router)
router.include_router(transactions_router)
