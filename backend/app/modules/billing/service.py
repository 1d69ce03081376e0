"""Billing orchestration: checkout and renewal.

``subscribe`` composes the plan catalog, promo engine, subscription ledger,
transaction log and usage meter inside one database transaction. The
partial unique index on active subscriptions closes the duplicate-checkout
race; the promo counter is bumped with a cap-guarded UPDATE.
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache
from app.core.config import settings
from app.core.metrics import SUBSCRIPTION_FAILURES_TOTAL, SUBSCRIPTIONS_CREATED_TOTAL
from app.core.time import ensure_utc, utcnow
from app.core.tracing import add_span_attributes, create_span
from app.modules.billing.catalog import PlanCatalog, parse_billing_cycle
from app.modules.billing.exceptions import (
    BillingError,
    ConflictError,
    InternalError,
    NotFoundError,
    PaymentFailedError,
    ValidationError,
)
from app.modules.billing.ledger import SubscriptionLedger, SubscriptionNotFoundError
from app.modules.billing.metering import UsageMeter
from app.modules.billing.models import (
    BillingCycle,
    PaymentStatus,
    Subscription,
    SubscriptionStatus,
    Transaction,
    TransactionType,
)
from app.modules.billing.payments import (
    ImmediateSuccessConfirmer,
    PaymentConfirmer,
    PaymentRequest,
)
from app.modules.billing.promotions import PromoEngine, calculate_discount
from app.modules.billing.repository import PlanRepository, SubscriptionRepository
from app.modules.billing.schemas import (
    CurrentSubscriptionResponse,
    SubscribeRequest,
    SubscribeResult,
    to_money,
)
from app.modules.billing.transactions import TransactionLog

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

ACTIVE_SUBSCRIPTION_EXISTS = (
    "You already have an active subscription. "
    "Please cancel or let it expire before subscribing to a new plan."
)


def add_billing_period(start: datetime, cycle: BillingCycle) -> Optional[datetime]:
    """End of one period of ``cycle`` starting at ``start``; None for LIFETIME.

    Month ends clamp to the last day of the target month (Jan 31 -> Feb 28).
    """
    if cycle == BillingCycle.MONTHLY:
        return start + relativedelta(months=1)
    if cycle == BillingCycle.YEARLY:
        return start + relativedelta(years=1)
    return None


class BillingService:
    """Checkout and renewal use cases spanning several billing components."""

    def __init__(
        self,
        session: AsyncSession,
        cache: Cache,
        payment_confirmer: Optional[PaymentConfirmer] = None,
    ):
        self.session = session
        self.cache = cache
        self.payment_confirmer = payment_confirmer or ImmediateSuccessConfirmer()
        self.plan_repo = PlanRepository(session)
        self.subscription_repo = SubscriptionRepository(session)
        self.catalog = PlanCatalog(session, cache)
        self.promotions = PromoEngine(session, cache)
        self.ledger = SubscriptionLedger(session, cache)
        self.transactions = TransactionLog(session, cache)
        self.metering = UsageMeter(session, cache)

    # ==================== Checkout ====================

    async def subscribe(self, user_id: uuid.UUID, request: SubscribeRequest) -> SubscribeResult:
        """Purchase a plan for a billing cycle.

        Args:
            user_id: Buyer
            request: Plan, cycle and optional promo code / payment method

        Returns:
            SubscribeResult describing the new subscription and its transaction

        Raises:
            NotFoundError: Unknown or inactive plan
            ValidationError: Unsupported cycle or rejected promo code
            ConflictError: User already has an active subscription, or the
                promo cap was exhausted by a concurrent checkout
            PaymentFailedError: Payment confirmation did not succeed
            InternalError: The database rejected the write
        """
        with create_span(
            "billing.subscribe",
            attributes={"user_id": str(user_id), "plan_id": str(request.plan_id)},
        ):
            try:
                result = await self._subscribe(user_id, request)
            except BillingError as e:
                await self.session.rollback()
                SUBSCRIPTION_FAILURES_TOTAL.labels(reason=type(e).__name__).inc()
                raise
            except SQLAlchemyError as e:
                await self.session.rollback()
                SUBSCRIPTION_FAILURES_TOTAL.labels(reason="InternalError").inc()
                raise InternalError("Subscription could not be completed") from e

            SUBSCRIPTIONS_CREATED_TOTAL.labels(billing_cycle=result.billing_cycle.value).inc()
            add_span_attributes({
                "subscription_id": str(result.subscription_id),
                "amount": float(result.amount),
            })
            return result

    async def _subscribe(self, user_id: uuid.UUID, request: SubscribeRequest) -> SubscribeResult:
        cycle = parse_billing_cycle(request.billing_cycle)

        plan = await self.plan_repo.get_by_id(request.plan_id)
        if plan is None:
            raise NotFoundError("Subscription plan not found")

        original_amount = to_money(plan.price_for(cycle))
        amount, discount = original_amount, ZERO

        promo = None
        if request.promo_code:
            validation = await self.promotions.validate(
                request.promo_code, user_id, plan.id, cycle
            )
            if not validation.valid:
                raise ValidationError(validation.message)
            promo = validation.promo
            discount, amount = calculate_discount(
                promo.discount_type,
                promo.discount_value,
                original_amount,
                promo.max_discount_amount,
            )

        now = utcnow()
        expired = await self.ledger.expire_overdue(user_id=user_id, commit=False)

        existing = await self.subscription_repo.get_active(user_id, now)
        if existing is not None:
            raise await self._active_subscription_conflict(existing)

        end_date = add_billing_period(now, cycle)
        payment_method = request.payment_method or settings.DEFAULT_PAYMENT_METHOD
        description = f"Subscription to {plan.plan_name} - {cycle.value}"

        try:
            subscription = await self.subscription_repo.create(
                user_id=user_id,
                plan_id=plan.id,
                billing_cycle=cycle.value,
                amount_paid=amount,
                currency=settings.CURRENCY,
                status=SubscriptionStatus.ACTIVE.value,
                start_date=now,
                end_date=end_date,
                next_billing_date=end_date,
                auto_renew=cycle != BillingCycle.LIFETIME,
            )
        except IntegrityError:
            # Lost the race against a concurrent checkout for the same user
            await self.session.rollback()
            existing = await self.subscription_repo.get_active(user_id, utcnow())
            if existing is not None:
                raise await self._active_subscription_conflict(existing)
            raise ConflictError(ACTIVE_SUBSCRIPTION_EXISTS)

        transaction = await self.transactions.append(
            user_id=user_id,
            subscription_id=subscription.id,
            transaction_type=TransactionType.NEW,
            amount=amount,
            payment_status=PaymentStatus.PENDING,
            payment_method=payment_method,
            description=description,
            metadata={
                "original_amount": str(original_amount),
                "discount_amount": str(discount),
                "promo_code": promo.code if promo else None,
            },
            commit=False,
        )

        if promo is not None:
            await self.promotions.record_usage(
                promo.id, user_id, subscription.id, transaction.id, discount
            )

        await self.metering.get_or_create_monthly_usage(
            user_id, subscription.id, now=now, commit=False
        )

        await self._settle(transaction, user_id, amount, payment_method, description)
        await self.session.commit()

        await self.ledger.invalidate(user_id, subscription.id)
        for old in expired:
            await self.ledger.invalidate(old.user_id, old.id)
        await self.transactions.invalidate(user_id)
        await self.metering.invalidate(user_id)
        if promo is not None:
            await self.promotions.invalidate(promo.code)

        logger.info(
            "Subscription created",
            extra={
                "subscription_id": str(subscription.id),
                "user_id": str(user_id),
                "plan_code": plan.plan_code,
                "billing_cycle": cycle.value,
                "amount": str(amount),
                "discount": str(discount),
            },
        )
        return SubscribeResult(
            subscription_id=subscription.id,
            transaction_id=transaction.id,
            plan_name=plan.plan_name,
            billing_cycle=cycle,
            amount=amount,
            discount_applied=discount,
            currency=settings.CURRENCY,
            start_date=now,
            end_date=end_date,
            status=subscription.status,
        )

    async def _settle(
        self,
        transaction: Transaction,
        user_id: uuid.UUID,
        amount: Decimal,
        payment_method: str,
        description: str,
    ) -> None:
        """Confirm payment for a staged transaction and mark it SUCCESS."""
        result = await self.payment_confirmer.confirm(
            PaymentRequest(
                user_id=user_id,
                amount=amount,
                currency=settings.CURRENCY,
                payment_method=payment_method,
                description=description,
                reference=transaction.invoice_number,
            )
        )
        if result.status != PaymentStatus.SUCCESS:
            logger.warning(
                "Payment not confirmed",
                extra={
                    "user_id": str(user_id),
                    "invoice_number": transaction.invoice_number,
                    "status": result.status.value,
                    "reason": result.failure_reason,
                },
            )
            raise PaymentFailedError(result.failure_reason or "Payment could not be completed")

        transaction.payment_status = PaymentStatus.SUCCESS.value
        transaction.payment_id = result.payment_id
        transaction.gateway_payment_id = result.payment_id
        transaction.gateway_order_id = result.gateway_order_id
        transaction.gateway_response = result.gateway_response or None

    async def _active_subscription_conflict(self, existing: Subscription) -> ConflictError:
        plan = await self.plan_repo.get_by_id(existing.plan_id, include_inactive=True)
        end_date = ensure_utc(existing.end_date)
        return ConflictError(
            ACTIVE_SUBSCRIPTION_EXISTS,
            details={
                "currentSubscription": {
                    "planName": plan.plan_name if plan else None,
                    "endDate": end_date.isoformat() if end_date else None,
                }
            },
        )

    # ==================== Renewal ====================

    async def renew_subscription(self, subscription_id: uuid.UUID) -> SubscribeResult:
        """Charge another period and extend the subscription in place.

        The new period starts at the current end date. Renewable usage
        counters are reset. A declined payment is recorded as a FAILED
        RENEWAL transaction and the subscription is left unchanged.

        Raises:
            NotFoundError: Unknown subscription
            ConflictError: Subscription is terminal or LIFETIME
            PaymentFailedError: Payment confirmation did not succeed
        """
        subscription = await self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            raise SubscriptionNotFoundError()
        if subscription.is_lifetime():
            raise ConflictError("Lifetime subscriptions do not renew")
        if subscription.status != SubscriptionStatus.ACTIVE.value:
            raise ConflictError(f"Cannot renew a {subscription.status.lower()} subscription")

        plan = await self.plan_repo.get_by_id(subscription.plan_id, include_inactive=True)
        if plan is None:
            raise NotFoundError("Subscription plan not found")

        cycle = BillingCycle(subscription.billing_cycle)
        amount = to_money(plan.price_for(cycle))
        period_start = max(ensure_utc(subscription.end_date), utcnow())
        new_end_date = add_billing_period(period_start, cycle)
        description = f"Renewal of {plan.plan_name} - {cycle.value}"
        payment_method = settings.DEFAULT_PAYMENT_METHOD
        user_id = subscription.user_id

        transaction = await self.transactions.append(
            user_id=user_id,
            subscription_id=subscription.id,
            transaction_type=TransactionType.RENEWAL,
            amount=amount,
            payment_status=PaymentStatus.PENDING,
            payment_method=payment_method,
            description=description,
            commit=False,
        )
        try:
            await self._settle(transaction, user_id, amount, payment_method, description)
        except PaymentFailedError:
            transaction.payment_status = PaymentStatus.FAILED.value
            await self.session.commit()
            await self.transactions.invalidate(user_id)
            raise

        try:
            renewed = await self.ledger.renew(
                subscription.id,
                new_end_date=new_end_date,
                next_billing_date=new_end_date,
                amount_paid=amount,
                commit=False,
            )
            await self.metering.reset_monthly_counters(user_id, commit=False)
            await self.session.commit()
        except BillingError:
            await self.session.rollback()
            raise

        await self.ledger.invalidate(user_id, subscription.id)
        await self.transactions.invalidate(user_id)
        await self.metering.invalidate(user_id)

        return SubscribeResult(
            subscription_id=renewed.id,
            transaction_id=transaction.id,
            plan_name=plan.plan_name,
            billing_cycle=cycle,
            amount=amount,
            discount_applied=ZERO,
            currency=settings.CURRENCY,
            start_date=period_start,
            end_date=new_end_date,
            status=renewed.status,
        )

    # ==================== Overview ====================

    async def get_current_subscription(
        self, user_id: uuid.UUID
    ) -> Optional[CurrentSubscriptionResponse]:
        """Active subscription with its plan and this month's usage snapshot."""
        subscription = await self.ledger.get_active_subscription(user_id)
        if subscription is None:
            return None

        plan = await self.catalog.find_by_id(subscription.plan_id, include_inactive=True)
        if plan is None:
            raise NotFoundError("Subscription plan not found")

        usage = await self.metering.get_current_usage(user_id)
        return CurrentSubscriptionResponse(subscription=subscription, plan=plan, usage=usage)
