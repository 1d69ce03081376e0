"""Promo engine: discount code validation, discount arithmetic and redemption.

Validation reports the first failing rule as a human-readable message.
Redemption closes the over-redemption race by locking the promo row and
incrementing its counter with an UPDATE guarded by the global cap, in the
same transaction as the PromoUsage insert.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, CacheKeys
from app.core.config import settings
from app.core.metrics import PROMO_REDEMPTIONS_TOTAL
from app.core.time import ensure_utc, utcnow
from app.modules.billing.exceptions import ConflictError, NotFoundError, ValidationError
from app.modules.billing.models import BillingCycle, DiscountType, PromoCode, PromoUsage
from app.modules.billing.repository import PromoCodeRepository
from app.modules.billing.schemas import (
    DiscountCalculation,
    Page,
    PromoCodeCreate,
    PromoCodeDetail,
    PromoCodeResponse,
    PromoCodeStats,
    PromoCodeUpdate,
    PublicPromoCode,
    to_money,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")

# Columns an admin may clear to NULL (max_uses: NULL = no global cap)
_NULLABLE_PROMO_FIELDS = frozenset({"description", "max_uses"})

# Validation failure messages, in check order
INVALID_CODE = "Invalid promo code"
INACTIVE_CODE = "Promo code is no longer active"
NOT_YET_VALID = "Promo code is not yet valid"
EXPIRED_CODE = "Promo code has expired"
USAGE_LIMIT_REACHED = "Promo code usage limit reached"
ALREADY_USED = "You have already used this promo code"
PLAN_NOT_APPLICABLE = "Promo code not applicable to this plan"
CYCLE_NOT_APPLICABLE = "Promo code not applicable to this billing cycle"


class PromoCodeNotFoundError(NotFoundError):
    def __init__(self, message: str = "Promo code not found"):
        super().__init__(message)


@dataclass
class PromoValidation:
    """Outcome of ``PromoEngine.validate``."""
    valid: bool
    message: Optional[str] = None
    promo: Optional[PromoCodeResponse] = None


def calculate_discount(
    discount_type: str,
    discount_value: Decimal,
    original_amount: Decimal,
    max_discount_amount: Optional[Decimal] = None,
) -> tuple[Decimal, Decimal]:
    """Compute ``(discount, final)`` for an amount.

    Percentage discounts are capped at ``max_discount_amount`` when set;
    fixed discounts never exceed the original amount. Both results are
    rounded to 2 decimal places and ``final == original - discount``.

    Args:
        discount_type: PERCENTAGE or FIXED_AMOUNT
        discount_value: Percentage points or fixed amount
        original_amount: Price before discount
        max_discount_amount: Optional cap on percentage discounts

    Returns:
        Tuple of (discount amount, final amount)
    """
    original = to_money(original_amount)
    if original <= ZERO:
        return ZERO, ZERO

    if discount_type == DiscountType.PERCENTAGE.value:
        discount = to_money(original * Decimal(discount_value) / Decimal(100))
        if max_discount_amount is not None and discount > to_money(max_discount_amount):
            discount = to_money(max_discount_amount)
    elif discount_type == DiscountType.FIXED_AMOUNT.value:
        discount = to_money(discount_value)
    else:
        raise ValidationError(f"Unsupported discount type: {discount_type}")

    discount = min(max(discount, ZERO), original)
    return discount, original - discount


class PromoEngine:
    """Discount code validation, redemption and administration."""

    def __init__(self, session: AsyncSession, cache: Cache):
        self.session = session
        self.cache = cache
        self.promo_repo = PromoCodeRepository(session)

    # ==================== Validation ====================

    async def validate(
        self,
        code: str,
        user_id: uuid.UUID,
        plan_id: uuid.UUID,
        billing_cycle: BillingCycle,
    ) -> PromoValidation:
        """Check whether ``user_id`` may apply ``code`` to a plan and cycle.

        Rules are checked in order and the first failure is reported. The
        per-user count always comes from PromoUsage rows.
        """
        promo = await self.find_by_code(code)
        if promo is None:
            return PromoValidation(valid=False, message=INVALID_CODE)

        if not promo.is_active:
            return PromoValidation(valid=False, message=INACTIVE_CODE)

        now = utcnow()
        if now < promo.valid_from:
            return PromoValidation(valid=False, message=NOT_YET_VALID)
        if now > promo.valid_until:
            return PromoValidation(valid=False, message=EXPIRED_CODE)

        if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
            return PromoValidation(valid=False, message=USAGE_LIMIT_REACHED)

        user_uses = await self.promo_repo.count_user_uses(promo.id, user_id)
        if user_uses >= promo.max_uses_per_user:
            return PromoValidation(valid=False, message=ALREADY_USED)

        if promo.applicable_plans and str(plan_id) not in {
            str(pid) for pid in promo.applicable_plans
        }:
            return PromoValidation(valid=False, message=PLAN_NOT_APPLICABLE)

        cycle = billing_cycle.value if isinstance(billing_cycle, BillingCycle) else billing_cycle
        if promo.applicable_billing_cycles and cycle not in promo.applicable_billing_cycles:
            return PromoValidation(valid=False, message=CYCLE_NOT_APPLICABLE)

        return PromoValidation(valid=True, promo=promo)

    async def find_by_code(self, code: str) -> Optional[PromoCodeResponse]:
        """Promo definition by code (case-insensitive), served from the cache.

        The cached ``current_uses`` may lag; redemption re-checks the cap
        against the locked row.
        """
        key = CacheKeys.promo(code.strip())
        cached = await self.cache.get(key)
        if cached is not None:
            return PromoCodeResponse.model_validate(cached)

        promo = await self.promo_repo.get_by_code(code.strip())
        if promo is None:
            return None
        response = self._to_response(promo)
        await self.cache.set(key, response.model_dump(mode="json"), settings.PROMO_CACHE_TTL)
        return response

    def calculate_discount(
        self, promo: PromoCodeResponse, original_amount: Decimal
    ) -> DiscountCalculation:
        discount, final = calculate_discount(
            promo.discount_type,
            promo.discount_value,
            original_amount,
            promo.max_discount_amount,
        )
        return DiscountCalculation(
            code=promo.code,
            original_amount=original_amount,
            discount_amount=discount,
            final_amount=final,
            currency=settings.CURRENCY,
        )

    async def calculate_for_code(self, code: str, amount: Decimal) -> DiscountCalculation:
        """Preview the discount a code gives on ``amount``, without eligibility checks."""
        promo = await self.find_by_code(code)
        if promo is None:
            raise PromoCodeNotFoundError()
        return self.calculate_discount(promo, amount)

    # ==================== Redemption ====================

    async def record_usage(
        self,
        promo_id: uuid.UUID,
        user_id: uuid.UUID,
        subscription_id: Optional[uuid.UUID],
        transaction_id: Optional[uuid.UUID],
        discount_amount: Decimal,
    ) -> PromoUsage:
        """Stage one redemption in the caller's transaction.

        The promo row is locked, the per-user cap re-checked against
        PromoUsage rows and the global counter bumped only if still under
        ``max_uses``. Nothing is committed here.

        Raises:
            NotFoundError: Unknown promo
            ConflictError: Per-user or global cap already reached
        """
        promo = await self.promo_repo.lock(promo_id)
        if promo is None:
            raise PromoCodeNotFoundError()

        user_uses = await self.promo_repo.count_user_uses(promo_id, user_id)
        if user_uses >= promo.max_uses_per_user:
            raise ConflictError(ALREADY_USED)

        if not await self.promo_repo.increment_if_under_cap(promo_id):
            raise ConflictError(USAGE_LIMIT_REACHED)

        usage = await self.promo_repo.add_usage(
            promo_code_id=promo_id,
            user_id=user_id,
            subscription_id=subscription_id,
            transaction_id=transaction_id,
            discount_amount=to_money(discount_amount),
        )
        PROMO_REDEMPTIONS_TOTAL.labels(discount_type=promo.discount_type).inc()
        logger.info(
            "Promo code redeemed",
            extra={
                "promo_code": promo.code,
                "user_id": str(user_id),
                "discount_amount": str(discount_amount),
            },
        )
        return usage

    async def invalidate(self, code: str) -> None:
        await self.cache.delete(CacheKeys.promo(code))

    # ==================== Administration ====================

    async def create_promo_code(self, data: PromoCodeCreate) -> PromoCodeResponse:
        """Create a code after checking its discount configuration.

        Raises:
            ValidationError: Bad discount type, value or validity window
            ConflictError: Code already exists (case-insensitive)
        """
        if data.discount_type not in (DiscountType.PERCENTAGE.value, DiscountType.FIXED_AMOUNT.value):
            raise ValidationError("Discount type must be PERCENTAGE or FIXED_AMOUNT")
        if data.discount_value <= ZERO:
            raise ValidationError("Discount value must be greater than 0")
        if data.discount_type == DiscountType.PERCENTAGE.value and data.discount_value > Decimal(100):
            raise ValidationError("Percentage discount cannot exceed 100%")
        if data.max_discount_amount is not None and data.max_discount_amount <= ZERO:
            raise ValidationError("Maximum discount amount must be greater than 0")
        if data.valid_until <= data.valid_from:
            raise ValidationError("Valid until date must be after valid from date")

        code = data.code.strip().upper()
        if await self.promo_repo.get_by_code(code) is not None:
            raise ConflictError("Promo code already exists")

        try:
            promo = await self.promo_repo.create(
                code=code,
                description=data.description,
                discount_type=data.discount_type,
                discount_value=data.discount_value,
                max_discount_amount=data.max_discount_amount,
                applicable_plans=[str(pid) for pid in data.applicable_plans]
                if data.applicable_plans else None,
                applicable_billing_cycles=[cycle.value for cycle in data.applicable_billing_cycles]
                if data.applicable_billing_cycles else None,
                valid_from=data.valid_from,
                valid_until=data.valid_until,
                max_uses=data.max_uses,
                max_uses_per_user=data.max_uses_per_user,
                current_uses=0,
                is_active=True,
            )
            await self.session.commit()
        except IntegrityError:
            await self.session.rollback()
            raise ConflictError("Promo code already exists")

        logger.info("Promo code created", extra={"promo_code": code})
        return self._to_response(promo)

    async def list_promo_codes(self, page: int = 1, limit: int = 20) -> Page[PromoCodeResponse]:
        promos = await self.promo_repo.list_all(offset=(page - 1) * limit, limit=limit)
        total = await self.promo_repo.count_all()
        return Page[PromoCodeResponse](
            items=[self._to_response(promo) for promo in promos],
            total=total,
            page=page,
            limit=limit,
        )

    async def get_promo_code(self, promo_id: uuid.UUID) -> PromoCodeDetail:
        promo = await self.promo_repo.get_by_id(promo_id)
        if promo is None:
            raise PromoCodeNotFoundError()

        total_uses, total_discount, unique_users = await self.promo_repo.get_stats(promo_id)
        return PromoCodeDetail(
            **self._to_response(promo).model_dump(),
            stats=PromoCodeStats(
                total_uses=total_uses,
                total_discount=total_discount,
                unique_users=unique_users,
            ),
        )

    async def update_promo_code(
        self, promo_id: uuid.UUID, data: PromoCodeUpdate
    ) -> PromoCodeResponse:
        promo = await self.promo_repo.get_by_id(promo_id)
        if promo is None:
            raise PromoCodeNotFoundError()

        changes = {
            key: value
            for key, value in data.model_dump(exclude_unset=True).items()
            if value is not None or key in _NULLABLE_PROMO_FIELDS
        }
        if not changes:
            raise ValidationError("No fields to update")

        valid_from = changes.get("valid_from") or ensure_utc(promo.valid_from)
        valid_until = changes.get("valid_until") or ensure_utc(promo.valid_until)
        if valid_until <= valid_from:
            raise ValidationError("Valid until date must be after valid from date")

        await self.promo_repo.update(promo, **changes)
        await self.session.commit()
        await self.invalidate(promo.code)

        logger.info(
            "Promo code updated",
            extra={"promo_code": promo.code, "fields": sorted(changes)},
        )
        return self._to_response(promo)

    async def deactivate_promo_code(self, promo_id: uuid.UUID) -> PromoCodeResponse:
        """Soft delete: the code stops validating, its history is kept."""
        promo = await self.promo_repo.get_by_id(promo_id)
        if promo is None:
            raise PromoCodeNotFoundError()

        await self.promo_repo.update(promo, is_active=False)
        await self.session.commit()
        await self.invalidate(promo.code)

        logger.info("Promo code deactivated", extra={"promo_code": promo.code})
        return self._to_response(promo)

    async def list_active_promo_codes(self) -> list[PublicPromoCode]:
        promos = await self.promo_repo.list_redeemable(utcnow())
        return [PublicPromoCode.model_validate(promo) for promo in promos]

    def _to_response(self, promo: PromoCode) -> PromoCodeResponse:
        return PromoCodeResponse.model_validate(promo)
