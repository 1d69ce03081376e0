"""Transaction log: append-only history of monetary events."""

import logging
import secrets
import uuid
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.cache import Cache, CacheKeys
from app.core.config import settings
from app.core.time import utcnow
from app.modules.billing.exceptions import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from app.modules.billing.models import (
    PAYMENT_STATUS_TRANSITIONS,
    PaymentStatus,
    Transaction,
    TransactionType,
)
from app.modules.billing.repository import TransactionRepository
from app.modules.billing.schemas import Page, RevenueStats, TransactionResponse, to_money

logger = logging.getLogger(__name__)


class TransactionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Transaction not found"):
        super().__init__(message)


def generate_invoice_number(now=None) -> str:
    """Invoice reference of the form ``INV-YYYYMM-XXXXXXXX``."""
    now = now or utcnow()
    return f"INV-{now.strftime('%Y%m')}-{secrets.token_hex(4).upper()}"


class TransactionLog:
    """Appends and queries transactions.

    Rows are never edited except to move the payment status forward or to
    attach refund metadata.
    """

    def __init__(self, session: AsyncSession, cache: Cache):
        self.session = session
        self.cache = cache
        self.transaction_repo = TransactionRepository(session)

    async def append(
        self,
        user_id: uuid.UUID,
        subscription_id: Optional[uuid.UUID],
        transaction_type: TransactionType,
        amount: Decimal,
        payment_status: PaymentStatus = PaymentStatus.PENDING,
        payment_method: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        gateway_order_id: Optional[str] = None,
        commit: bool = True,
    ) -> Transaction:
        transaction = await self.transaction_repo.create(
            user_id=user_id,
            subscription_id=subscription_id,
            transaction_type=transaction_type.value,
            amount=to_money(amount),
            currency=settings.CURRENCY,
            payment_method=payment_method or settings.DEFAULT_PAYMENT_METHOD,
            payment_status=payment_status.value,
            gateway_order_id=gateway_order_id,
            invoice_number=generate_invoice_number(),
            description=description,
            transaction_metadata=metadata,
        )
        if commit:
            await self.session.commit()
            await self.invalidate(user_id)

        logger.info(
            "Transaction recorded",
            extra={
                "transaction_id": str(transaction.id),
                "user_id": str(user_id),
                "type": transaction_type.value,
                "amount": str(transaction.amount),
                "payment_status": payment_status.value,
            },
        )
        return transaction

    async def get(
        self, transaction_id: uuid.UUID, user_id: Optional[uuid.UUID] = None
    ) -> TransactionResponse:
        """Fetch one transaction; when ``user_id`` is given it must own it."""
        transaction = await self.transaction_repo.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError()
        if user_id is not None and transaction.user_id != user_id:
            raise AuthorizationError("You do not have access to this transaction")
        return TransactionResponse.model_validate(transaction)

    async def list_for_user(
        self, user_id: uuid.UUID, page: int = 1, limit: int = 50
    ) -> Page[TransactionResponse]:
        offset = (page - 1) * limit
        key = CacheKeys.user_transactions(user_id, limit, offset)
        cached = await self.cache.get(key)
        if cached is not None:
            return Page[TransactionResponse].model_validate(cached)

        transactions = await self.transaction_repo.list_for_user(user_id, offset, limit)
        total = await self.transaction_repo.count_for_user(user_id)
        result = Page[TransactionResponse](
            items=[TransactionResponse.model_validate(t) for t in transactions],
            total=total,
            page=page,
            limit=limit,
        )
        await self.cache.set(key, result.model_dump(mode="json"), settings.TRANSACTION_CACHE_TTL)
        return result

    async def list_for_subscription(self, subscription_id: uuid.UUID) -> list[TransactionResponse]:
        transactions = await self.transaction_repo.list_for_subscription(subscription_id)
        return [TransactionResponse.model_validate(t) for t in transactions]

    async def list_pending(self) -> list[TransactionResponse]:
        transactions = await self.transaction_repo.list_pending()
        return [TransactionResponse.model_validate(t) for t in transactions]

    async def find_by_gateway_order_id(self, order_id: str) -> Optional[TransactionResponse]:
        transaction = await self.transaction_repo.get_by_gateway_order_id(order_id)
        return TransactionResponse.model_validate(transaction) if transaction else None

    async def total_revenue(self, user_id: Optional[uuid.UUID] = None) -> RevenueStats:
        """Sum of SUCCESS amounts, overall or for one user."""
        total = await self.transaction_repo.total_revenue(user_id)
        return RevenueStats(total_revenue=total, currency=settings.CURRENCY)

    async def update_status(
        self,
        transaction_id: uuid.UUID,
        status: PaymentStatus,
        gateway_payment_id: Optional[str] = None,
        gateway_signature: Optional[str] = None,
        gateway_response: Optional[dict[str, Any]] = None,
    ) -> TransactionResponse:
        """Move the payment status forward.

        Raises:
            NotFoundError: Unknown transaction
            ConflictError: Transition is not forward (e.g. FAILED -> SUCCESS)
        """
        transaction = await self.transaction_repo.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError()

        current = PaymentStatus(transaction.payment_status)
        if status not in PAYMENT_STATUS_TRANSITIONS[current]:
            raise ConflictError(
                f"Cannot change payment status from {current.value} to {status.value}"
            )

        transaction.payment_status = status.value
        if gateway_payment_id is not None:
            transaction.gateway_payment_id = gateway_payment_id
            transaction.payment_id = gateway_payment_id
        if gateway_signature is not None:
            transaction.gateway_signature = gateway_signature
        if gateway_response is not None:
            transaction.gateway_response = gateway_response
        await self.session.commit()
        await self.invalidate(transaction.user_id)

        logger.info(
            "Transaction status updated",
            extra={
                "transaction_id": str(transaction_id),
                "from_status": current.value,
                "to_status": status.value,
            },
        )
        return TransactionResponse.model_validate(transaction)

    async def mark_refunded(
        self,
        transaction_id: uuid.UUID,
        refund_id: str,
        refund_amount: Decimal,
        reason: Optional[str] = None,
    ) -> TransactionResponse:
        """SUCCESS -> REFUNDED, recording the refund in the metadata."""
        transaction = await self.transaction_repo.get_by_id(transaction_id)
        if transaction is None:
            raise TransactionNotFoundError()
        if transaction.payment_status != PaymentStatus.SUCCESS.value:
            raise ConflictError("Only successful transactions can be refunded")

        refund_amount = to_money(refund_amount)
        if refund_amount <= 0 or refund_amount > to_money(transaction.amount):
            raise ValidationError("Refund amount must be positive and not exceed the amount paid")

        metadata = dict(transaction.transaction_metadata or {})
        metadata.update({
            "refund_id": refund_id,
            "refund_amount": str(refund_amount),
            "refund_reason": reason,
            "refunded_at": utcnow().isoformat(),
        })
        transaction.transaction_metadata = metadata
        transaction.payment_status = PaymentStatus.REFUNDED.value
        await self.session.commit()
        await self.invalidate(transaction.user_id)

        logger.info(
            "Transaction refunded",
            extra={"transaction_id": str(transaction_id), "refund_amount": str(refund_amount)},
        )
        return TransactionResponse.model_validate(transaction)

    async def invalidate(self, user_id: uuid.UUID) -> None:
        await self.cache.delete_pattern(CacheKeys.user_transactions_pattern(user_id))
