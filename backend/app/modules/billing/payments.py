"""Payment confirmation hook used at checkout and renewal.

No gateway protocol is assumed. A confirmer receives the amount to charge
and reports the settled outcome; checkout only completes on SUCCESS.
"""

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Protocol

from app.modules.billing.models import PaymentStatus


@dataclass
class PaymentRequest:
    user_id: uuid.UUID
    amount: Decimal
    currency: str
    payment_method: str
    description: str
    reference: str


@dataclass
class PaymentResult:
    status: PaymentStatus
    payment_id: Optional[str] = None
    gateway_order_id: Optional[str] = None
    gateway_response: dict[str, Any] = field(default_factory=dict)
    failure_reason: Optional[str] = None


class PaymentConfirmer(Protocol):
    async def confirm(self, request: PaymentRequest) -> PaymentResult: ...


class ImmediateSuccessConfirmer:
    """Treats every charge as settled at once."""

    async def confirm(self, request: PaymentRequest) -> PaymentResult:
        return PaymentResult(status=PaymentStatus.SUCCESS)


_confirmer: PaymentConfirmer = ImmediateSuccessConfirmer()


def get_payment_confirmer() -> PaymentConfirmer:
    """FastAPI dependency returning the configured confirmer."""
    return _confirmer
