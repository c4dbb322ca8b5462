"""Resolve an inbound gateway order number to the internal payment attempt."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import SubscriptionPayment, User
from app.modules.billing.domain.billing.billing_shared import (
    PaymentStatus,
    email_hash,
    logger,
)

MATCHED_BY_REFERENCE = "reference"
MATCHED_BY_PAYER_EMAIL = "payer_email"


@dataclass(frozen=True, slots=True)
class PaymentMatch:
    payment: SubscriptionPayment
    matched_by: str


class PaymentMatcher:
    """
    Primary lookup is by ``payment_reference``.

    When that misses and the gateway supplied a payer e-mail, the payer's most
    recent *pending* payment is adopted and its reference rebound to the order
    number, inside the caller's transaction. Completed or failed payments are
    never adopted this way.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def match(
        self, order_number: str, payer_email: Optional[str] = None
    ) -> Optional[PaymentMatch]:
        result = await self.db.execute(
            select(SubscriptionPayment)
            .where(SubscriptionPayment.payment_reference == order_number)
            .order_by(SubscriptionPayment.created_at.desc())
            .limit(1)
        )
        payment = result.scalar_one_or_none()
        if payment is not None:
            return PaymentMatch(payment=payment, matched_by=MATCHED_BY_REFERENCE)

        if not payer_email:
            logger.warning("gateway_payment_not_found", order_number=order_number)
            return None

        return await self._match_by_payer_email(order_number, payer_email)

    async def _match_by_payer_email(
        self, order_number: str, payer_email: str
    ) -> Optional[PaymentMatch]:
        logger.info(
            "gateway_payment_reference_miss_attempting_email_lookup",
            order_number=order_number,
            email_hash=email_hash(payer_email),
        )
        user_result = await self.db.execute(
            select(User).where(func.lower(User.email) == payer_email.strip().lower())
        )
        user = user_result.scalar_one_or_none()
        if user is None:
            logger.warning(
                "gateway_payer_email_lookup_failed",
                order_number=order_number,
                email_hash=email_hash(payer_email),
            )
            return None

        pending_result = await self.db.execute(
            select(SubscriptionPayment)
            .where(
                SubscriptionPayment.user_id == user.id,
                SubscriptionPayment.status == PaymentStatus.PENDING.value,
            )
            .order_by(SubscriptionPayment.created_at.desc())
            .limit(1)
        )
        payment = pending_result.scalar_one_or_none()
        if payment is None:
            logger.warning(
                "gateway_payer_has_no_pending_payment",
                order_number=order_number,
                user_id=str(user.id),
            )
            return None

        previous_reference = payment.payment_reference
        payment.payment_reference = order_number
        await self.db.flush()
        logger.info(
            "gateway_payment_reference_rebound",
            payment_id=str(payment.id),
            previous_reference=previous_reference,
            order_number=order_number,
        )
        return PaymentMatch(payment=payment, matched_by=MATCHED_BY_PAYER_EMAIL)
