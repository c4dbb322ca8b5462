import hashlib
import hmac
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription, SubscriptionPayment, SubscriptionPlan, User
from app.modules.billing.domain.billing.signature import SIGNED_FIELDS

TEST_GATEWAY_SECRET = "test-gateway-secret-key-32-bytes!!"


def utc(year: int, month: int, day: int, hour: int = 0) -> datetime:
    return datetime(year, month, day, hour, tzinfo=timezone.utc)


def sign_fields(fields: dict[str, Any], secret: str = TEST_GATEWAY_SECRET) -> str:
    """Checksum the way the gateway does: sorted signed fields joined with '|'."""
    message = "|".join(str(fields.get(name) or "") for name in SIGNED_FIELDS)
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def gateway_fields(
    order_number: str,
    *,
    amount: str = "100.00",
    currency: str = "MYR",
    status: str = "3",
    status_description: str = "Approved",
    payer_email: Optional[str] = None,
    secret: Optional[str] = TEST_GATEWAY_SECRET,
    **extra: Any,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "id": f"gw_{uuid4().hex[:10]}",
        "order_number": order_number,
        "transaction_id": f"txn_{uuid4().hex[:10]}",
        "exchange_reference_number": "",
        "exchange_transaction_id": "",
        "currency": currency,
        "amount": amount,
        "payer_bank_name": "Maybank2u",
        "payer_name": "Aisyah Rahman",
        "status": status,
        "status_description": status_description,
    }
    if payer_email is not None:
        fields["payer_email"] = payer_email
    fields.update(extra)
    if secret is not None:
        fields["checksum"] = sign_fields(fields, secret)
    return fields


def nested_payload(fields: dict[str, Any], event: str = "payment.success") -> dict[str, Any]:
    return {
        "event": event,
        "data": {
            "main_data": fields,
            "record_type": "payment_intent",
            "receipt_url": "https://gateway.example/receipt/1",
        },
    }


async def seed_user(
    db: AsyncSession, email: Optional[str] = None, full_name: str = "Aisyah Rahman"
) -> User:
    user = User(
        id=uuid4(),
        email=email or f"user_{uuid4().hex[:8]}@example.com",
        full_name=full_name,
        business_name="Kedai Aisyah",
    )
    db.add(user)
    await db.flush()
    return user


async def seed_plan(
    db: AsyncSession, plan_id: str = "pro_1m", duration_months: int = 1
) -> SubscriptionPlan:
    plan = await db.get(SubscriptionPlan, plan_id)
    if plan is None:
        plan = SubscriptionPlan(
            id=plan_id, name=f"Pro {duration_months}M", duration_months=duration_months
        )
        db.add(plan)
        await db.flush()
    return plan


async def seed_subscription(
    db: AsyncSession,
    user: User,
    plan: SubscriptionPlan,
    *,
    status: str = "pending_payment",
    created_at: Optional[datetime] = None,
    **values: Any,
) -> Subscription:
    subscription = Subscription(
        id=uuid4(),
        user_id=user.id,
        plan_id=plan.id,
        status=status,
        created_at=created_at or datetime.now(timezone.utc),
        **values,
    )
    db.add(subscription)
    await db.flush()
    return subscription


async def seed_payment(
    db: AsyncSession,
    subscription: Subscription,
    *,
    amount: str = "100.00",
    reference: Optional[str] = None,
    status: str = "pending",
    created_at: Optional[datetime] = None,
) -> SubscriptionPayment:
    payment = SubscriptionPayment(
        id=uuid4(),
        subscription_id=subscription.id,
        user_id=subscription.user_id,
        amount=Decimal(amount),
        currency="MYR",
        status=status,
        payment_reference=reference,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(payment)
    await db.flush()
    return payment
