"""Shared primitives and explicit configuration for the billing lifecycle modules."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Optional

import structlog

if TYPE_CHECKING:
    from app.shared.core.config import Settings

logger = structlog.get_logger()

PRORATED_MARKER = "prorated"


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle states. ``EXPIRED`` is terminal."""

    TRIAL = "trial"
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    GRACE = "grace"
    EXPIRED = "expired"


class SubscriptionPaymentState(str, Enum):
    UNSET = "unset"
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


NON_TERMINAL_STATUSES = (
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.PENDING_PAYMENT.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.GRACE.value,
)


@dataclass(frozen=True, slots=True)
class SignatureConfig:
    secret: Optional[str]
    allow_unsigned: bool = False


@dataclass(frozen=True, slots=True)
class ThrottleConfig:
    ip_limit: int = 10
    ip_window_seconds: int = 60
    order_limit: int = 5
    order_window_seconds: int = 3600
    fail_open: bool = True
    store_timeout_seconds: float = 2.0


@dataclass(frozen=True, slots=True)
class ReconcilerConfig:
    settlement_currency: str = "MYR"
    amount_tolerance: Decimal = Decimal("0.50")


@dataclass(frozen=True, slots=True)
class LifecycleConfig:
    grace_period_days: int = 7


@dataclass(frozen=True, slots=True)
class NotifierConfig:
    bot_token: Optional[str] = None
    chat_id: Optional[str] = None
    api_url: str = "https://api.telegram.org"
    timeout_seconds: float = 5.0


@dataclass(frozen=True, slots=True)
class EmailConfig:
    api_url: str = "https://api.resend.com/emails"
    api_key: Optional[str] = None
    from_email: str = "billing@example.com"
    timeout_seconds: float = 5.0


@dataclass(frozen=True, slots=True)
class BillingConfig:
    """
    Explicitly constructed configuration passed into each billing component.

    Built once from ``Settings`` at the edge (API dependency, Celery task) so the
    domain never reads process globals and tests can hand in fake secrets.
    """

    signature: SignatureConfig
    throttle: ThrottleConfig
    reconciler: ReconcilerConfig
    lifecycle: LifecycleConfig
    notifier: NotifierConfig
    email: EmailConfig
    store_timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "BillingConfig":
        return cls(
            signature=SignatureConfig(
                secret=settings.GATEWAY_SECRET_KEY,
                allow_unsigned=settings.WEBHOOK_ALLOW_UNSIGNED,
            ),
            throttle=ThrottleConfig(
                ip_limit=settings.WEBHOOK_IP_RATE_LIMIT,
                ip_window_seconds=settings.WEBHOOK_IP_RATE_WINDOW_SECONDS,
                order_limit=settings.WEBHOOK_ORDER_RATE_LIMIT,
                order_window_seconds=settings.WEBHOOK_ORDER_RATE_WINDOW_SECONDS,
                fail_open=settings.WEBHOOK_THROTTLE_FAIL_OPEN,
                store_timeout_seconds=settings.RATE_LIMIT_STORE_TIMEOUT_SECONDS,
            ),
            reconciler=ReconcilerConfig(
                settlement_currency=settings.BILLING_SETTLEMENT_CURRENCY,
                amount_tolerance=Decimal(settings.BILLING_AMOUNT_TOLERANCE),
            ),
            lifecycle=LifecycleConfig(
                grace_period_days=settings.BILLING_GRACE_PERIOD_DAYS,
            ),
            notifier=NotifierConfig(
                bot_token=settings.TELEGRAM_BOT_TOKEN,
                chat_id=settings.TELEGRAM_CHAT_ID,
                api_url=settings.TELEGRAM_API_URL,
                timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS,
            ),
            email=EmailConfig(
                api_url=settings.EMAIL_API_URL,
                api_key=settings.EMAIL_API_KEY,
                from_email=settings.EMAIL_FROM,
                timeout_seconds=settings.NOTIFICATION_TIMEOUT_SECONDS,
            ),
            store_timeout_seconds=settings.BILLING_STORE_TIMEOUT_SECONDS,
        )


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def email_hash(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:12]
