"""
Gateway webhook pipeline.

    IP throttle -> decode -> signature -> currency gate -> order throttle
    -> match payment -> idempotency gate -> reconcile amount (success only)
    -> lifecycle transition -> commit -> operator notification

Everything from matching to commit runs in one database transaction bounded by
``BillingConfig.store_timeout_seconds``. Rejections raise typed
``WebhookRejectedError`` subclasses; store failures roll back and raise the
retryable ``BillingStoreError``.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription, SubscriptionPlan, User
from app.modules.billing.domain.billing.amount_reconciler import AmountReconciler
from app.modules.billing.domain.billing.billing_shared import (
    BillingConfig,
    PaymentStatus,
    logger,
    utcnow,
)
from app.modules.billing.domain.billing.gateway_payload import (
    GatewayNotification,
    decode_notification,
    parse_body,
)
from app.modules.billing.domain.billing.lifecycle import (
    ACTION_UNAPPLIED,
    SubscriptionLifecycle,
)
from app.modules.billing.domain.billing.payment_matcher import PaymentMatch, PaymentMatcher
from app.modules.billing.domain.billing.signature import SignatureVerifier
from app.modules.notifications.domain.telegram import (
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_UNAPPLIED,
    EVENT_UPGRADE_PRO,
    NotificationEvent,
    TelegramNotifier,
)
from app.shared.core.exceptions import (
    BillingCoreException,
    BillingStoreError,
    InvalidSignatureError,
    RateLimitedError,
    WebhookRejectedError,
)
from app.shared.core.ops_metrics import (
    WEBHOOK_OUTCOMES,
    WEBHOOK_PROCESSING_DURATION,
    WEBHOOK_REJECTIONS,
)
from app.shared.core.rate_limit import DeliveryThrottle

DEFAULT_FAILURE_REASON = "Payment failed"


class WebhookOutcome(str, Enum):
    PROCESSED = "processed"
    FAILED_RECORDED = "failed_recorded"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNAPPLIED = "unapplied"


@dataclass(frozen=True, slots=True)
class WebhookResult:
    outcome: WebhookOutcome
    message: str
    order_number: Optional[str] = None
    payment_id: Optional[UUID] = None
    subscription_id: Optional[UUID] = None
    action: Optional[str] = None

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": self.outcome.value, "message": self.message}
        if self.payment_id is not None:
            body["payment_id"] = str(self.payment_id)
        if self.subscription_id is not None:
            body["subscription_id"] = str(self.subscription_id)
        if self.action is not None:
            body["action"] = self.action
        return body


class WebhookService:
    def __init__(
        self,
        db: AsyncSession,
        config: BillingConfig,
        *,
        throttle: DeliveryThrottle,
        notifier: TelegramNotifier,
    ):
        self.db = db
        self.config = config
        self.throttle = throttle
        self.notifier = notifier
        self.verifier = SignatureVerifier(config.signature)
        self.reconciler = AmountReconciler(config.reconciler)
        self.matcher = PaymentMatcher(db)
        self.lifecycle = SubscriptionLifecycle(db, config.lifecycle)

    async def process(self, body: bytes, content_type: str, client_ip: str) -> WebhookResult:
        started = time.perf_counter()
        try:
            result = await self._process(body, content_type, client_ip)
        except WebhookRejectedError as exc:
            WEBHOOK_REJECTIONS.labels(code=exc.code).inc()
            raise
        finally:
            WEBHOOK_PROCESSING_DURATION.observe(time.perf_counter() - started)
        WEBHOOK_OUTCOMES.labels(outcome=result.outcome.value).inc()
        return result

    async def _process(self, body: bytes, content_type: str, client_ip: str) -> WebhookResult:
        ip_decision = await self.throttle.check_ip(client_ip)
        if not ip_decision.allowed:
            raise RateLimitedError(details={"scope": ip_decision.scope})

        notification = decode_notification(parse_body(body, content_type))
        logger.info(
            "gateway_webhook_received",
            order_number=notification.order_number or None,
            gateway_event=notification.event,
            client_ip=client_ip,
        )

        if not self.verifier.verify(notification):
            raise InvalidSignatureError()

        order_number = notification.order_number
        if not order_number:
            logger.warning("gateway_webhook_missing_order_number")
            return WebhookResult(
                outcome=WebhookOutcome.IGNORED,
                message="Missing order_number (ignored)",
            )

        # Currency is a hard gate for every event, before any lookup.
        self.reconciler.check_currency(notification.currency)

        order_decision = await self.throttle.check_order(order_number)
        if not order_decision.allowed:
            raise RateLimitedError(details={"scope": order_decision.scope})

        result, notice = await self._apply(notification)
        if notice is not None:
            await self.notifier.send(notice)
        return result

    async def _apply(
        self, notification: GatewayNotification
    ) -> tuple[WebhookResult, Optional[NotificationEvent]]:
        order_number = notification.order_number
        try:
            async with asyncio.timeout(self.config.store_timeout_seconds):
                return await self._apply_in_transaction(notification)
        except BillingCoreException:
            await self._rollback()
            raise
        except (SQLAlchemyError, TimeoutError) as exc:
            await self._rollback()
            logger.error(
                "gateway_webhook_store_error",
                order_number=order_number,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise BillingStoreError(
                "Billing store unavailable, retry later",
                details={"order_number": order_number},
            ) from exc

    async def _apply_in_transaction(
        self, notification: GatewayNotification
    ) -> tuple[WebhookResult, Optional[NotificationEvent]]:
        order_number = notification.order_number
        match = await self.matcher.match(order_number, notification.payer_email)
        if match is None:
            await self._rollback()
            return (
                WebhookResult(
                    outcome=WebhookOutcome.IGNORED,
                    message="No payment found (ok)",
                    order_number=order_number,
                ),
                None,
            )

        payment = match.payment
        if payment.status == PaymentStatus.COMPLETED.value:
            payment_id = payment.id
            logger.info(
                "gateway_webhook_duplicate",
                order_number=order_number,
                payment_id=str(payment_id),
            )
            await self._rollback()
            return self._duplicate(order_number, payment_id), None

        if notification.is_success:
            return await self._apply_success(notification, match)
        return await self._apply_failure(notification, match)

    async def _apply_success(
        self, notification: GatewayNotification, match: PaymentMatch
    ) -> tuple[WebhookResult, Optional[NotificationEvent]]:
        order_number = notification.order_number
        payment = match.payment
        payment_id = payment.id

        subscription = await self.db.get(Subscription, payment.subscription_id)
        if subscription is None:
            logger.error(
                "gateway_webhook_subscription_not_found",
                order_number=order_number,
                payment_id=str(payment_id),
            )
            await self._rollback()
            return self._ignored(order_number, "No subscription found"), None

        plan = await self.db.get(SubscriptionPlan, subscription.plan_id)
        if plan is None:
            logger.error(
                "gateway_webhook_plan_not_found",
                order_number=order_number,
                plan_id=subscription.plan_id,
            )
            await self._rollback()
            return self._ignored(order_number, "No plan found"), None

        # Reconcile before any lifecycle mutation.
        reconciliation = self.reconciler.reconcile(
            notification.amount, payment.amount, subscription
        )

        now = utcnow()
        claimed = await self.lifecycle.claim_payment(
            payment_id,
            amount=reconciliation.final_amount,
            gateway_transaction_id=notification.gateway_transaction_id,
            order_number=order_number,
            reconciliation_note=reconciliation.note,
            now=now,
        )
        if not claimed:
            logger.info(
                "gateway_webhook_duplicate_claim_lost",
                order_number=order_number,
                payment_id=str(payment_id),
            )
            await self._rollback()
            return self._duplicate(order_number, payment_id), None

        activation = await self.lifecycle.apply_payment_success(
            subscription, plan, order_number=order_number, now=now, payment_id=payment_id
        )
        user = await self.db.get(User, payment.user_id)
        if activation.action == ACTION_UNAPPLIED:
            return await self._unapplied(
                notification,
                subscription_id=activation.subscription_id,
                subscription_status=subscription.status,
                payment_id=payment_id,
                user=user,
                plan=plan,
                amount=reconciliation.final_amount,
                now=now,
            )
        notice = NotificationEvent(
            type=EVENT_UPGRADE_PRO,
            data={
                "user_email": (user.email if user else None) or notification.payer_email,
                "user_name": (user.full_name if user else None) or notification.payer_name,
                "business_name": user.business_name if user else None,
                "plan_name": plan.name,
                "duration_months": plan.duration_months,
                "amount": str(reconciliation.final_amount),
                "currency": self.reconciler.settlement_currency,
                "order_id": order_number,
                "timestamp": now.isoformat(),
            },
        )
        await self.db.commit()

        logger.info(
            "gateway_payment_completed",
            order_number=order_number,
            payment_id=str(payment_id),
            subscription_id=str(activation.subscription_id),
            action=activation.action,
            matched_by=match.matched_by,
        )
        return (
            WebhookResult(
                outcome=WebhookOutcome.PROCESSED,
                message="OK",
                order_number=order_number,
                payment_id=payment_id,
                subscription_id=activation.subscription_id,
                action=activation.action,
            ),
            notice,
        )

    async def _apply_failure(
        self, notification: GatewayNotification, match: PaymentMatch
    ) -> tuple[WebhookResult, Optional[NotificationEvent]]:
        order_number = notification.order_number
        payment = match.payment
        payment_id = payment.id
        subscription_id = payment.subscription_id
        reason = notification.status_description or DEFAULT_FAILURE_REASON

        now = utcnow()
        recorded = await self.lifecycle.record_payment_failure(
            payment_id, subscription_id, reason=reason, now=now
        )
        if not recorded:
            await self._rollback()
            return self._duplicate(order_number, payment_id), None

        user = await self.db.get(User, payment.user_id)
        notice = NotificationEvent(
            type=EVENT_PAYMENT_FAILED,
            data={
                "user_email": (user.email if user else None) or notification.payer_email,
                "amount": notification.fields.amount,
                "currency": self.reconciler.settlement_currency,
                "order_id": order_number,
                "failure_reason": reason,
                "timestamp": now.isoformat(),
            },
        )
        await self.db.commit()

        logger.warning(
            "gateway_payment_failed_recorded",
            order_number=order_number,
            payment_id=str(payment_id),
            failure_reason=reason,
        )
        return (
            WebhookResult(
                outcome=WebhookOutcome.FAILED_RECORDED,
                message="Marked failed",
                order_number=order_number,
                payment_id=payment_id,
                subscription_id=subscription_id,
            ),
            notice,
        )

    async def _unapplied(
        self,
        notification: GatewayNotification,
        *,
        subscription_id: UUID,
        subscription_status: str,
        payment_id: UUID,
        user: Optional[User],
        plan: SubscriptionPlan,
        amount: Decimal,
        now: datetime,
    ) -> tuple[WebhookResult, Optional[NotificationEvent]]:
        """Commit the settled payment against a row that can no longer take it."""
        order_number = notification.order_number
        notice = NotificationEvent(
            type=EVENT_PAYMENT_UNAPPLIED,
            data={
                "user_email": (user.email if user else None) or notification.payer_email,
                "plan_name": plan.name,
                "duration_months": plan.duration_months,
                "amount": str(amount),
                "currency": self.reconciler.settlement_currency,
                "order_id": order_number,
                "subscription_id": str(subscription_id),
                "subscription_status": subscription_status,
                "timestamp": now.isoformat(),
            },
        )
        await self.db.commit()

        logger.error(
            "gateway_payment_unapplied",
            order_number=order_number,
            payment_id=str(payment_id),
            subscription_id=str(subscription_id),
            subscription_status=subscription_status,
        )
        return (
            WebhookResult(
                outcome=WebhookOutcome.UNAPPLIED,
                message="Payment recorded; subscription needs manual review",
                order_number=order_number,
                payment_id=payment_id,
                subscription_id=subscription_id,
                action=ACTION_UNAPPLIED,
            ),
            notice,
        )

    @staticmethod
    def _ignored(order_number: str, message: str) -> WebhookResult:
        return WebhookResult(
            outcome=WebhookOutcome.IGNORED, message=message, order_number=order_number
        )

    @staticmethod
    def _duplicate(order_number: str, payment_id: UUID) -> WebhookResult:
        return WebhookResult(
            outcome=WebhookOutcome.DUPLICATE,
            message="Already processed",
            order_number=order_number,
            payment_id=payment_id,
        )

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except Exception as rollback_exc:
            logger.error("gateway_webhook_rollback_failed", error=str(rollback_exc))
