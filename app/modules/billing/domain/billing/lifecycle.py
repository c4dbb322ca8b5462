"""
Subscription Lifecycle State Machine

    trial           -> expired
    pending_payment -> active
    active          -> grace
    grace           -> expired

Two drivers reach these transitions: the gateway webhook (payment success or
failure) and the sweeper (time). Every write is a conditional UPDATE scoped by
the status that was read, checked by row count, so concurrent evaluators of the
same row converge instead of double-applying. Nothing here commits; the caller
owns the transaction.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, cast
from uuid import UUID

from dateutil.relativedelta import relativedelta
from sqlalchemy import delete, select, update
from sqlalchemy.engine import CursorResult
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription, SubscriptionPayment, SubscriptionPlan
from app.modules.billing.domain.billing.billing_shared import (
    LifecycleConfig,
    PaymentStatus,
    SubscriptionPaymentState,
    SubscriptionStatus,
    as_utc,
    logger,
)
from app.shared.core.exceptions import BillingStoreError
from app.shared.core.ops_metrics import LIFECYCLE_TRANSITIONS

ACTION_ACTIVATED = "activated"
ACTION_EXTENDED = "extended"
ACTION_UNAPPLIED = "unapplied"

TRANSITION_TRIAL_EXPIRED = "trial_expired"
TRANSITION_ACTIVATED = "activated"
TRANSITION_MOVED_TO_GRACE = "moved_to_grace"
TRANSITION_EXPIRED = "expired"

DRIVER_WEBHOOK = "webhook"
DRIVER_SWEEPER = "sweeper"

# Statuses a paid subscription may be activated from.
_ACTIVATABLE = (
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.PENDING_PAYMENT.value,
)
# Statuses a payment failure may rewind to pending_payment.
_FAILURE_REWINDABLE = _ACTIVATABLE
# Statuses made redundant by a new activation for the same user.
_SUPERSEDED = (
    SubscriptionStatus.TRIAL.value,
    SubscriptionStatus.ACTIVE.value,
)


def _rowcount(result: Any) -> int:
    return int(cast(CursorResult[Any], result).rowcount or 0)


@dataclass(frozen=True, slots=True)
class ActivationResult:
    action: str
    subscription_id: UUID
    expires_at: Optional[datetime]
    grace_until: Optional[datetime]
    superseded: int = 0


@dataclass(frozen=True, slots=True)
class TimeTransition:
    transition: str
    subscription_id: UUID
    user_id: UUID
    plan_id: str
    expires_at: Optional[datetime] = None
    grace_until: Optional[datetime] = None
    send_grace_email: bool = False


class SubscriptionLifecycle:
    def __init__(self, db: AsyncSession, config: LifecycleConfig):
        self.db = db
        self._config = config

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self._config.grace_period_days)

    def compute_term(
        self, started_at: datetime, duration_months: int
    ) -> tuple[datetime, datetime]:
        """Calendar-month term from ``started_at`` plus the grace window after it."""
        expires_at = as_utc(started_at) + relativedelta(months=int(duration_months))
        return expires_at, expires_at + self.grace_period

    # ------------------------------------------------------------------
    # Webhook driver
    # ------------------------------------------------------------------

    async def claim_payment(
        self,
        payment_id: UUID,
        *,
        amount: Decimal,
        gateway_transaction_id: Optional[str],
        order_number: str,
        reconciliation_note: Optional[str],
        now: datetime,
    ) -> bool:
        """
        Mark the payment completed unless it already is.

        Returns False when another delivery completed it first; the caller must
        then treat the event as a duplicate and roll back.
        """
        result = await self.db.execute(
            update(SubscriptionPayment)
            .where(
                SubscriptionPayment.id == payment_id,
                SubscriptionPayment.status != PaymentStatus.COMPLETED.value,
            )
            .values(
                status=PaymentStatus.COMPLETED.value,
                paid_at=now,
                gateway_transaction_id=gateway_transaction_id,
                payment_reference=order_number,
                amount=amount,
                reconciliation_note=reconciliation_note,
                failure_reason=None,
                updated_at=now,
            )
        )
        return _rowcount(result) > 0

    async def apply_payment_success(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        *,
        order_number: str,
        now: datetime,
        payment_id: Optional[UUID] = None,
    ) -> ActivationResult:
        """
        Extend the user's current active subscription or activate the paid one.

        A payment landing on an ``expired`` row opens a fresh row for the same
        plan. One landing on an ``active`` or ``grace`` row is left unapplied:
        the payment stays recorded and the caller raises an operator alert.
        """
        if subscription.status == SubscriptionStatus.EXPIRED.value:
            subscription = await self._reopen(subscription, payment_id, order_number, now)
        elif subscription.status not in _ACTIVATABLE:
            logger.warning(
                "subscription_payment_unapplied",
                subscription_id=str(subscription.id),
                status=subscription.status,
                order_number=order_number,
            )
            return ActivationResult(
                action=ACTION_UNAPPLIED,
                subscription_id=subscription.id,
                expires_at=subscription.expires_at,
                grace_until=subscription.grace_until,
            )

        active = await self._current_active(subscription.user_id, exclude_id=subscription.id)

        # Checkout stamps the intended expiry on the pending row.
        if subscription.expires_at is not None:
            projected = as_utc(subscription.expires_at)
        else:
            projected = now + relativedelta(months=int(plan.duration_months))

        if (
            active is not None
            and active.expires_at is not None
            and as_utc(active.expires_at) < projected
        ):
            return await self._extend(active, subscription, projected, order_number, now)
        return await self._activate_new(subscription, plan, order_number, now)

    async def _reopen(
        self,
        expired: Subscription,
        payment_id: Optional[UUID],
        order_number: str,
        now: datetime,
    ) -> Subscription:
        reopened = Subscription(
            user_id=expired.user_id,
            plan_id=expired.plan_id,
            status=SubscriptionStatus.PENDING_PAYMENT.value,
            payment_reference=order_number,
            auto_renew=expired.auto_renew,
            notes=expired.notes,
            created_at=now,
            updated_at=now,
        )
        self.db.add(reopened)
        await self.db.flush()

        if payment_id is not None:
            await self.db.execute(
                update(SubscriptionPayment)
                .where(SubscriptionPayment.id == payment_id)
                .values(subscription_id=reopened.id, updated_at=now)
            )
        logger.info(
            "subscription_reopened_for_late_payment",
            expired_subscription_id=str(expired.id),
            subscription_id=str(reopened.id),
            order_number=order_number,
        )
        return reopened

    async def _current_active(
        self, user_id: UUID, *, exclude_id: UUID
    ) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
                Subscription.id != exclude_id,
            )
            .order_by(Subscription.expires_at.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def _extend(
        self,
        active: Subscription,
        pending: Subscription,
        expires_at: datetime,
        order_number: str,
        now: datetime,
    ) -> ActivationResult:
        active_id = active.id
        pending_id = pending.id
        grace_until = expires_at + self.grace_period

        # auto_renew stays as the customer set it.
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == active_id,
                Subscription.status == SubscriptionStatus.ACTIVE.value,
            )
            .values(
                expires_at=expires_at,
                grace_until=grace_until,
                payment_status=SubscriptionPaymentState.COMPLETED.value,
                payment_completed_at=now,
                payment_reference=order_number,
                updated_at=now,
            )
        )
        if _rowcount(result) <= 0:
            logger.warning(
                "subscription_extend_conflict",
                subscription_id=str(active_id),
                pending_subscription_id=str(pending_id),
            )
            raise BillingStoreError(
                "Active subscription changed during extension",
                code="lifecycle_conflict",
                details={"subscription_id": str(active_id)},
            )

        # Payments must follow the active row before the pending row can go.
        await self.db.execute(
            update(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == pending_id)
            .values(subscription_id=active_id, updated_at=now)
        )
        deleted = await self.db.execute(
            delete(Subscription).where(
                Subscription.id == pending_id,
                Subscription.status != SubscriptionStatus.ACTIVE.value,
            )
        )
        if _rowcount(deleted) <= 0:
            logger.warning(
                "subscription_extend_pending_row_not_deleted",
                pending_subscription_id=str(pending_id),
            )

        LIFECYCLE_TRANSITIONS.labels(transition=ACTION_EXTENDED, driver=DRIVER_WEBHOOK).inc()
        logger.info(
            "subscription_extended",
            subscription_id=str(active_id),
            removed_subscription_id=str(pending_id),
            expires_at=expires_at.isoformat(),
        )
        return ActivationResult(
            action=ACTION_EXTENDED,
            subscription_id=active_id,
            expires_at=expires_at,
            grace_until=grace_until,
        )

    async def _activate_new(
        self,
        subscription: Subscription,
        plan: SubscriptionPlan,
        order_number: str,
        now: datetime,
    ) -> ActivationResult:
        current_status = subscription.status
        superseded = await self._expire_siblings(subscription.user_id, subscription.id, now)
        expires_at, grace_until = self.compute_term(now, plan.duration_months)

        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.status == current_status,
            )
            .values(
                status=SubscriptionStatus.ACTIVE.value,
                started_at=now,
                expires_at=expires_at,
                grace_until=grace_until,
                payment_status=SubscriptionPaymentState.COMPLETED.value,
                payment_completed_at=now,
                payment_reference=order_number,
                updated_at=now,
            )
        )
        if _rowcount(result) <= 0:
            raise BillingStoreError(
                "Subscription changed during activation",
                code="lifecycle_conflict",
                details={"subscription_id": str(subscription.id)},
            )

        LIFECYCLE_TRANSITIONS.labels(transition=ACTION_ACTIVATED, driver=DRIVER_WEBHOOK).inc()
        logger.info(
            "subscription_activated",
            subscription_id=str(subscription.id),
            plan_id=plan.id,
            expires_at=expires_at.isoformat(),
            superseded=superseded,
        )
        return ActivationResult(
            action=ACTION_ACTIVATED,
            subscription_id=subscription.id,
            expires_at=expires_at,
            grace_until=grace_until,
            superseded=superseded,
        )

    async def _expire_siblings(self, user_id: UUID, keep_id: UUID, now: datetime) -> int:
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.user_id == user_id,
                Subscription.id != keep_id,
                Subscription.status.in_(_SUPERSEDED),
            )
            .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
        )
        return _rowcount(result)

    async def record_payment_failure(
        self,
        payment_id: UUID,
        subscription_id: Optional[UUID],
        *,
        reason: str,
        now: datetime,
    ) -> bool:
        """
        Mark the payment failed and rewind an unpaid subscription to pending_payment.

        Returns False when the payment is already completed; a failure event
        never touches a settled payment.
        """
        result = await self.db.execute(
            update(SubscriptionPayment)
            .where(
                SubscriptionPayment.id == payment_id,
                SubscriptionPayment.status != PaymentStatus.COMPLETED.value,
            )
            .values(
                status=PaymentStatus.FAILED.value,
                failure_reason=reason,
                updated_at=now,
            )
        )
        if _rowcount(result) <= 0:
            return False

        if subscription_id is None:
            return True

        sub_result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.status.in_(_FAILURE_REWINDABLE),
            )
            .values(
                payment_status=SubscriptionPaymentState.FAILED.value,
                status=SubscriptionStatus.PENDING_PAYMENT.value,
                updated_at=now,
            )
        )
        if _rowcount(sub_result) <= 0:
            logger.info(
                "subscription_payment_failure_state_kept",
                subscription_id=str(subscription_id),
                msg="Subscription already past pending_payment; only the payment was marked failed",
            )
        return True

    # ------------------------------------------------------------------
    # Time driver
    # ------------------------------------------------------------------

    async def advance(
        self, subscription: Subscription, now: datetime
    ) -> Optional[TimeTransition]:
        """Apply at most one time-driven transition to a freshly read row."""
        status = subscription.status
        if status == SubscriptionStatus.TRIAL.value:
            return await self._expire_trial(subscription, now)
        if status == SubscriptionStatus.PENDING_PAYMENT.value:
            return await self._activate_paid_pending(subscription, now)
        if status == SubscriptionStatus.ACTIVE.value:
            return await self._enter_grace(subscription, now)
        if status == SubscriptionStatus.GRACE.value:
            return await self._expire_grace(subscription, now)
        return None

    async def _transition(
        self, subscription: Subscription, from_status: str, **values: Any
    ) -> bool:
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.status == from_status,
            )
            .values(**values)
        )
        return _rowcount(result) > 0

    async def _expire_trial(
        self, subscription: Subscription, now: datetime
    ) -> Optional[TimeTransition]:
        deadline = subscription.trial_ends_at or subscription.expires_at
        if deadline is None or as_utc(deadline) >= now:
            return None
        if not await self._transition(
            subscription,
            SubscriptionStatus.TRIAL.value,
            status=SubscriptionStatus.EXPIRED.value,
            updated_at=now,
        ):
            return None
        return self._applied(TRANSITION_TRIAL_EXPIRED, subscription)

    async def _activate_paid_pending(
        self, subscription: Subscription, now: datetime
    ) -> Optional[TimeTransition]:
        if subscription.payment_status != SubscriptionPaymentState.COMPLETED.value:
            return None
        if subscription.started_at is None or as_utc(subscription.started_at) > now:
            return None

        plan = await self.db.get(SubscriptionPlan, subscription.plan_id)
        if plan is None:
            logger.error(
                "subscription_plan_missing",
                subscription_id=str(subscription.id),
                plan_id=subscription.plan_id,
            )
            return None

        started_at = as_utc(subscription.started_at)
        expires_at, grace_until = self.compute_term(started_at, plan.duration_months)
        if not await self._transition(
            subscription,
            SubscriptionStatus.PENDING_PAYMENT.value,
            status=SubscriptionStatus.ACTIVE.value,
            expires_at=expires_at,
            grace_until=grace_until,
            updated_at=now,
        ):
            return None
        await self._expire_siblings(subscription.user_id, subscription.id, now)
        return self._applied(
            TRANSITION_ACTIVATED,
            subscription,
            expires_at=expires_at,
            grace_until=grace_until,
        )

    async def _enter_grace(
        self, subscription: Subscription, now: datetime
    ) -> Optional[TimeTransition]:
        if subscription.expires_at is None:
            return None
        expires_at = as_utc(subscription.expires_at)
        if expires_at >= now:
            return None

        if subscription.grace_until is not None:
            grace_until = as_utc(subscription.grace_until)
        else:
            grace_until = expires_at + self.grace_period
        if not await self._transition(
            subscription,
            SubscriptionStatus.ACTIVE.value,
            status=SubscriptionStatus.GRACE.value,
            grace_until=grace_until,
            updated_at=now,
        ):
            return None

        # The flag is claimed before sending: at most one grace e-mail per row.
        claim = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription.id,
                Subscription.grace_email_sent.is_(False),
            )
            .values(grace_email_sent=True)
        )
        return self._applied(
            TRANSITION_MOVED_TO_GRACE,
            subscription,
            expires_at=expires_at,
            grace_until=grace_until,
            send_grace_email=_rowcount(claim) > 0,
        )

    async def _expire_grace(
        self, subscription: Subscription, now: datetime
    ) -> Optional[TimeTransition]:
        if subscription.grace_until is not None:
            deadline = as_utc(subscription.grace_until)
        elif subscription.expires_at is not None:
            deadline = as_utc(subscription.expires_at) + self.grace_period
        else:
            return None
        if deadline >= now:
            return None
        if not await self._transition(
            subscription,
            SubscriptionStatus.GRACE.value,
            status=SubscriptionStatus.EXPIRED.value,
            updated_at=now,
        ):
            return None
        return self._applied(TRANSITION_EXPIRED, subscription, grace_until=deadline)

    def _applied(
        self, transition: str, subscription: Subscription, **extra: Any
    ) -> TimeTransition:
        LIFECYCLE_TRANSITIONS.labels(transition=transition, driver=DRIVER_SWEEPER).inc()
        logger.info(
            "subscription_transition_applied",
            transition=transition,
            subscription_id=str(subscription.id),
        )
        return TimeTransition(
            transition=transition,
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            plan_id=subscription.plan_id,
            **extra,
        )
