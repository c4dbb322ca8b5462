"""
Transition Sweeper

Advances time-driven lifecycle transitions for every non-terminal
subscription. Each row is re-read and transitioned in its own transaction, so
the sweep is safe to run concurrently with itself and with webhook processing:
a row another writer already moved simply matches zero rows.
"""

from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.billing import Subscription, User
from app.modules.billing.domain.billing.billing_shared import (
    NON_TERMINAL_STATUSES,
    BillingConfig,
    logger,
    utcnow,
)
from app.modules.billing.domain.billing.lifecycle import (
    TRANSITION_ACTIVATED,
    TRANSITION_EXPIRED,
    TRANSITION_MOVED_TO_GRACE,
    TRANSITION_TRIAL_EXPIRED,
    SubscriptionLifecycle,
    TimeTransition,
)
from app.modules.notifications.domain.email_service import EmailService
from app.modules.notifications.domain.telegram import (
    EVENT_SUBSCRIPTION_EXPIRED,
    TelegramNotifier,
)

SessionFactory = Callable[[], AsyncSession]


@dataclass
class SweepSummary:
    scanned: int = 0
    processed: int = 0
    activated: int = 0
    moved_to_grace: int = 0
    expired: int = 0
    trial_expired: int = 0
    errors: int = 0

    def record(self, transition: TimeTransition) -> None:
        self.processed += 1
        if transition.transition == TRANSITION_ACTIVATED:
            self.activated += 1
        elif transition.transition == TRANSITION_MOVED_TO_GRACE:
            self.moved_to_grace += 1
        elif transition.transition == TRANSITION_EXPIRED:
            self.expired += 1
        elif transition.transition == TRANSITION_TRIAL_EXPIRED:
            self.trial_expired += 1

    def to_dict(self) -> dict[str, int]:
        return asdict(self)


class TransitionSweeper:
    def __init__(
        self,
        session_factory: SessionFactory,
        config: BillingConfig,
        *,
        notifier: Optional[TelegramNotifier] = None,
        email_service: Optional[EmailService] = None,
    ):
        self._session_factory = session_factory
        self._config = config
        self._notifier = notifier or TelegramNotifier(config.notifier)
        self._email_service = email_service or EmailService(config.email)

    async def sweep(self, now: Optional[datetime] = None) -> SweepSummary:
        as_of = now or utcnow()
        summary = SweepSummary()

        async with self._session_factory() as db:
            result = await db.execute(
                select(Subscription.id)
                .where(Subscription.status.in_(NON_TERMINAL_STATUSES))
                .order_by(Subscription.created_at.asc())
            )
            subscription_ids = list(result.scalars().all())

        logger.info("subscription_sweep_started", candidates=len(subscription_ids))

        for subscription_id in subscription_ids:
            summary.scanned += 1
            try:
                transition = await self._advance_one(subscription_id, as_of)
            except Exception as exc:
                # One bad row must not stall the rest of the sweep.
                summary.errors += 1
                logger.error(
                    "subscription_sweep_row_failed",
                    subscription_id=str(subscription_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if transition is None:
                continue
            summary.record(transition)
            await self._after_commit(transition)

        logger.info("subscription_sweep_completed", **summary.to_dict())
        return summary

    async def _advance_one(
        self, subscription_id: UUID, now: datetime
    ) -> Optional[TimeTransition]:
        async with self._session_factory() as db:
            try:
                async with asyncio.timeout(self._config.store_timeout_seconds):
                    subscription = await db.get(
                        Subscription, subscription_id, populate_existing=True
                    )
                    if subscription is None:
                        return None
                    lifecycle = SubscriptionLifecycle(db, self._config.lifecycle)
                    transition = await lifecycle.advance(subscription, now)
                    if transition is None:
                        await db.rollback()
                        return None
                    await db.commit()
                    return transition
            except Exception:
                await db.rollback()
                raise

    async def _after_commit(self, transition: TimeTransition) -> None:
        """Post-commit side effects; best-effort, never undo the transition."""
        if transition.transition == TRANSITION_MOVED_TO_GRACE and transition.send_grace_email:
            user = await self._load_user(transition.user_id)
            if user is None or not user.email:
                logger.warning(
                    "grace_email_recipient_missing",
                    subscription_id=str(transition.subscription_id),
                )
                return
            if transition.grace_until is not None:
                await self._email_service.send_grace_period_notice(
                    to=user.email,
                    grace_until=transition.grace_until,
                    customer_name=user.full_name,
                )
        elif transition.transition == TRANSITION_EXPIRED:
            user = await self._load_user(transition.user_id)
            data: dict[str, Any] = {
                "user_email": user.email if user else None,
                "user_name": user.full_name if user else None,
                "business_name": user.business_name if user else None,
                "subscription_id": str(transition.subscription_id),
            }
            await self._notifier.notify(EVENT_SUBSCRIPTION_EXPIRED, data)

    async def _load_user(self, user_id: UUID) -> Optional[User]:
        try:
            async with self._session_factory() as db:
                return await db.get(User, user_id)
        except Exception as exc:
            logger.error("subscription_sweep_user_lookup_failed", user_id=str(user_id), error=str(exc))
            return None
