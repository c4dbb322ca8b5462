"""Tests for the time-driven transition sweep."""

from unittest.mock import patch

import pytest

from app.models.billing import Subscription
from app.modules.billing.domain.billing.lifecycle import SubscriptionLifecycle
from app.modules.billing.domain.billing.transition_sweeper import (
    SweepSummary,
    TransitionSweeper,
)
from tests.utils import seed_plan, seed_subscription, seed_user, utc

NOW = utc(2026, 3, 10)


@pytest.fixture
def sweeper(session_factory, billing_config, mock_notifier, mock_email_service):
    return TransitionSweeper(
        session_factory,
        billing_config,
        notifier=mock_notifier,
        email_service=mock_email_service,
    )


async def _status(db, subscription_id) -> str:
    row = await db.get(Subscription, subscription_id, populate_existing=True)
    return row.status


@pytest.mark.asyncio
async def test_sweep_applies_every_due_transition(
    db_session, sweeper, mock_notifier, mock_email_service
):
    plan = await seed_plan(db_session)
    trial_user = await seed_user(db_session)
    lapsing_user = await seed_user(db_session, full_name="Lapsing Customer")
    grace_user = await seed_user(db_session)
    scheduled_user = await seed_user(db_session)
    healthy_user = await seed_user(db_session)

    trial = await seed_subscription(
        db_session,
        trial_user,
        plan,
        status="trial",
        trial_ends_at=utc(2026, 3, 9),
        expires_at=utc(2026, 4, 9),
    )
    lapsing = await seed_subscription(
        db_session, lapsing_user, plan, status="active", expires_at=utc(2026, 3, 9)
    )
    in_grace = await seed_subscription(
        db_session,
        grace_user,
        plan,
        status="grace",
        expires_at=utc(2026, 2, 20),
        grace_until=utc(2026, 2, 27),
    )
    scheduled = await seed_subscription(
        db_session,
        scheduled_user,
        plan,
        payment_status="completed",
        started_at=utc(2026, 3, 10),
    )
    healthy = await seed_subscription(
        db_session, healthy_user, plan, status="active", expires_at=utc(2026, 4, 1)
    )
    await seed_subscription(db_session, healthy_user, plan, status="expired")
    await db_session.commit()

    summary = await sweeper.sweep(now=NOW)

    assert summary == SweepSummary(
        scanned=5,
        processed=4,
        activated=1,
        moved_to_grace=1,
        expired=1,
        trial_expired=1,
        errors=0,
    )
    assert await _status(db_session, trial.id) == "expired"
    assert await _status(db_session, lapsing.id) == "grace"
    assert await _status(db_session, in_grace.id) == "expired"
    assert await _status(db_session, scheduled.id) == "active"
    assert await _status(db_session, healthy.id) == "active"

    mock_email_service.send_grace_period_notice.assert_awaited_once_with(
        to=lapsing_user.email,
        grace_until=utc(2026, 3, 16),
        customer_name="Lapsing Customer",
    )
    mock_notifier.notify.assert_awaited_once()
    event_type, data = mock_notifier.notify.await_args.args
    assert event_type == "subscription_expired"
    assert data["user_email"] == grace_user.email
    assert data["subscription_id"] == str(in_grace.id)


@pytest.mark.asyncio
async def test_repeated_sweeps_send_grace_email_once(
    db_session, sweeper, mock_email_service
):
    plan = await seed_plan(db_session)
    user = await seed_user(db_session)
    active = await seed_subscription(
        db_session, user, plan, status="active", expires_at=utc(2026, 3, 9)
    )
    await db_session.commit()

    first = await sweeper.sweep(now=NOW)
    second = await sweeper.sweep(now=NOW)

    assert first.moved_to_grace == 1
    assert second.moved_to_grace == 0
    assert second.scanned == 1
    assert second.processed == 0
    assert mock_email_service.send_grace_period_notice.await_count == 1
    row = await db_session.get(Subscription, active.id, populate_existing=True)
    assert row.grace_email_sent is True


@pytest.mark.asyncio
async def test_row_failure_is_counted_and_sweep_continues(db_session, sweeper):
    plan = await seed_plan(db_session)
    bad_user = await seed_user(db_session)
    good_user = await seed_user(db_session)
    bad = await seed_subscription(
        db_session, bad_user, plan, status="trial", trial_ends_at=utc(2026, 3, 1)
    )
    good = await seed_subscription(
        db_session, good_user, plan, status="trial", trial_ends_at=utc(2026, 3, 1)
    )
    await db_session.commit()

    original_advance = SubscriptionLifecycle.advance

    async def flaky_advance(self, subscription, now):
        if subscription.id == bad.id:
            raise RuntimeError("row is corrupt")
        return await original_advance(self, subscription, now)

    with patch.object(SubscriptionLifecycle, "advance", new=flaky_advance):
        summary = await sweeper.sweep(now=NOW)

    assert summary.scanned == 2
    assert summary.processed == 1
    assert summary.errors == 1
    assert summary.trial_expired == 1
    assert await _status(db_session, bad.id) == "trial"
    assert await _status(db_session, good.id) == "expired"


@pytest.mark.asyncio
async def test_empty_sweep(sweeper):
    summary = await sweeper.sweep(now=NOW)
    assert summary.to_dict() == {
        "scanned": 0,
        "processed": 0,
        "activated": 0,
        "moved_to_grace": 0,
        "expired": 0,
        "trial_expired": 0,
        "errors": 0,
    }
