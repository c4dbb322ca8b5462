"""Tests for order number to payment resolution."""

from datetime import timedelta

import pytest

from app.modules.billing.domain.billing.payment_matcher import (
    MATCHED_BY_PAYER_EMAIL,
    MATCHED_BY_REFERENCE,
    PaymentMatcher,
)
from tests.utils import seed_payment, seed_plan, seed_subscription, seed_user, utc


@pytest.mark.asyncio
async def test_match_by_reference(db_session):
    user = await seed_user(db_session)
    plan = await seed_plan(db_session)
    subscription = await seed_subscription(db_session, user, plan)
    payment = await seed_payment(db_session, subscription, reference="ORD-1")

    match = await PaymentMatcher(db_session).match("ORD-1")

    assert match is not None
    assert match.payment.id == payment.id
    assert match.matched_by == MATCHED_BY_REFERENCE


@pytest.mark.asyncio
async def test_reference_match_prefers_most_recent(db_session):
    user = await seed_user(db_session)
    plan = await seed_plan(db_session)
    subscription = await seed_subscription(db_session, user, plan)
    base = utc(2026, 3, 1)
    await seed_payment(db_session, subscription, reference="ORD-2", created_at=base)
    newer = await seed_payment(
        db_session, subscription, reference="ORD-2", created_at=base + timedelta(hours=1)
    )

    match = await PaymentMatcher(db_session).match("ORD-2")

    assert match.payment.id == newer.id


@pytest.mark.asyncio
async def test_email_fallback_adopts_latest_pending_and_rebinds_reference(db_session):
    user = await seed_user(db_session, email="Payer@Example.com")
    plan = await seed_plan(db_session)
    subscription = await seed_subscription(db_session, user, plan)
    base = utc(2026, 3, 1)
    await seed_payment(db_session, subscription, reference="CHK-OLD", created_at=base)
    latest = await seed_payment(
        db_session, subscription, reference="CHK-NEW", created_at=base + timedelta(days=1)
    )
    await seed_payment(
        db_session,
        subscription,
        reference="CHK-DONE",
        status="completed",
        created_at=base + timedelta(days=2),
    )

    match = await PaymentMatcher(db_session).match("GW-ORDER-9", "payer@example.com")

    assert match is not None
    assert match.matched_by == MATCHED_BY_PAYER_EMAIL
    assert match.payment.id == latest.id
    assert match.payment.payment_reference == "GW-ORDER-9"


@pytest.mark.asyncio
async def test_email_fallback_never_adopts_settled_payments(db_session):
    user = await seed_user(db_session, email="done@example.com")
    plan = await seed_plan(db_session)
    subscription = await seed_subscription(db_session, user, plan)
    await seed_payment(db_session, subscription, reference="CHK-1", status="completed")
    await seed_payment(db_session, subscription, reference="CHK-2", status="failed")

    assert await PaymentMatcher(db_session).match("GW-1", "done@example.com") is None


@pytest.mark.asyncio
async def test_no_match_without_email_or_unknown_payer(db_session):
    matcher = PaymentMatcher(db_session)
    assert await matcher.match("ORD-MISSING") is None
    assert await matcher.match("ORD-MISSING", "nobody@example.com") is None
