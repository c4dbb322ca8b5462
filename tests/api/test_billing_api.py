"""Tests for the billing HTTP surface: gateway webhook and internal transition trigger."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.shared.core.config import get_settings
from app.shared.core.rate_limit import DeliveryThrottle
from tests.utils import (
    gateway_fields,
    nested_payload,
    seed_payment,
    seed_plan,
    seed_subscription,
    seed_user,
    utc,
)

WEBHOOK_URL = "/api/v1/billing/webhook"
TRANSITIONS_URL = "/api/v1/billing/transitions"


@pytest.fixture
async def pending_order(db_session):
    user = await seed_user(db_session)
    plan = await seed_plan(db_session)
    subscription = await seed_subscription(db_session, user, plan)
    payment = await seed_payment(db_session, subscription, reference="ORD-API-1")
    await db_session.commit()
    return {"subscription_id": subscription.id, "payment_id": payment.id}


class TestWebhookEndpoint:
    @pytest.mark.asyncio
    async def test_valid_payment_returns_200(self, async_client, pending_order):
        response = await async_client.post(
            WEBHOOK_URL, json=nested_payload(gateway_fields("ORD-API-1"))
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "processed"
        assert body["message"] == "OK"
        assert body["action"] == "activated"
        assert body["payment_id"] == str(pending_order["payment_id"])

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_acknowledged(self, async_client, pending_order):
        payload = nested_payload(gateway_fields("ORD-API-1"))
        await async_client.post(WEBHOOK_URL, json=payload)

        response = await async_client.post(WEBHOOK_URL, json=payload)

        assert response.status_code == 200
        assert response.json()["status"] == "duplicate"

    @pytest.mark.asyncio
    async def test_unknown_order_is_200_without_ids(self, async_client):
        response = await async_client.post(
            WEBHOOK_URL, json=nested_payload(gateway_fields("ORD-NOPE"))
        )

        assert response.status_code == 200
        assert response.json() == {"status": "ignored", "message": "No payment found (ok)"}

    @pytest.mark.asyncio
    async def test_form_encoded_delivery(self, async_client, pending_order):
        response = await async_client.post(WEBHOOK_URL, data=gateway_fields("ORD-API-1"))

        assert response.status_code == 200
        assert response.json()["status"] == "processed"

    @pytest.mark.asyncio
    async def test_invalid_signature_is_401(self, async_client, pending_order):
        fields = gateway_fields("ORD-API-1")
        fields["checksum"] = "0" * 64

        response = await async_client.post(WEBHOOK_URL, json=fields)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "invalid_signature"

    @pytest.mark.asyncio
    async def test_malformed_json_is_400(self, async_client):
        response = await async_client.post(
            WEBHOOK_URL,
            content=b"{broken",
            headers={"content-type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "malformed_payload"

    @pytest.mark.asyncio
    async def test_amount_mismatch_is_400(self, async_client, pending_order):
        response = await async_client.post(
            WEBHOOK_URL, json=nested_payload(gateway_fields("ORD-API-1", amount="105.00"))
        )

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "amount_mismatch"
        assert error["details"]["difference"] == "5.00"

    @pytest.mark.asyncio
    async def test_oversized_amount_is_400(self, async_client, pending_order):
        response = await async_client.post(
            WEBHOOK_URL, json=nested_payload(gateway_fields("ORD-API-1", amount="1e30"))
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "malformed_payload"

    @pytest.mark.asyncio
    async def test_payment_on_unactivatable_row_is_not_retried(self, async_client, db_session):
        user = await seed_user(db_session)
        plan = await seed_plan(db_session)
        grace = await seed_subscription(db_session, user, plan, status="grace")
        await seed_payment(db_session, grace, reference="ORD-API-GRACE")
        await db_session.commit()
        payload = nested_payload(gateway_fields("ORD-API-GRACE"))

        responses = [await async_client.post(WEBHOOK_URL, json=payload) for _ in range(3)]

        assert [r.status_code for r in responses] == [200, 200, 200]
        assert [r.json()["status"] for r in responses] == [
            "unapplied",
            "duplicate",
            "duplicate",
        ]

    @pytest.mark.asyncio
    async def test_currency_mismatch_is_400(self, async_client, pending_order):
        response = await async_client.post(
            WEBHOOK_URL, json=nested_payload(gateway_fields("ORD-API-1", currency="USD"))
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "currency_mismatch"

    @pytest.mark.asyncio
    async def test_rate_limited_is_429_with_retry_after(
        self, app, async_client, billing_config
    ):
        from app.modules.billing.api.v1.billing import get_delivery_throttle

        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(return_value=[0, 1, 11, True])
        redis.pipeline.return_value = pipe
        app.dependency_overrides[get_delivery_throttle] = lambda: DeliveryThrottle(
            billing_config.throttle, redis
        )

        response = await async_client.post(
            WEBHOOK_URL,
            json=nested_payload(gateway_fields("ORD-API-1")),
            headers={"X-Forwarded-For": "198.51.100.23"},
        )

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "60"
        assert response.json()["error"]["code"] == "rate_limited"
        assert pipe.zadd.call_args.args[0] == "webhook_rate:ip:198.51.100.23"

    @pytest.mark.asyncio
    async def test_store_failure_is_503(self, app, async_client, pending_order):
        from sqlalchemy.exc import OperationalError

        from app.shared.db.session import get_db

        broken = MagicMock()
        broken.execute = AsyncMock(side_effect=OperationalError("SELECT", {}, Exception("down")))
        broken.rollback = AsyncMock()

        async def _broken_db():
            yield broken

        app.dependency_overrides[get_db] = _broken_db

        response = await async_client.post(
            WEBHOOK_URL, json=nested_payload(gateway_fields("ORD-API-1"))
        )

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "store_unavailable"
        broken.rollback.assert_awaited()

    @pytest.mark.asyncio
    async def test_get_is_405(self, async_client):
        response = await async_client.get(WEBHOOK_URL)

        assert response.status_code == 405
        assert response.json()["error"]["code"] == "http_error"


class TestTransitionsEndpoint:
    @pytest.mark.asyncio
    async def test_requires_internal_job_secret(self, async_client):
        missing = await async_client.post(TRANSITIONS_URL)
        wrong = await async_client.post(
            TRANSITIONS_URL, headers={"X-Internal-Job-Secret": "x" * 40}
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert wrong.json()["error"]["code"] == "auth_error"

    @pytest.mark.asyncio
    async def test_returns_sweep_summary(self, async_client, db_session):
        plan = await seed_plan(db_session)
        user = await seed_user(db_session)
        await seed_subscription(
            db_session, user, plan, status="trial", trial_ends_at=utc(2020, 1, 1)
        )
        await db_session.commit()

        response = await async_client.post(
            TRANSITIONS_URL, headers={"X-Internal-Job-Secret": get_settings().INTERNAL_JOB_SECRET}
        )

        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "scanned": 1,
            "processed": 1,
            "activated": 0,
            "moved_to_grace": 0,
            "expired": 0,
            "trial_expired": 1,
            "errors": 0,
        }


class TestLifecycleRoutes:
    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_request_id_is_echoed(self, async_client):
        response = await async_client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


def test_webhook_payload_round_trips_through_json():
    # The JSON the endpoint receives is exactly what the gateway signed.
    fields = gateway_fields("ORD-JSON")
    assert json.loads(json.dumps(fields))["checksum"] == fields["checksum"]
