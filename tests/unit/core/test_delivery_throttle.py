"""Tests for the Redis-backed webhook delivery throttle and client IP resolution."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from app.modules.billing.domain.billing.billing_shared import ThrottleConfig
from app.shared.core.rate_limit import (
    SCOPE_IP,
    SCOPE_ORDER,
    DeliveryThrottle,
    get_redis_client,
    resolve_client_ip,
)


def _redis_with_count(count: int) -> tuple[MagicMock, MagicMock]:
    redis = MagicMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[0, 1, count, True])
    redis.pipeline.return_value = pipe
    return redis, pipe


class TestDeliveryThrottle:
    @pytest.mark.asyncio
    async def test_ip_within_limit_is_allowed(self):
        redis, pipe = _redis_with_count(10)
        throttle = DeliveryThrottle(ThrottleConfig(ip_limit=10), redis)

        decision = await throttle.check_ip("203.0.113.7")

        assert decision.allowed is True
        assert decision.scope == SCOPE_IP
        assert decision.count == 10
        redis.pipeline.assert_called_once_with(transaction=True)
        key = pipe.zadd.call_args.args[0]
        assert key == "webhook_rate:ip:203.0.113.7"
        pipe.expire.assert_called_once_with(key, 60)

    @pytest.mark.asyncio
    async def test_eleventh_delivery_from_same_ip_is_limited(self):
        redis, _ = _redis_with_count(11)
        throttle = DeliveryThrottle(ThrottleConfig(ip_limit=10), redis)

        decision = await throttle.check_ip("203.0.113.7")

        assert decision.allowed is False
        assert decision.degraded is False

    @pytest.mark.asyncio
    async def test_order_window_uses_its_own_limit_and_key(self):
        redis, pipe = _redis_with_count(6)
        throttle = DeliveryThrottle(
            ThrottleConfig(order_limit=5, order_window_seconds=3600), redis
        )

        decision = await throttle.check_order("ORD 1/2")

        assert decision.allowed is False
        assert decision.scope == SCOPE_ORDER
        key = pipe.zcard.call_args.args[0]
        assert key == "webhook_rate:order_number:ord_1_2"
        pipe.expire.assert_called_once_with(key, 3600)

    @pytest.mark.asyncio
    async def test_store_error_fails_open_by_default(self):
        redis, pipe = _redis_with_count(0)
        pipe.execute = AsyncMock(side_effect=ConnectionError("redis down"))
        throttle = DeliveryThrottle(ThrottleConfig(), redis)

        decision = await throttle.check_ip("198.51.100.1")

        assert decision.allowed is True
        assert decision.degraded is True

    @pytest.mark.asyncio
    async def test_store_error_fails_closed_when_configured(self):
        redis, pipe = _redis_with_count(0)
        pipe.execute = AsyncMock(side_effect=TimeoutError())
        throttle = DeliveryThrottle(ThrottleConfig(fail_open=False), redis)

        decision = await throttle.check_order("ORD-1")

        assert decision.allowed is False
        assert decision.degraded is True

    @pytest.mark.asyncio
    async def test_no_store_configured_follows_policy(self):
        assert (await DeliveryThrottle(ThrottleConfig(), None).check_ip("x")).allowed
        closed = DeliveryThrottle(ThrottleConfig(fail_open=False), None)
        assert not (await closed.check_ip("x")).allowed


class TestResolveClientIp:
    def test_right_most_valid_forwarded_entry_wins(self):
        assert (
            resolve_client_ip("198.51.100.9, 203.0.113.5", None, "10.0.0.1")
            == "203.0.113.5"
        )

    def test_invalid_forwarded_entries_are_skipped(self):
        assert resolve_client_ip("198.51.100.9, garbage", None, "10.0.0.1") == "198.51.100.9"

    def test_trusted_hops_skip_proxy_entries(self):
        assert (
            resolve_client_ip(
                "198.51.100.9, 203.0.113.5, 10.0.0.2", None, "10.0.0.1", trusted_hops=2
            )
            == "203.0.113.5"
        )

    def test_falls_back_to_real_ip_then_peer(self):
        assert resolve_client_ip(None, "192.0.2.4", "10.0.0.1") == "192.0.2.4"
        assert resolve_client_ip("", "not-an-ip", "10.0.0.1") == "10.0.0.1"
        assert resolve_client_ip(None, None, None) == "unknown"


def test_redis_client_disabled_in_testing():
    assert get_redis_client() is None
