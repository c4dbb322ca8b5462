"""
Webhook Delivery Throttle

Sliding-window counters over a shared Redis store, keyed per client IP and per
gateway order number. Multiple handler instances share the counters, so no
in-process state is kept.

The store-failure policy is explicit (``ThrottleConfig.fail_open``): payment
webhooks are allowed through by default when Redis is unreachable.
"""

import asyncio
import ipaddress
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional, cast
from uuid import uuid4

import structlog
from redis.asyncio import Redis, from_url

from app.modules.billing.domain.billing.billing_shared import ThrottleConfig
from app.shared.core.config import get_settings
from app.shared.core.ops_metrics import THROTTLE_DECISIONS

__all__ = [
    "DeliveryThrottle",
    "ThrottleDecision",
    "SCOPE_IP",
    "SCOPE_ORDER",
    "get_redis_client",
    "resolve_client_ip",
]

logger = structlog.get_logger()

SCOPE_IP = "ip"
SCOPE_ORDER = "order_number"

_redis_client: Redis | None = None


def get_redis_client() -> Redis | None:
    """Lazy initialization of the shared Redis client for throttle counters."""
    global _redis_client
    settings = get_settings()
    # Tests use injected fakes; never couple them to a live Redis.
    if getattr(settings, "TESTING", False) is True:
        return None
    if not settings.REDIS_URL:
        return None

    # Ensure the client is tied to the current running loop
    if _redis_client is not None:
        try:
            loop = asyncio.get_running_loop()
            if getattr(_redis_client, "_loop", None) not in (None, loop):
                _redis_client = None
        except RuntimeError:
            _redis_client = None

    if _redis_client is None:
        redis_from_url = cast(Callable[..., Redis], from_url)
        _redis_client = redis_from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_timeout=settings.RATE_LIMIT_STORE_TIMEOUT_SECONDS,
            socket_connect_timeout=settings.RATE_LIMIT_STORE_TIMEOUT_SECONDS,
        )
    return _redis_client


def _safe_key_part(value: str) -> str:
    safe = "".join(
        ch if (ch.isalnum() or ch in {"_", "-", ".", ":"}) else "_"
        for ch in str(value or "").strip().lower()
    )
    return safe[:128] or "unknown"


def resolve_client_ip(
    forwarded_for: Optional[str],
    real_ip: Optional[str],
    peer_host: Optional[str],
    trusted_hops: int = 1,
) -> str:
    """
    Resolve request source IP from proxy headers.

    Skips ``trusted_hops - 1`` right-most proxy entries, then takes the
    right-most valid address. Falls back to ``X-Real-IP``, then the socket peer.
    """
    candidates = [part.strip() for part in (forwarded_for or "").split(",") if part.strip()]
    skip = max(trusted_hops - 1, 0)
    if skip:
        candidates = candidates[:-skip] if len(candidates) > skip else []
    for raw in reversed(candidates):
        try:
            return str(ipaddress.ip_address(raw))
        except ValueError:
            continue

    if real_ip:
        try:
            return str(ipaddress.ip_address(real_ip.strip()))
        except ValueError:
            pass

    return peer_host or "unknown"


@dataclass(frozen=True, slots=True)
class ThrottleDecision:
    allowed: bool
    scope: str
    limit: int
    count: Optional[int] = None
    degraded: bool = False


class DeliveryThrottle:
    """Two independent sliding windows: per client IP and per order number."""

    def __init__(self, config: ThrottleConfig, redis: Optional[Any] = None):
        self._config = config
        self._redis = redis

    async def check_ip(self, client_ip: str) -> ThrottleDecision:
        return await self._hit(
            SCOPE_IP,
            client_ip,
            limit=self._config.ip_limit,
            window_seconds=self._config.ip_window_seconds,
        )

    async def check_order(self, order_number: str) -> ThrottleDecision:
        return await self._hit(
            SCOPE_ORDER,
            order_number,
            limit=self._config.order_limit,
            window_seconds=self._config.order_window_seconds,
        )

    async def _hit(
        self, scope: str, identifier: str, *, limit: int, window_seconds: int
    ) -> ThrottleDecision:
        if self._redis is None:
            return self._store_unavailable(scope, limit, reason="store_not_configured")

        key = f"webhook_rate:{scope}:{_safe_key_part(identifier)}"
        now = time.time()
        member = f"{now:.6f}:{uuid4().hex[:8]}"
        try:
            async with asyncio.timeout(self._config.store_timeout_seconds):
                pipe = self._redis.pipeline(transaction=True)
                pipe.zremrangebyscore(key, 0, now - window_seconds)
                pipe.zadd(key, {member: now})
                pipe.zcard(key)
                pipe.expire(key, window_seconds)
                results = await pipe.execute()
            count = int(results[2])
        except Exception as exc:
            logger.error(
                "webhook_throttle_store_error",
                scope=scope,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return self._store_unavailable(scope, limit, reason="store_error")

        allowed = count <= limit
        THROTTLE_DECISIONS.labels(
            scope=scope, decision="allowed" if allowed else "limited"
        ).inc()
        if not allowed:
            logger.warning(
                "webhook_rate_limited",
                scope=scope,
                identifier=identifier,
                current=count,
                limit=limit,
                window_seconds=window_seconds,
            )
        return ThrottleDecision(allowed=allowed, scope=scope, limit=limit, count=count)

    def _store_unavailable(self, scope: str, limit: int, *, reason: str) -> ThrottleDecision:
        allowed = self._config.fail_open
        THROTTLE_DECISIONS.labels(
            scope=scope, decision="fail_open" if allowed else "fail_closed"
        ).inc()
        logger.warning(
            "webhook_throttle_degraded",
            scope=scope,
            reason=reason,
            policy="fail_open" if allowed else "fail_closed",
        )
        return ThrottleDecision(allowed=allowed, scope=scope, limit=limit, degraded=True)
