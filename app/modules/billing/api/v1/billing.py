"""
Billing API Endpoints - Payment Gateway Integration

Provides:
- POST /billing/webhook - Handle gateway payment notifications
- POST /billing/transitions - Run the subscription transition sweep (internal)
"""

import secrets
from typing import Annotated, Any, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.api.v1.billing_models import (
    TransitionSummaryResponse,
    WebhookAckResponse,
)
from app.modules.billing.api.v1.billing_ops import (
    process_gateway_webhook,
    run_subscription_transitions,
)
from app.modules.billing.domain.billing.billing_shared import BillingConfig
from app.modules.billing.domain.billing.transition_sweeper import SessionFactory
from app.modules.notifications.domain.email_service import EmailService
from app.modules.notifications.domain.telegram import TelegramNotifier
from app.shared.core.config import get_settings
from app.shared.core.exceptions import AuthError, BillingCoreException
from app.shared.core.rate_limit import (
    DeliveryThrottle,
    get_redis_client,
    resolve_client_ip,
)
from app.shared.db.session import async_session_maker, get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Billing"])


def get_billing_config() -> BillingConfig:
    return BillingConfig.from_settings(get_settings())


def get_delivery_throttle(
    config: Annotated[BillingConfig, Depends(get_billing_config)],
) -> DeliveryThrottle:
    return DeliveryThrottle(config.throttle, get_redis_client())


def get_notifier(
    config: Annotated[BillingConfig, Depends(get_billing_config)],
) -> TelegramNotifier:
    return TelegramNotifier(config.notifier)


def get_email_service(
    config: Annotated[BillingConfig, Depends(get_billing_config)],
) -> EmailService:
    return EmailService(config.email)


def get_session_factory() -> SessionFactory:
    return async_session_maker


def _extract_client_ip(request: Request) -> str:
    """
    Resolve request source IP from proxy headers.

    We prefer the right-most valid XFF entry (closest upstream hop) and
    fall back to `X-Real-IP`, then `request.client.host`.
    """
    return resolve_client_ip(
        request.headers.get("x-forwarded-for"),
        request.headers.get("x-real-ip"),
        request.client.host if request.client and request.client.host else None,
        trusted_hops=get_settings().TRUSTED_PROXY_HOPS,
    )


async def require_internal_job_secret(
    x_internal_job_secret: Annotated[
        Optional[str], Header(alias="X-Internal-Job-Secret")
    ] = None,
) -> None:
    """Scheduler authentication for the transition sweep; no user-token RBAC here."""
    expected_secret = get_settings().INTERNAL_JOB_SECRET
    if not expected_secret or len(expected_secret) < 32:
        raise BillingCoreException(
            "INTERNAL_JOB_SECRET is not configured securely. Set a 32+ character secret.",
            code="internal_job_secret_unconfigured",
            status_code=503,
        )
    if not x_internal_job_secret or not secrets.compare_digest(
        x_internal_job_secret.encode("utf-8"), expected_secret.encode("utf-8")
    ):
        logger.warning("subscription_transitions_unauthorized")
        raise AuthError("Unauthorized")


@router.post("/webhook", response_model=WebhookAckResponse, response_model_exclude_none=True)
async def handle_webhook(
    request: Request,
    db: Annotated[AsyncSession, Depends(get_db)],
    config: Annotated[BillingConfig, Depends(get_billing_config)],
    throttle: Annotated[DeliveryThrottle, Depends(get_delivery_throttle)],
    notifier: Annotated[TelegramNotifier, Depends(get_notifier)],
) -> Any:
    """
    Handle gateway payment notifications (JSON or form-encoded).

    Unknown orders, duplicates and missing order numbers are acknowledged with
    200 so the gateway stops retrying; rejections map to 4xx and store
    failures to a retryable 503.
    """
    return await process_gateway_webhook(
        request,
        db,
        config=config,
        throttle=throttle,
        notifier=notifier,
        extract_client_ip=_extract_client_ip,
    )


@router.post(
    "/transitions",
    response_model=TransitionSummaryResponse,
    dependencies=[Depends(require_internal_job_secret)],
)
async def run_transitions(
    config: Annotated[BillingConfig, Depends(get_billing_config)],
    session_factory: Annotated[SessionFactory, Depends(get_session_factory)],
    notifier: Annotated[TelegramNotifier, Depends(get_notifier)],
    email_service: Annotated[EmailService, Depends(get_email_service)],
) -> Any:
    summary = await run_subscription_transitions(
        session_factory,
        config,
        notifier=notifier,
        email_service=email_service,
    )
    return {"success": True, **summary.to_dict()}
