from typing import Any, Callable, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.billing.domain.billing.billing_shared import BillingConfig
from app.modules.billing.domain.billing.transition_sweeper import (
    SessionFactory,
    SweepSummary,
    TransitionSweeper,
)
from app.modules.billing.domain.billing.webhook_service import WebhookService
from app.modules.notifications.domain.email_service import EmailService
from app.modules.notifications.domain.telegram import TelegramNotifier
from app.shared.core.rate_limit import DeliveryThrottle


async def process_gateway_webhook(
    request: Request,
    db: AsyncSession,
    *,
    config: BillingConfig,
    throttle: DeliveryThrottle,
    notifier: TelegramNotifier,
    extract_client_ip: Callable[[Request], str],
) -> dict[str, Any]:
    payload = await request.body()
    content_type = request.headers.get("content-type", "")
    service = WebhookService(db, config, throttle=throttle, notifier=notifier)
    result = await service.process(payload, content_type, extract_client_ip(request))
    return result.to_response()


async def run_subscription_transitions(
    session_factory: SessionFactory,
    config: BillingConfig,
    *,
    notifier: Optional[TelegramNotifier] = None,
    email_service: Optional[EmailService] = None,
) -> SweepSummary:
    sweeper = TransitionSweeper(
        session_factory,
        config,
        notifier=notifier,
        email_service=email_service,
    )
    return await sweeper.sweep()
