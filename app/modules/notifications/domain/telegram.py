"""
Operator alerts over the Telegram Bot API.

Best-effort by contract: every failure mode (missing credentials, timeouts,
transport errors, non-OK API responses) is logged and reported as ``False``.
Nothing here raises into the billing pipeline.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

import httpx
import structlog

from app.modules.billing.domain.billing.billing_shared import NotifierConfig
from app.shared.core.ops_metrics import NOTIFICATIONS_DISPATCHED

logger = structlog.get_logger()

EVENT_NEW_USER = "new_user"
EVENT_TRIAL_STARTED = "trial_started"
EVENT_UPGRADE_PRO = "upgrade_pro"
EVENT_PAYMENT_SUCCESS = "payment_success"
EVENT_PAYMENT_FAILED = "payment_failed"
EVENT_SUBSCRIPTION_EXPIRED = "subscription_expired"
EVENT_PAYMENT_UNAPPLIED = "payment_unapplied"

DISPLAY_TZ = ZoneInfo("Asia/Kuala_Lumpur")
_MARKDOWN_SPECIALS = ("\\", "_", "*", "`", "[")


@dataclass(frozen=True, slots=True)
class NotificationEvent:
    type: str
    data: Mapping[str, Any] = field(default_factory=dict)


def _md(value: Any, default: str = "N/A") -> str:
    text = str(value) if value not in (None, "") else default
    for ch in _MARKDOWN_SPECIALS:
        text = text.replace(ch, f"\\{ch}")
    return text


def _money(amount: Any, currency: Optional[str]) -> str:
    try:
        value = Decimal(str(amount if amount is not None else 0))
    except InvalidOperation:
        value = Decimal("0")
    return f"{currency or 'MYR'} {value:.2f}"


def _when(timestamp: Any) -> str:
    moment: Optional[datetime] = None
    if isinstance(timestamp, datetime):
        moment = timestamp
    elif isinstance(timestamp, str) and timestamp:
        try:
            moment = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        except ValueError:
            moment = None
    if moment is None:
        moment = datetime.now(timezone.utc)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(DISPLAY_TZ).strftime("%d %b %Y, %H:%M")


def build_message(event: NotificationEvent) -> str:
    d = event.data
    when = _when(d.get("timestamp"))
    plan = f"{_md(d.get('plan_name'), 'Pro')} ({d.get('duration_months') or 1} months)"

    if event.type == EVENT_NEW_USER:
        return (
            "🎉 *NEW USER SIGNED UP*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"🏪 *Business:* {_md(d.get('business_name'), 'Not set')}\n"
            f"📅 *Time:* {when}"
        )
    if event.type == EVENT_TRIAL_STARTED:
        return (
            "🆓 *TRIAL STARTED*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"👤 *Name:* {_md(d.get('user_name'))}\n"
            f"🏪 *Business:* {_md(d.get('business_name'), 'Not set')}\n"
            f"📅 *Time:* {when}"
        )
    if event.type == EVENT_UPGRADE_PRO:
        return (
            "💎 *UPGRADED TO PRO*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"👤 *Name:* {_md(d.get('user_name'))}\n"
            f"🏪 *Business:* {_md(d.get('business_name'))}\n"
            f"📦 *Plan:* {plan}\n"
            f"💰 *Amount:* {_money(d.get('amount'), d.get('currency'))}\n"
            f"🧾 *Order ID:* `{d.get('order_id') or 'N/A'}`\n"
            f"📅 *Time:* {when}"
        )
    if event.type == EVENT_PAYMENT_SUCCESS:
        return (
            "✅ *PAYMENT SUCCEEDED*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"📦 *Plan:* {plan}\n"
            f"💰 *Amount:* {_money(d.get('amount'), d.get('currency'))}\n"
            f"🧾 *Order ID:* `{d.get('order_id') or 'N/A'}`\n"
            f"📅 *Time:* {when}"
        )
    if event.type == EVENT_PAYMENT_FAILED:
        return (
            "❌ *PAYMENT FAILED*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"💰 *Amount:* {_money(d.get('amount'), d.get('currency'))}\n"
            f"🧾 *Order ID:* `{d.get('order_id') or 'N/A'}`\n"
            f"⚠️ *Reason:* {_md(d.get('failure_reason'), 'Unknown')}\n"
            f"📅 *Time:* {when}\n\n"
            "_Follow up with the customer._"
        )
    if event.type == EVENT_PAYMENT_UNAPPLIED:
        return (
            "🚨 *PAYMENT NOT APPLIED*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"📦 *Plan:* {plan}\n"
            f"💰 *Amount:* {_money(d.get('amount'), d.get('currency'))}\n"
            f"🧾 *Order ID:* `{d.get('order_id') or 'N/A'}`\n"
            f"📌 *Subscription:* `{d.get('subscription_id') or 'N/A'}` "
            f"({_md(d.get('subscription_status'), 'unknown')})\n"
            f"📅 *Time:* {when}\n\n"
            "_Paid against a subscription that cannot be activated. Resolve manually._"
        )
    if event.type == EVENT_SUBSCRIPTION_EXPIRED:
        return (
            "⏰ *SUBSCRIPTION EXPIRED*\n\n"
            f"👤 *Email:* {_md(d.get('user_email'))}\n"
            f"👤 *Name:* {_md(d.get('user_name'))}\n"
            f"🏪 *Business:* {_md(d.get('business_name'))}\n"
            f"📅 *Time:* {when}"
        )
    return (
        "📢 *NOTIFICATION*\n\n"
        f"{json.dumps(dict(d), indent=2, default=str)}\n\n"
        f"📅 *Time:* {when}"
    )


class TelegramNotifier:
    def __init__(
        self, config: NotifierConfig, client: Optional[httpx.AsyncClient] = None
    ):
        self._config = config
        self._client = client

    @property
    def configured(self) -> bool:
        return bool(self._config.bot_token and self._config.chat_id)

    async def notify(self, event_type: str, data: Mapping[str, Any]) -> bool:
        return await self.send(NotificationEvent(type=event_type, data=data))

    async def send(self, event: NotificationEvent) -> bool:
        if not self.configured:
            logger.warning("telegram_credentials_missing", event_type=event.type)
            NOTIFICATIONS_DISPATCHED.labels(channel="telegram", status="skipped").inc()
            return False

        url = f"{self._config.api_url.rstrip('/')}/bot{self._config.bot_token}/sendMessage"
        payload = {
            "chat_id": self._config.chat_id,
            "text": build_message(event),
            "parse_mode": "Markdown",
            "disable_web_page_preview": True,
        }
        try:
            if self._client is None:
                from app.shared.core.http import get_http_client

                client = get_http_client()
            else:
                client = self._client
            resp = await client.post(
                url,
                json=payload,
                timeout=httpx.Timeout(self._config.timeout_seconds),
            )
            body = resp.json() if resp.content else {}
            if resp.status_code >= 400 or not body.get("ok", False):
                logger.warning(
                    "telegram_send_failed",
                    event_type=event.type,
                    status_code=resp.status_code,
                    description=str(body.get("description", ""))[:300],
                )
                NOTIFICATIONS_DISPATCHED.labels(channel="telegram", status="failed").inc()
                return False
        except Exception as exc:
            logger.error(
                "telegram_send_exception",
                event_type=event.type,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            NOTIFICATIONS_DISPATCHED.labels(channel="telegram", status="failed").inc()
            return False

        NOTIFICATIONS_DISPATCHED.labels(channel="telegram", status="sent").inc()
        logger.info("telegram_notification_sent", event_type=event.type)
        return True
