"""
Transactional e-mail over an HTTP e-mail API (Resend-compatible).

Used for customer-facing lifecycle notices. Delivery is best-effort: callers
decide at-most-once semantics (e.g. the ``grace_email_sent`` claim) before
calling, so this never raises.
"""

from __future__ import annotations

from datetime import datetime
from html import escape
from typing import Optional

import httpx
import structlog

from app.modules.billing.domain.billing.billing_shared import EmailConfig, email_hash
from app.shared.core.ops_metrics import NOTIFICATIONS_DISPATCHED

logger = structlog.get_logger()


class EmailService:
    def __init__(self, config: EmailConfig, client: Optional[httpx.AsyncClient] = None):
        self._config = config
        self._client = client

    async def send(
        self,
        *,
        to: str,
        subject: str,
        html: str,
        reply_to: Optional[str] = None,
    ) -> bool:
        if not self._config.api_key:
            logger.warning("email_api_key_missing", to_hash=email_hash(to))
            NOTIFICATIONS_DISPATCHED.labels(channel="email", status="skipped").inc()
            return False

        payload: dict[str, object] = {
            "from": self._config.from_email,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if reply_to:
            payload["reply_to"] = reply_to

        try:
            if self._client is None:
                from app.shared.core.http import get_http_client

                client = get_http_client()
            else:
                client = self._client
            resp = await client.post(
                self._config.api_url,
                json=payload,
                headers={"Authorization": f"Bearer {self._config.api_key}"},
                timeout=httpx.Timeout(self._config.timeout_seconds),
            )
            if resp.status_code >= 400:
                logger.warning(
                    "email_send_failed",
                    to_hash=email_hash(to),
                    status_code=resp.status_code,
                    response=resp.text[:300],
                )
                NOTIFICATIONS_DISPATCHED.labels(channel="email", status="failed").inc()
                return False
        except Exception as e:
            logger.error("email_send_exception", to_hash=email_hash(to), error=str(e))
            NOTIFICATIONS_DISPATCHED.labels(channel="email", status="failed").inc()
            return False

        NOTIFICATIONS_DISPATCHED.labels(channel="email", status="sent").inc()
        logger.info("email_sent", to_hash=email_hash(to), subject=subject)
        return True

    async def send_grace_period_notice(
        self,
        *,
        to: str,
        grace_until: datetime,
        customer_name: Optional[str] = None,
    ) -> bool:
        """Tell the customer their subscription lapsed and until when access continues."""
        grace_end = grace_until.strftime("%d %B %Y")
        greeting = f"Hi {escape(customer_name)}," if customer_name else "Hi,"
        html = (
            f"<p>{greeting}</p>"
            "<p>Your subscription has entered its <strong>grace period</strong>.</p>"
            f"<p>You can keep using every feature until <strong>{grace_end}</strong>. "
            "Renew before then to avoid interruption.</p>"
        )
        return await self.send(
            to=to,
            subject="Your subscription is in its grace period",
            html=html,
        )
