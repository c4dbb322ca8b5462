"""Gateway webhook checksum verification (HMAC-SHA256 over the sorted signed fields)."""

from __future__ import annotations

import hashlib
import hmac

from app.modules.billing.domain.billing.billing_shared import SignatureConfig, logger
from app.modules.billing.domain.billing.gateway_payload import GatewayNotification

# Order matters: the gateway joins these sorted by key name.
SIGNED_FIELDS = (
    "amount",
    "currency",
    "exchange_reference_number",
    "exchange_transaction_id",
    "order_number",
    "payer_bank_name",
    "status",
    "status_description",
    "transaction_id",
)


def build_signature_string(notification: GatewayNotification) -> str:
    """Pipe-join the signed fields; absent values contribute an empty segment."""
    fields = notification.fields
    return "|".join(getattr(fields, name) or "" for name in SIGNED_FIELDS)


def compute_checksum(secret: str, notification: GatewayNotification) -> str:
    return hmac.new(
        secret.encode("utf-8"),
        build_signature_string(notification).encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class SignatureVerifier:
    """Verifies that a notification was produced by the holder of the gateway secret."""

    def __init__(self, config: SignatureConfig):
        self._config = config

    def verify(self, notification: GatewayNotification) -> bool:
        checksum = (notification.checksum or "").strip()
        secret = self._config.secret

        if not secret or not checksum:
            if self._config.allow_unsigned:
                logger.warning(
                    "gateway_webhook_unsigned_accepted",
                    order_number=notification.order_number,
                    secret_configured=bool(secret),
                )
                return True
            if not secret:
                logger.error("gateway_secret_key_not_configured")
            else:
                logger.warning(
                    "gateway_webhook_missing_signature",
                    order_number=notification.order_number,
                )
            return False

        expected = compute_checksum(secret, notification)
        is_valid = hmac.compare_digest(
            expected.lower().encode("utf-8"), checksum.lower().encode("utf-8")
        )
        if not is_valid:
            logger.warning(
                "gateway_webhook_invalid_signature",
                order_number=notification.order_number,
                provided_sig=checksum[:8] + "...",
            )
        return is_valid
