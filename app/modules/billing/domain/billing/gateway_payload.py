"""
Gateway payload decoding.

The gateway posts one of two shapes, JSON or form-encoded:

* nested: ``{"event": ..., "data": {"main_data": {...}}}``
* flat (legacy): the same fields at the top level

Both are decoded here, once, into ``GatewayNotification``. Nothing past this
module branches on payload shape.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional
from urllib.parse import parse_qsl

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from app.shared.core.exceptions import MalformedPayloadError

# Settlement amounts are stored as Numeric(12, 2).
AMOUNT_CEILING = Decimal("10000000000")
_CENTS = Decimal("0.01")

SUCCESS_STATUSES = frozenset({"3", "1", "success", "completed", "paid"})
SUCCESS_DESCRIPTIONS = frozenset({"approved", "success", "completed", "paid"})


def _gateway_string(value: Any) -> Optional[str]:
    """Render a scalar the way the gateway renders it when signing."""
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, (int, str)):
        return str(value)
    if isinstance(value, Decimal):
        return format(value, "f")
    raise ValueError(f"unsupported scalar type: {type(value).__name__}")


class GatewayMainData(BaseModel):
    """The signed field set, wherever the gateway put it."""

    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    order_number: Optional[str] = None
    transaction_id: Optional[str] = None
    exchange_reference_number: Optional[str] = None
    exchange_transaction_id: Optional[str] = None
    currency: Optional[str] = None
    amount: Optional[str] = None
    payer_bank_name: Optional[str] = None
    payer_name: Optional[str] = None
    payer_email: Optional[str] = None
    status: Optional[str] = None
    status_description: Optional[str] = None
    checksum: Optional[str] = None

    @field_validator("*", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> Optional[str]:
        return _gateway_string(value)


class NestedData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    main_data: GatewayMainData
    record_type: Optional[str] = None
    receipt_url: Optional[str] = None


class NestedGatewayPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: Optional[str] = None
    data: NestedData


@dataclass(frozen=True, slots=True)
class GatewayNotification:
    """Canonical, shape-independent view of one gateway delivery."""

    fields: GatewayMainData
    event: Optional[str] = None

    @property
    def order_number(self) -> str:
        return (self.fields.order_number or "").strip()

    @property
    def checksum(self) -> Optional[str]:
        return self.fields.checksum or None

    @property
    def currency(self) -> str:
        return (self.fields.currency or "").strip().upper()

    @property
    def amount(self) -> Optional[Decimal]:
        raw = (self.fields.amount or "").strip()
        if not raw:
            return None
        try:
            value = Decimal(raw)
        except InvalidOperation as exc:
            raise MalformedPayloadError(
                "Invalid amount", details={"amount": raw}
            ) from exc
        if not value.is_finite() or abs(value) >= AMOUNT_CEILING:
            raise MalformedPayloadError("Invalid amount", details={"amount": raw})
        if value.quantize(_CENTS) != value:
            raise MalformedPayloadError(
                "Amount has more than two decimal places", details={"amount": raw}
            )
        return value

    @property
    def status_description(self) -> Optional[str]:
        return self.fields.status_description

    @property
    def payer_email(self) -> Optional[str]:
        email = (self.fields.payer_email or "").strip()
        return email or None

    @property
    def payer_name(self) -> Optional[str]:
        return self.fields.payer_name

    @property
    def is_success(self) -> bool:
        status = (self.fields.status or "").strip().lower()
        description = (self.fields.status_description or "").strip().lower()
        return status in SUCCESS_STATUSES or description in SUCCESS_DESCRIPTIONS

    @property
    def gateway_transaction_id(self) -> Optional[str]:
        for candidate in (
            self.fields.transaction_id,
            self.fields.exchange_transaction_id,
            self.fields.exchange_reference_number,
            self.fields.id,
        ):
            if candidate:
                return candidate
        return None


def parse_body(body: bytes, content_type: str) -> dict[str, Any]:
    """Parse a raw JSON or form-encoded body into a mapping."""
    if not body:
        raise MalformedPayloadError("Empty webhook body")
    try:
        text = body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise MalformedPayloadError("Invalid webhook payload encoding") from exc

    if "application/x-www-form-urlencoded" in (content_type or "").lower():
        return dict(parse_qsl(text, keep_blank_values=True))

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        raise MalformedPayloadError("Invalid JSON payload") from exc
    if not isinstance(parsed, dict):
        raise MalformedPayloadError("Webhook payload must be an object")
    return parsed


def decode_notification(raw: dict[str, Any]) -> GatewayNotification:
    """Decode either gateway shape into the canonical notification."""
    try:
        data = raw.get("data")
        if isinstance(data, dict) and isinstance(data.get("main_data"), dict):
            nested = NestedGatewayPayload.model_validate(raw)
            return GatewayNotification(fields=nested.data.main_data, event=nested.event)
        event = raw.get("event")
        return GatewayNotification(
            fields=GatewayMainData.model_validate(raw),
            event=event if isinstance(event, str) else None,
        )
    except ValidationError as exc:
        raise MalformedPayloadError(
            "Unrecognised webhook payload",
            details={"errors": exc.error_count()},
        ) from exc
