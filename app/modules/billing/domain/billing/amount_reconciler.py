"""Currency and amount checks between the gateway charge and the expected payment."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from app.models.billing import Subscription
from app.modules.billing.domain.billing.billing_shared import (
    PRORATED_MARKER,
    ReconcilerConfig,
    logger,
)
from app.shared.core.exceptions import (
    AmountMismatchError,
    CurrencyMismatchError,
    MalformedPayloadError,
)

# Differences at or below this are rounding noise and are not recorded.
NOTE_THRESHOLD = Decimal("0.01")


@dataclass(frozen=True, slots=True)
class ReconciliationResult:
    final_amount: Decimal
    difference: Decimal
    prorated: bool
    note: Optional[str] = None


def is_prorated(subscription: Optional[Subscription]) -> bool:
    if subscription is None:
        return False
    notes = (subscription.notes or "").lower()
    reference = (subscription.payment_reference or "").lower()
    return PRORATED_MARKER in notes or PRORATED_MARKER in reference


class AmountReconciler:
    def __init__(self, config: ReconcilerConfig):
        self._config = config

    @property
    def settlement_currency(self) -> str:
        return self._config.settlement_currency

    def check_currency(self, currency: str) -> None:
        """Hard gate: anything but the settlement currency is refused."""
        received = (currency or "").strip().upper()
        if received != self._config.settlement_currency:
            logger.warning(
                "gateway_currency_mismatch",
                expected=self._config.settlement_currency,
                received=received or None,
            )
            raise CurrencyMismatchError(
                f"Currency mismatch: expected {self._config.settlement_currency}",
                details={
                    "expected": self._config.settlement_currency,
                    "received": received or None,
                },
            )

    def reconcile(
        self,
        gateway_amount: Optional[Decimal],
        expected_amount: Decimal,
        subscription: Optional[Subscription],
    ) -> ReconciliationResult:
        if gateway_amount is None or gateway_amount <= 0:
            raise MalformedPayloadError(
                "Missing or non-positive amount",
                details={"amount": str(gateway_amount) if gateway_amount is not None else None},
            )

        expected = Decimal(expected_amount)
        difference = abs(gateway_amount - expected)
        prorated = is_prorated(subscription)
        currency = self._config.settlement_currency

        if difference > self._config.amount_tolerance and not prorated:
            logger.error(
                "gateway_amount_mismatch",
                received=str(gateway_amount),
                expected=str(expected),
                difference=str(difference),
            )
            raise AmountMismatchError(
                f"Expected {expected:.2f} {currency}, received {gateway_amount} {currency} "
                f"(diff: {difference})",
                details={
                    "expected": f"{expected:.2f}",
                    "received": str(gateway_amount),
                    "difference": str(difference),
                },
            )

        note = None
        if difference > NOTE_THRESHOLD:
            note = (
                f"Amount difference: gateway charged {gateway_amount:.2f}, "
                f"expected {expected:.2f} (diff: {difference})"
            )
            if prorated:
                note += "; accepted as prorated"
            logger.info(
                "gateway_amount_discrepancy_recorded",
                received=str(gateway_amount),
                expected=str(expected),
                difference=str(difference),
                prorated=prorated,
            )

        return ReconciliationResult(
            final_amount=gateway_amount,
            difference=difference,
            prorated=prorated,
            note=note,
        )
