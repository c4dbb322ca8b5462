"""Tests for gateway webhook checksum verification."""

from app.modules.billing.domain.billing.billing_shared import SignatureConfig
from app.modules.billing.domain.billing.gateway_payload import decode_notification
from app.modules.billing.domain.billing.signature import (
    SignatureVerifier,
    build_signature_string,
    compute_checksum,
)
from tests.utils import TEST_GATEWAY_SECRET, gateway_fields, nested_payload


def _verifier(secret=TEST_GATEWAY_SECRET, allow_unsigned=False) -> SignatureVerifier:
    return SignatureVerifier(SignatureConfig(secret=secret, allow_unsigned=allow_unsigned))


def test_signature_string_uses_sorted_fields_with_empty_segments():
    notification = decode_notification(
        {
            "amount": "100.00",
            "currency": "MYR",
            "order_number": "ORD-1",
            "status": "3",
            "transaction_id": "txn_1",
        }
    )
    assert build_signature_string(notification) == "100.00|MYR|||ORD-1||3||txn_1"


def test_valid_checksum_verifies_for_both_shapes():
    fields = gateway_fields("ORD-SIG")
    verifier = _verifier()

    assert verifier.verify(decode_notification(dict(fields))) is True
    assert verifier.verify(decode_notification(nested_payload(fields))) is True


def test_checksum_comparison_is_case_insensitive():
    fields = gateway_fields("ORD-CASE")
    fields["checksum"] = fields["checksum"].upper()
    assert _verifier().verify(decode_notification(fields)) is True


def test_tampered_amount_fails():
    fields = gateway_fields("ORD-TAMPER", amount="100.00")
    fields["amount"] = "1.00"
    assert _verifier().verify(decode_notification(fields)) is False


def test_wrong_secret_fails():
    fields = gateway_fields("ORD-WRONG", secret="some-other-secret")
    assert _verifier().verify(decode_notification(fields)) is False


def test_missing_checksum_fails_unless_unsigned_allowed():
    fields = gateway_fields("ORD-UNSIGNED", secret=None)
    notification = decode_notification(fields)

    assert _verifier().verify(notification) is False
    assert _verifier(allow_unsigned=True).verify(notification) is True


def test_missing_secret_fails_closed():
    fields = gateway_fields("ORD-NOSECRET")
    assert _verifier(secret=None).verify(decode_notification(fields)) is False


def test_non_ascii_checksum_does_not_raise():
    fields = gateway_fields("ORD-UTF")
    fields["checksum"] = "é" * 64
    assert _verifier().verify(decode_notification(fields)) is False


def test_compute_checksum_matches_gateway_reference():
    fields = gateway_fields("ORD-REF")
    notification = decode_notification(fields)
    assert compute_checksum(TEST_GATEWAY_SECRET, notification) == fields["checksum"]
