from typing import Optional, Dict, Any


class BillingCoreException(Exception):
    """Base exception for all billing lifecycle errors."""
    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(BillingCoreException):
    """Raised when application configuration is invalid or missing."""
    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=500, details=details)


class WebhookRejectedError(BillingCoreException):
    """Raised when an inbound webhook must be refused. Never retried by this service."""
    def __init__(self, message: str, code: str = "webhook_rejected", status_code: int = 400, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=status_code, details=details)


class MalformedPayloadError(WebhookRejectedError):
    """Raised when the webhook body cannot be decoded into a gateway notification."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="malformed_payload", status_code=400, details=details)


class InvalidSignatureError(WebhookRejectedError):
    """Raised when the webhook checksum is missing or does not verify."""
    def __init__(self, message: str = "Invalid signature", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="invalid_signature", status_code=401, details=details)


class CurrencyMismatchError(WebhookRejectedError):
    """Raised when the gateway reports a currency other than the settlement currency."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="currency_mismatch", status_code=400, details=details)


class AmountMismatchError(WebhookRejectedError):
    """Raised when the charged amount falls outside tolerance for a non-prorated payment."""
    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="amount_mismatch", status_code=400, details=details)


class RateLimitedError(WebhookRejectedError):
    """Raised when the delivery throttle refuses a webhook."""
    def __init__(self, message: str = "Too many requests", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="rate_limited", status_code=429, details=details)


class BillingStoreError(BillingCoreException):
    """Raised on persistence failures. Retryable: the gateway should redeliver."""
    def __init__(self, message: str, code: str = "store_unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=503, details=details)


class AuthError(BillingCoreException):
    """Raised when an internal trigger is called without valid credentials."""
    def __init__(self, message: str, code: str = "auth_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, status_code=401, details=details)
