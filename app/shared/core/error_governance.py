"""
Unified Error Governance

Centrally handles exception classification, structured logging and metrics,
rendering every failure into one JSON envelope:

    {"error": {"message": ..., "code": ..., "id": ..., "details": ...}}
"""

from typing import Any, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import Request
from fastapi.responses import JSONResponse

from app.shared.core.exceptions import BillingCoreException
from app.shared.core.ops_metrics import API_ERRORS_TOTAL

logger = structlog.get_logger()

# Codes whose message and details the gateway or scheduler may see in production.
SAFE_CODES = {
    "auth_error",
    "malformed_payload",
    "invalid_signature",
    "currency_mismatch",
    "amount_mismatch",
    "rate_limited",
    "store_unavailable",
    "lifecycle_conflict",
}


def handle_exception(
    request: Request, exc: Exception, error_id: Optional[str] = None
) -> JSONResponse:
    """
    Classifies and records exceptions, returning a standardized JSON response.
    """
    error_id = error_id or str(uuid4())

    from app.shared.core.config import get_settings

    settings = get_settings()
    is_prod = settings.ENVIRONMENT.lower() in ("production", "staging")

    if isinstance(exc, BillingCoreException):
        billing_exc = exc
        if is_prod and billing_exc.code not in SAFE_CODES:
            billing_exc.message = "An error occurred while processing your request"
    elif isinstance(exc, ValueError):
        msg = "Invalid request parameters" if is_prod else str(exc)
        billing_exc = BillingCoreException(
            message=msg,
            code="value_error",
            status_code=400,
        )
        logger.warning(
            "business_validation_error",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )
    else:
        # Unhandled messages may carry secrets; never echo them.
        billing_exc = BillingCoreException(
            message="An unexpected internal error occurred",
            code="internal_error",
            status_code=500,
        )
        logger.exception(
            "unhandled_raw_exception",
            error=str(exc),
            error_id=error_id,
            path=request.url.path,
        )

    API_ERRORS_TOTAL.labels(
        path=request.url.path,
        method=request.method,
        status_code=billing_exc.status_code,
    ).inc()

    log = logger.error if billing_exc.status_code >= 500 else logger.warning
    log(
        "api_error",
        error_id=error_id,
        code=billing_exc.code,
        message=billing_exc.message,
        status_code=billing_exc.status_code,
        path=request.url.path,
        details=billing_exc.details,
    )

    response_details: Optional[Dict[str, Any]] = billing_exc.details
    if is_prod and billing_exc.code not in SAFE_CODES:
        response_details = None

    response_payload = {
        "error": {
            "message": billing_exc.message,
            "code": billing_exc.code,
            "id": error_id,
            "details": response_details if response_details else None,
        }
    }

    headers = {"Retry-After": "60"} if billing_exc.status_code in (429, 503) else None
    return JSONResponse(
        status_code=billing_exc.status_code,
        content=response_payload,
        headers=headers,
    )
