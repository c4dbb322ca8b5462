import json
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Sequence

import structlog
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.shared.core.app_routes import register_api_routers, register_lifecycle_routes
from app.shared.core.config import get_settings, reload_settings_from_environment
from app.shared.core.exceptions import BillingCoreException
from app.shared.core.logging import setup_logging
from app.shared.core.middleware import RequestIDMiddleware
from app.shared.core.ops_metrics import API_ERRORS_TOTAL
from app.shared.db.session import get_engine

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    from app.shared.core.http import close_http_client, init_http_client

    await init_http_client()

    yield

    logger.info("app_shutting_down")
    await close_http_client()

    await get_engine().dispose()
    logger.info("db_engine_disposed")


billing_app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
# Uvicorn looks for 'app' by default.
app: FastAPI = billing_app

__all__ = ["app", "billing_app", "lifespan"]


@billing_app.exception_handler(BillingCoreException)
async def billing_exception_handler(
    request: Request, exc: BillingCoreException
) -> JSONResponse:
    """Handle application exceptions."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


@billing_app.exception_handler(StarletteHTTPException)
async def http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    """Handle FastAPI HTTP exceptions (404, 405, ...) in the standard envelope."""
    is_prod = settings.ENVIRONMENT.lower() in {"production", "staging"}
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if is_prod and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=exc.status_code
    ).inc()
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": {
                "message": detail_text,
                "code": "http_error",
                "id": None,
                "details": None,
            }
        },
        headers=getattr(exc, "headers", None),
    )


@billing_app.exception_handler(RequestValidationError)
async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle Pydantic validation errors."""

    def _json_safe(value: Any) -> Any:
        if isinstance(value, Exception):
            return str(value)
        try:
            json.dumps(value)
            return value
        except (TypeError, ValueError):
            return str(value)

    def _sanitize_errors(errors: Sequence[Any]) -> List[Dict[str, Any]]:
        sanitized = []
        for err in errors:
            clean = dict(err)
            if "ctx" in clean and isinstance(clean["ctx"], dict):
                clean["ctx"] = {k: _json_safe(v) for k, v in clean["ctx"].items()}
            if "input" in clean:
                clean["input"] = _json_safe(clean["input"])
            sanitized.append(clean)
        return sanitized

    API_ERRORS_TOTAL.labels(
        path=request.url.path, method=request.method, status_code=422
    ).inc()
    return JSONResponse(
        status_code=422,
        content={
            "error": {
                "message": "The request body or parameters are invalid.",
                "code": "validation_error",
                "id": None,
                "details": {"errors": _sanitize_errors(exc.errors())},
            }
        },
    )


@billing_app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions through central error governance."""
    from app.shared.core.error_governance import handle_exception

    return handle_exception(request, exc)


register_lifecycle_routes(
    billing_app,
    app_name=settings.APP_NAME,
    version=settings.VERSION,
)
register_api_routers(billing_app)

Instrumentator().instrument(billing_app).expose(billing_app)

billing_app.add_middleware(RequestIDMiddleware)
