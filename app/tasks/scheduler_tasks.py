import asyncio
import inspect
import time
import uuid
from typing import Any, Coroutine, cast

import structlog
from celery import shared_task

from app.modules.billing.api.v1.billing_ops import run_subscription_transitions
from app.modules.billing.domain.billing.billing_shared import BillingConfig
from app.shared.core.config import get_settings
from app.shared.core.http import close_http_client
from app.shared.db.session import async_session_maker, get_engine

logger = structlog.get_logger()


# Helper to run async code in sync Celery task
def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")


@shared_task(
    name="billing.subscription_transitions",
    autoretry_for=(Exception,),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def run_subscription_transitions_task() -> dict[str, int]:
    """
    Celery task advancing time-driven subscription transitions.
    Wraps the async sweep in synchronous execution.
    """
    return cast(dict[str, int], run_async(_subscription_transitions_logic))


async def _subscription_transitions_logic() -> dict[str, int]:
    job_id = str(uuid.uuid4())
    structlog.contextvars.bind_contextvars(
        correlation_id=job_id, job_type="subscription_transitions"
    )
    start_time = time.time()
    config = BillingConfig.from_settings(get_settings())
    try:
        summary = await run_subscription_transitions(async_session_maker, config)
    finally:
        # Each task run owns a fresh event loop; pooled connections must not outlive it.
        await close_http_client()
        await get_engine().dispose()

    result = summary.to_dict()
    logger.info(
        "subscription_transitions_task_completed",
        duration_seconds=round(time.time() - start_time, 3),
        **result,
    )
    return result
