from celery import Celery
from celery.schedules import crontab

from app.shared.core.config import get_settings

settings = get_settings()

# Use Redis URL from settings, default to localhost if not set (development)
broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

celery_app = Celery(
    "billing_worker",
    broker=broker_url,
    backend=backend_url,
    include=["app.tasks.scheduler_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    # Prevents indefinite blocking during startup
    broker_connection_timeout=5,
    broker_connection_retry=True,
    broker_connection_max_retries=3,
    broker_connection_retry_on_startup=True,
    beat_schedule={
        # Day-granularity grace windows: hourly is enough.
        "subscription-transitions-hourly": {
            "task": "billing.subscription_transitions",
            "schedule": crontab(minute=0),
        },
    },
)


# Eager execution for unit tests without Redis
if settings.TESTING:
    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
        broker_url="memory://",
        result_backend="rpc://",
        broker_connection_retry_on_startup=False,
    )

if __name__ == "__main__":
    celery_app.start()
