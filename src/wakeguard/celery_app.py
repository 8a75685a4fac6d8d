from celery import Celery
from .config import settings

celery_app = Celery(
    "wakeguard",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["wakeguard.tasks"]
)

# Optional configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "reconcile-expired-challenges": {
            "task": "reconcile_expired_challenges",
            "schedule": float(settings.reconcile_interval_seconds),
        },
        "retry-failed-payments": {
            "task": "retry_failed_payments",
            "schedule": float(settings.retry_sweep_interval_seconds),
        },
    },
)
