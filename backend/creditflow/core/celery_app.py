"""Celery application configuration."""

from celery import Celery

from creditflow.core.config import settings

celery_app = Celery(
    "creditflow",
    broker=settings.CELERY_BROKER_URL or settings.REDIS_URL,
    backend=settings.CELERY_RESULT_BACKEND or settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "renew-due-subscriptions": {
            "task": "billing.renew_due_subscriptions",
            "schedule": float(settings.SUBSCRIPTION_RENEWAL_INTERVAL_SECONDS),
        },
    },
)

celery_app.autodiscover_tasks(["creditflow.modules.billing"])
