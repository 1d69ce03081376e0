"""Celery application for scheduled billing maintenance."""

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "subscription_service",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=900,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    beat_schedule={
        "expire-overdue-subscriptions": {
            "task": "billing.expire_overdue_subscriptions",
            "schedule": crontab(minute=30),
        },
        "renew-due-subscriptions": {
            "task": "billing.renew_due_subscriptions",
            "schedule": crontab(minute=0),
        },
        "notify-expiring-subscriptions": {
            "task": "billing.notify_expiring_subscriptions",
            "schedule": crontab(hour=9, minute=0),
        },
    },
)

celery_app.autodiscover_tasks(["app.modules.billing"])
