"""Celery configuration."""

from celery import Celery

from mpesa_recon.core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "mpesa_recon_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["mpesa_recon.tasks.ledger"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    result_expires=3600,
    task_routes={
        "ledger.*": {"queue": "ledger"},
    },
    beat_schedule={
        "retry-failed-sap-syncs": {
            "task": "ledger.retry_failed_sap_syncs",
            "schedule": 300.0,
        },
    },
)
