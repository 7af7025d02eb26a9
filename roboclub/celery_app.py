"""
Celery application

Queues:
- default: everything unrouted
- cleanup: housekeeping such as purging expired one-time codes
"""
import os
from datetime import timedelta
from celery import Celery

from roboclub.config import get_settings

settings = get_settings()

broker_url = settings.celery_broker or settings.redis_url
backend_url = settings.celery_backend or settings.redis_url

celery_app = Celery(
    "roboclub",
    broker=broker_url,
    backend=backend_url,
    include=[
        "roboclub.tasks.cleanup_tasks",
    ]
)

celery_app.conf.update(
    result_expires=86400,
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # keep a stuck purge from pinning a worker
    task_time_limit=300,
    task_soft_time_limit=240,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "roboclub.tasks.cleanup_tasks.*": {"queue": "cleanup"},
    },
    task_reject_on_worker_lost=True,
    beat_schedule={
        "purge-expired-otps": {
            "task": "roboclub.tasks.cleanup_tasks.purge_expired_otps_task",
            "schedule": timedelta(seconds=settings.otp_purge_interval_seconds),
        },
    },
)

celery_app.conf.worker_max_tasks_per_child = 1000
celery_app.conf.worker_concurrency = os.cpu_count() or 4

if __name__ == "__main__":
    celery_app.start()
