"""
Celery application: broker and result backend from settings.
Tasks are in app.workers.tasks.catalog; periodic jobs are registered via app.core.scheduler.
"""
from celery import Celery

from app.core.config import settings
from app.core.scheduler import BeatScheduler, register_periodic_jobs

celery_app = Celery(
    "app",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.catalog",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=settings.full_sync_lock_ttl,
    result_expires=86400,
    beat_schedule={},
)

celery_app.conf.task_routes = {
    "app.workers.tasks.catalog.sync_full_catalog": {"queue": "catalog_sync"},
}

register_periodic_jobs(BeatScheduler(celery_app))
