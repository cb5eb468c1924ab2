"""
Periodic job registration.

Jobs are registered through a PeriodicScheduler so the cadence wiring does not
depend on a specific scheduler; BeatScheduler writes Celery beat entries.
"""
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

SYNC_FULL_CATALOG_TASK = "app.workers.tasks.catalog.sync_full_catalog"
RECONCILE_STOCK_TASK = "app.workers.tasks.catalog.reconcile_stock_and_prices"


class PeriodicScheduler(Protocol):
    def schedule(self, cadence: Any, job: str | Callable, name: str | None = None) -> None: ...


def _job_name(job: str | Callable) -> str:
    if isinstance(job, str):
        return job
    return getattr(job, "name", None) or f"{job.__module__}.{job.__name__}"


class BeatScheduler:
    """Registers jobs into celery beat_schedule."""

    def __init__(self, app: Celery) -> None:
        self.app = app

    def schedule(self, cadence: Any, job: str | Callable, name: str | None = None) -> None:
        task = _job_name(job)
        entry = name or task.rsplit(".", 1)[-1].replace("_", "-")
        beat_schedule = dict(self.app.conf.beat_schedule or {})
        beat_schedule[entry] = {"task": task, "schedule": cadence}
        self.app.conf.beat_schedule = beat_schedule


@dataclass
class ScheduledJob:
    name: str
    cadence: Any
    job: str | Callable


class InMemoryScheduler:
    """Collects registrations without running anything (scripts, tests)."""

    def __init__(self) -> None:
        self.jobs: list[ScheduledJob] = []

    def schedule(self, cadence: Any, job: str | Callable, name: str | None = None) -> None:
        self.jobs.append(ScheduledJob(name=name or _job_name(job), cadence=cadence, job=job))


def full_sync_cadence() -> crontab:
    return crontab(minute=settings.full_sync_cron_minute, hour=settings.full_sync_cron_hour)


def stock_check_cadence() -> crontab:
    return crontab(minute=settings.stock_check_cron_minute)


def register_periodic_jobs(scheduler: PeriodicScheduler) -> None:
    """Full catalog sync twice a day, stock/price reconciliation every 15 minutes."""
    scheduler.schedule(full_sync_cadence(), SYNC_FULL_CATALOG_TASK, name="sync-full-catalog")
    scheduler.schedule(stock_check_cadence(), RECONCILE_STOCK_TASK, name="reconcile-stock-and-prices")
