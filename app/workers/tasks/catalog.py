"""
Celery tasks: full catalog sync (twice a day) and stock/price reconciliation (every 15 minutes).

Each run takes a Redis job lock, so replicas never run the same job at once;
a run that cannot get the lock returns {"ok": True, "skipped": "locked"}.
Errors never escape a task: they are logged and returned as {"ok": False}.
"""
import logging
import time
from typing import Callable

import redis
from sqlalchemy.orm import Session

from app.core.celery_app import celery_app
from app.core.config import settings
from app.core.scheduler import RECONCILE_STOCK_TASK, SYNC_FULL_CATALOG_TASK
from app.db.session import SessionLocal
from app.services.cache.service import CacheInvalidator, CacheService
from app.services.catalog.progress import SyncProgressStore
from app.services.catalog.reconciler import StockPriceReconciler
from app.services.catalog.syncer import CatalogSyncer
from app.services.locks import job_lock
from app.services.marketplace.client import MarketplaceClient
from app.services.retry import retry_with_backoff
from app.utils.metrics import (
    catalog_sync_duration_seconds,
    catalog_sync_in_progress,
    catalog_sync_runs_total,
)

logger = logging.getLogger(__name__)

FULL_SYNC_LOCK = "catalog_full_sync"
STOCK_CHECK_LOCK = "catalog_stock_check"


def _redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def run_full_sync(
    full_sync: bool = True,
    include_relationships: bool = True,
    product_ids: list[str] | None = None,
    categories: list[str] | None = None,
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    client: MarketplaceClient | None = None,
    cache: CacheInvalidator | None = None,
    redis_client: redis.Redis | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    """Whole-run retry (3 attempts, 1s initial delay) on top of the syncer's per-page retries."""
    redis_client = redis_client or _redis()
    with job_lock(FULL_SYNC_LOCK, settings.full_sync_lock_ttl, client=redis_client) as acquired:
        if not acquired:
            logger.info("catalog_sync_skipped", extra={"job": "full", "skipped": "locked"})
            catalog_sync_runs_total.labels(status="skipped").inc()
            return {"ok": True, "skipped": "locked"}

        db = session_factory()
        own_client = client is None
        client = client or MarketplaceClient()
        started = time.time()
        catalog_sync_in_progress.set(1)
        try:
            syncer = CatalogSyncer(
                db,
                client,
                cache if cache is not None else CacheService(redis_client),
                progress=SyncProgressStore(redis_client),
                sleep=sleep,
            )

            def attempt():
                try:
                    return syncer.sync(
                        full_sync=full_sync,
                        include_relationships=include_relationships,
                        product_ids=product_ids,
                        categories=categories,
                    )
                except Exception:
                    db.rollback()
                    raise

            result = retry_with_backoff(
                attempt,
                settings.full_sync_retry_attempts,
                settings.full_sync_retry_delay,
                sleep=sleep,
                operation="catalog_sync",
            )
            catalog_sync_runs_total.labels(status="ok").inc()
            return {"ok": True, **result.as_dict()}
        except Exception:
            logger.exception("catalog_sync_error")
            db.rollback()
            catalog_sync_runs_total.labels(status="failed").inc()
            return {"ok": False}
        finally:
            catalog_sync_in_progress.set(0)
            catalog_sync_duration_seconds.observe(time.time() - started)
            if own_client:
                client.close()
            db.close()


def run_reconciliation(
    *,
    session_factory: Callable[[], Session] = SessionLocal,
    client: MarketplaceClient | None = None,
    cache: CacheInvalidator | None = None,
    redis_client: redis.Redis | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> dict:
    redis_client = redis_client or _redis()
    with job_lock(STOCK_CHECK_LOCK, settings.stock_check_lock_ttl, client=redis_client) as acquired:
        if not acquired:
            logger.info("reconcile_stock_skipped", extra={"job": "stock_check", "skipped": "locked"})
            return {"ok": True, "skipped": "locked"}

        db = session_factory()
        own_client = client is None
        client = client or MarketplaceClient()
        try:
            reconciler = StockPriceReconciler(
                db,
                client,
                cache if cache is not None else CacheService(redis_client),
                sleep=sleep,
            )
            result = reconciler.reconcile()
            return {"ok": True, **result.as_dict()}
        except Exception:
            logger.exception("reconcile_stock_error")
            db.rollback()
            return {"ok": False}
        finally:
            if own_client:
                client.close()
            db.close()


@celery_app.task(
    name=SYNC_FULL_CATALOG_TASK,
    time_limit=settings.full_sync_lock_ttl,
    soft_time_limit=settings.full_sync_lock_ttl - 60,
)
def sync_full_catalog(
    full_sync: bool = True,
    include_relationships: bool = True,
    product_ids: list[str] | None = None,
    categories: list[str] | None = None,
) -> dict:
    return run_full_sync(
        full_sync=full_sync,
        include_relationships=include_relationships,
        product_ids=product_ids,
        categories=categories,
    )


@celery_app.task(
    name=RECONCILE_STOCK_TASK,
    time_limit=settings.stock_check_lock_ttl,
    soft_time_limit=settings.stock_check_lock_ttl - 30,
)
def reconcile_stock_and_prices() -> dict:
    return run_reconciliation()
