"""
Admin API: order status changes and cancellation, catalog reconciliation and sync.
Every route requires the X-Admin-Key header (ADMIN_API_KEY).
"""
import logging
import secrets
from typing import Iterator

import redis
from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.schemas.catalog import CatalogSyncRequest, ReconciliationOut, SyncProgressOut, TaskQueuedOut
from app.schemas.orders import OrderCancel, OrderOut, OrderStatusUpdate, OrderUpdate
from app.services.cache.service import CacheService
from app.services.catalog.progress import SyncProgressStore
from app.services.catalog.reconciler import StockPriceReconciler
from app.services.locks import job_lock
from app.services.marketplace.client import MarketplaceClient
from app.services.orders.errors import OrderError
from app.services.orders.service import OrderService
from app.services.payments.service import PaymentService
from app.workers.tasks.catalog import STOCK_CHECK_LOCK, reconcile_stock_and_prices, sync_full_catalog

logger = logging.getLogger(__name__)


def require_admin_key(x_admin_key: str | None = Header(default=None)) -> str:
    expected = settings.admin_api_key
    if not expected:
        raise HTTPException(503, "Admin API is not configured")
    if not x_admin_key or not secrets.compare_digest(x_admin_key, expected):
        raise HTTPException(401, "Invalid admin key")
    return x_admin_key


def get_redis() -> redis.Redis:
    return redis.Redis.from_url(settings.redis_url, decode_responses=True)


def get_cache(client: redis.Redis = Depends(get_redis)) -> CacheService:
    return CacheService(client)


def get_marketplace_client() -> Iterator[MarketplaceClient]:
    client = MarketplaceClient()
    try:
        yield client
    finally:
        client.close()


def get_order_service(
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
) -> OrderService:
    return OrderService(db, payments=PaymentService(db), cache=cache)


def _order_http_error(e: OrderError) -> HTTPException:
    return HTTPException(status_code=e.status_code, detail=e.as_detail())


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_key)])


# ---------- Orders ----------
@router.patch("/orders/{order_id}/status", response_model=OrderOut)
def order_update_status(
    order_id: str,
    payload: OrderStatusUpdate,
    svc: OrderService = Depends(get_order_service),
):
    try:
        return svc.update_order_status(order_id, payload.status.value)
    except OrderError as e:
        raise _order_http_error(e)


@router.patch("/orders/{order_id}", response_model=OrderOut)
def order_update(
    order_id: str,
    payload: OrderUpdate,
    svc: OrderService = Depends(get_order_service),
):
    try:
        return svc.update_order(
            order_id,
            status=payload.status.value if payload.status else None,
            payment_status=payload.payment_status.value if payload.payment_status else None,
            payment_method=payload.payment_method,
        )
    except OrderError as e:
        raise _order_http_error(e)


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def order_cancel(
    order_id: str,
    payload: OrderCancel | None = None,
    svc: OrderService = Depends(get_order_service),
):
    try:
        return svc.cancel_order(order_id, reason=payload.reason if payload else None)
    except OrderError as e:
        raise _order_http_error(e)


# ---------- Catalog ----------
@router.post("/catalog/reconcile", response_model=ReconciliationOut | TaskQueuedOut)
def catalog_reconcile(
    background: bool = Query(False),
    db: Session = Depends(get_db),
    cache: CacheService = Depends(get_cache),
    client: MarketplaceClient = Depends(get_marketplace_client),
    redis_client: redis.Redis = Depends(get_redis),
):
    if background:
        task = reconcile_stock_and_prices.delay()
        return TaskQueuedOut(task_id=task.id)

    with job_lock(STOCK_CHECK_LOCK, settings.stock_check_lock_ttl, client=redis_client) as acquired:
        if not acquired:
            raise HTTPException(409, "Reconciliation already running")
        result = StockPriceReconciler(db, client, cache).reconcile()
    return result.as_dict()


@router.post("/catalog/sync", response_model=TaskQueuedOut, status_code=202)
def catalog_sync(payload: CatalogSyncRequest | None = None):
    payload = payload or CatalogSyncRequest()
    task = sync_full_catalog.delay(
        full_sync=payload.full_sync,
        include_relationships=payload.include_relationships,
        product_ids=payload.product_ids,
        categories=payload.categories,
    )
    logger.info("catalog_sync_enqueued", extra={"job": "full", "payload": payload.model_dump()})
    return TaskQueuedOut(task_id=task.id)


@router.get("/catalog/sync/progress", response_model=SyncProgressOut)
def catalog_sync_progress(redis_client: redis.Redis = Depends(get_redis)):
    return SyncProgressStore(redis_client).get()
