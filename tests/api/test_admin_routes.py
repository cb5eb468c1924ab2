"""Tests for the admin API: auth, order endpoints and error mapping, catalog endpoints."""
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from app.api.routes import admin
from app.db.session import get_db
from app.main import app
from app.models.user import User
from app.services.marketplace.client import StockResult

ADMIN_KEY = "test-admin-key"
HEADERS = {"X-Admin-Key": ADMIN_KEY}


class StubMarketplace:
    def check_stock(self, product_id):
        return StockResult(product_id=product_id, available=True, stock=9)

    def get_bulk_prices(self, product_ids):
        return {pid: Decimal("42.00") for pid in product_ids}


@pytest.fixture
def client(db, fake_redis, monkeypatch):
    monkeypatch.setattr(admin.settings, "admin_api_key", ADMIN_KEY)

    def _db():
        yield db

    app.dependency_overrides[get_db] = _db
    app.dependency_overrides[admin.get_redis] = lambda: fake_redis
    app.dependency_overrides[admin.get_marketplace_client] = lambda: StubMarketplace()
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestAuth:
    def test_missing_key(self, client):
        assert client.post("/admin/catalog/sync").status_code == 401

    def test_wrong_key(self, client):
        resp = client.get("/admin/catalog/sync/progress", headers={"X-Admin-Key": "nope"})
        assert resp.status_code == 401

    def test_not_configured(self, client, monkeypatch):
        monkeypatch.setattr(admin.settings, "admin_api_key", None)
        assert client.get("/admin/catalog/sync/progress", headers=HEADERS).status_code == 503


class TestOrders:
    def test_cancel(self, client, db, make_order, user):
        order_id = make_order(status="PENDING", total="50.00").id
        resp = client.post(f"/admin/orders/{order_id}/cancel", json={"reason": "requested"}, headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "CANCELLED"
        assert body["cancel_reason"] == "requested"
        db.expire_all()
        assert Decimal(db.get(User, user.id).balance) == Decimal("150.00")

    def test_cancel_twice_conflict(self, client, make_order):
        order_id = make_order(status="PENDING").id
        assert client.post(f"/admin/orders/{order_id}/cancel", headers=HEADERS).status_code == 200
        resp = client.post(f"/admin/orders/{order_id}/cancel", headers=HEADERS)
        assert resp.status_code == 409

    def test_cancel_unknown(self, client):
        assert client.post("/admin/orders/missing/cancel", headers=HEADERS).status_code == 404

    def test_invalid_transition_detail(self, client, make_order):
        order_id = make_order(status="PENDING").id
        resp = client.patch(f"/admin/orders/{order_id}/status", json={"status": "COMPLETED"}, headers=HEADERS)
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["current_status"] == "PENDING"
        assert detail["requested_status"] == "COMPLETED"
        assert detail["allowed"] == ["PROCESSING", "CANCELLED"]

    def test_status_update(self, client, make_order):
        order_id = make_order(status="PROCESSING").id
        resp = client.patch(f"/admin/orders/{order_id}/status", json={"status": "COMPLETED"}, headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["completed_at"] is not None

    def test_unknown_status_value(self, client, make_order):
        order_id = make_order(status="PENDING").id
        resp = client.patch(f"/admin/orders/{order_id}/status", json={"status": "SHIPPED"}, headers=HEADERS)
        assert resp.status_code == 422


class TestCatalog:
    def test_reconcile_sync(self, client, make_game):
        make_game("p1", price="40.00", in_stock=False)
        resp = client.post("/admin/catalog/reconcile", headers=HEADERS)
        assert resp.status_code == 200
        body = resp.json()
        assert body["checked"] == 1
        assert body["stock_updated"] == 1
        assert body["price_updated"] == 1
        assert body["errors"] == []

    def test_reconcile_locked(self, client, fake_redis):
        fake_redis.store["lock:catalog_stock_check"] = "worker"
        assert client.post("/admin/catalog/reconcile", headers=HEADERS).status_code == 409

    def test_reconcile_background(self, client, monkeypatch):
        task = MagicMock()
        task.delay.return_value.id = "task-1"
        monkeypatch.setattr(admin, "reconcile_stock_and_prices", task)
        resp = client.post("/admin/catalog/reconcile?background=true", headers=HEADERS)
        assert resp.json() == {"task_id": "task-1", "status": "queued"}

    def test_sync_enqueued(self, client, monkeypatch):
        task = MagicMock()
        task.delay.return_value.id = "task-2"
        monkeypatch.setattr(admin, "sync_full_catalog", task)
        resp = client.post(
            "/admin/catalog/sync", json={"full_sync": False, "product_ids": ["1"]}, headers=HEADERS
        )
        assert resp.status_code == 202
        assert resp.json()["task_id"] == "task-2"
        kwargs = task.delay.call_args.kwargs
        assert kwargs["full_sync"] is False
        assert kwargs["product_ids"] == ["1"]
        assert kwargs["include_relationships"] is True

    def test_progress(self, client):
        resp = client.get("/admin/catalog/sync/progress", headers=HEADERS)
        assert resp.status_code == 200
        assert resp.json()["in_progress"] is False


class TestHealth:
    def test_health(self, client):
        assert client.get("/health").json() == {"status": "ok"}

    def test_metrics(self, client):
        resp = client.get("/metrics")
        assert resp.status_code == 200
        assert "reconcile_items_total" in resp.text
