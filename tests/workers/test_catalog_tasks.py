"""Tests for the catalog Celery task bodies: locking, whole-run retry, top-level error handling."""
from decimal import Decimal

from app.models.game import Game
from app.services.cache.service import NullCache
from app.services.marketplace.client import MarketplaceError, ProductPage, ProductRecord, StockResult
from app.workers.tasks.catalog import FULL_SYNC_LOCK, STOCK_CHECK_LOCK, run_full_sync, run_reconciliation


class StubMarketplace:
    def __init__(self, page_failures=0, stock_error=None):
        self.page_failures = page_failures
        self.stock_error = stock_error
        self.page_calls = 0
        self.closed = False

    def check_stock(self, product_id):
        if self.stock_error:
            raise self.stock_error
        return StockResult(product_id=product_id, available=False, stock=0)

    def get_bulk_prices(self, product_ids):
        return {}

    def fetch_products_page(self, page=1, per_page=None, category=None):
        self.page_calls += 1
        if self.page_calls <= self.page_failures:
            raise MarketplaceError("upstream returned 503", status_code=503)
        return ProductPage(
            products=[ProductRecord(id="p1", name="Celeste", price=Decimal("9.99"), stock=2)],
            page=1,
            last_page=1,
            total=1,
        )

    def close(self):
        self.closed = True


def _run_sync(db, client, fake_redis, sleeps):
    return run_full_sync(
        session_factory=lambda: db,
        client=client,
        cache=NullCache(),
        redis_client=fake_redis,
        sleep=sleeps.append,
    )


class TestFullSyncTask:
    def test_success(self, db, fake_redis):
        sleeps = []
        result = _run_sync(db, StubMarketplace(), fake_redis, sleeps)
        assert result["ok"] is True
        assert result["added"] == 1
        assert db.query(Game).filter(Game.external_product_id == "p1").count() == 1
        assert f"lock:{FULL_SYNC_LOCK}" not in fake_redis.store

    def test_whole_run_retried(self, db, fake_redis):
        # first run: the first page fails on all 3 page attempts; second run succeeds
        sleeps = []
        client = StubMarketplace(page_failures=3)
        result = _run_sync(db, client, fake_redis, sleeps)
        assert result["ok"] is True
        assert client.page_calls == 4
        # page retries (1s, 2s) then whole-run retry (1s)
        assert sleeps == [1.0, 2.0, 1.0]

    def test_exhausted_retries_reported(self, db, fake_redis):
        client = StubMarketplace(page_failures=100)
        result = _run_sync(db, client, fake_redis, [])
        assert result == {"ok": False}
        assert client.page_calls == 9

    def test_locked(self, db, fake_redis):
        fake_redis.store[f"lock:{FULL_SYNC_LOCK}"] = "other-worker"
        client = StubMarketplace()
        result = _run_sync(db, client, fake_redis, [])
        assert result == {"ok": True, "skipped": "locked"}
        assert client.page_calls == 0


class TestReconciliationTask:
    def test_success(self, db, fake_redis, make_game):
        make_game("p1", in_stock=True)
        db.close()
        result = run_reconciliation(
            session_factory=lambda: db,
            client=StubMarketplace(),
            cache=NullCache(),
            redis_client=fake_redis,
            sleep=lambda s: None,
        )
        assert result["ok"] is True
        assert result["checked"] == 1
        assert result["stock_updated"] == 1
        assert f"lock:{STOCK_CHECK_LOCK}" not in fake_redis.store

    def test_item_errors_do_not_fail_run(self, db, fake_redis, make_game):
        make_game("p1")
        db.close()
        result = run_reconciliation(
            session_factory=lambda: db,
            client=StubMarketplace(stock_error=MarketplaceError("boom")),
            cache=NullCache(),
            redis_client=fake_redis,
            sleep=lambda s: None,
        )
        assert result["ok"] is True
        assert len(result["errors"]) == 1

    def test_locked(self, db, fake_redis):
        fake_redis.store[f"lock:{STOCK_CHECK_LOCK}"] = "other-worker"
        result = run_reconciliation(
            session_factory=lambda: db, client=StubMarketplace(), redis_client=fake_redis
        )
        assert result == {"ok": True, "skipped": "locked"}

    def test_unexpected_error_returns_not_ok(self, fake_redis):
        class BrokenSession:
            def query(self, *args):
                raise RuntimeError("db down")

            def rollback(self):
                pass

            def close(self):
                pass

        result = run_reconciliation(
            session_factory=BrokenSession, client=StubMarketplace(), cache=NullCache(), redis_client=fake_redis
        )
        assert result == {"ok": False}
