"""
Stock/price reconciler: brings in_stock and price of every upstream-sourced
game in line with the marketplace.

Stock is checked per game through the rate-limited BatchRunner (sequential,
paced); prices are fetched afterwards in one bulk call. A failing game ends
up in ReconciliationResult.errors and never stops the run.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.game import Game
from app.services.cache.service import CATALOG_PATTERNS, CacheInvalidator, game_pattern, invalidate_quietly
from app.services.catalog.batching import BatchRunner, ItemError
from app.services.marketplace.client import MarketplaceClient
from app.services.retry import retry_with_backoff
from app.utils.currency import to_money
from app.utils.metrics import (
    reconcile_duration_seconds,
    reconcile_items_total,
    reconcile_price_updates_total,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GameSnapshot:
    id: str
    external_product_id: str
    price: Decimal
    in_stock: bool


@dataclass
class StockChange:
    game_id: str
    external_product_id: str
    old_in_stock: bool
    new_in_stock: bool


@dataclass
class ReconciliationResult:
    checked: int = 0
    stock_updated: int = 0
    price_updated: int = 0
    errors: list[ItemError] = field(default_factory=list)
    stock_changes: list[StockChange] = field(default_factory=list)
    batches: list[int] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "checked": self.checked,
            "stock_updated": self.stock_updated,
            "price_updated": self.price_updated,
            "batches": len(self.batches),
            "errors": [e.as_dict() for e in self.errors],
        }


class StockPriceReconciler:
    def __init__(
        self,
        db: Session,
        client: MarketplaceClient,
        cache: CacheInvalidator | None = None,
        *,
        runner: BatchRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.client = client
        self.cache = cache
        self._sleep = sleep
        self.runner = runner or BatchRunner(
            batch_size=settings.reconcile_batch_size,
            item_delay=settings.reconcile_item_delay_seconds,
            batch_delay=settings.reconcile_batch_delay_seconds,
            sleep=sleep,
        )

    def load_games(self) -> list[GameSnapshot]:
        rows = (
            self.db.query(Game.id, Game.external_product_id, Game.price, Game.in_stock)
            .filter(Game.external_product_id.isnot(None))
            .order_by(Game.id)
            .all()
        )
        return [
            GameSnapshot(
                id=row.id,
                external_product_id=row.external_product_id,
                price=to_money(row.price),
                in_stock=bool(row.in_stock),
            )
            for row in rows
        ]

    def reconcile(self) -> ReconciliationResult:
        started = time.time()
        result = ReconciliationResult()
        games = self.load_games()
        logger.info("reconcile_stock_started", extra={"checked": len(games)})

        report = self.runner.run(
            games,
            handler=lambda game: self._check_stock(game, result),
            on_error=self._stock_error,
        )
        result.batches = report.batch_sizes
        result.checked = report.processed
        result.errors.extend(report.errors)

        if games:
            self._update_prices(games, result)

        if result.stock_updated or result.price_updated:
            patterns = list(CATALOG_PATTERNS)
            patterns.extend(game_pattern(change.game_id) for change in result.stock_changes)
            invalidate_quietly(self.cache, patterns)

        reconcile_duration_seconds.observe(time.time() - started)
        self._log_summary(result)
        return result

    # ------------------------------------------------------------------
    # Stock
    # ------------------------------------------------------------------

    def _check_stock(self, game: GameSnapshot, result: ReconciliationResult) -> None:
        stock = retry_with_backoff(
            lambda: self.client.check_stock(game.external_product_id),
            settings.stock_check_retry_attempts,
            settings.stock_check_retry_delay,
            sleep=self._sleep,
            operation="check_stock",
        )
        now = datetime.now(timezone.utc)
        values = {"external_stock": stock.stock, "last_sync_at": now}
        changed = game.in_stock != stock.available
        if changed:
            values["in_stock"] = stock.available
        self._write(game.id, values)

        if changed:
            result.stock_updated += 1
            result.stock_changes.append(
                StockChange(
                    game_id=game.id,
                    external_product_id=game.external_product_id,
                    old_in_stock=game.in_stock,
                    new_in_stock=stock.available,
                )
            )
            reconcile_items_total.labels(outcome="stock_changed").inc()
            logger.info(
                "stock_changed",
                extra={
                    "game_id": game.id,
                    "external_product_id": game.external_product_id,
                    "old_status": game.in_stock,
                    "new_status": stock.available,
                },
            )
        else:
            reconcile_items_total.labels(outcome="unchanged").inc()

    def _stock_error(self, game: GameSnapshot, exc: Exception) -> ItemError:
        reconcile_items_total.labels(outcome="error").inc()
        logger.error(
            "stock_check_failed",
            extra={"game_id": game.id, "external_product_id": game.external_product_id, "error": str(exc)},
        )
        return ItemError(game_id=game.id, external_product_id=game.external_product_id, error=str(exc))

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    def _update_prices(self, games: list[GameSnapshot], result: ReconciliationResult) -> None:
        product_ids = [g.external_product_id for g in games]
        try:
            prices = retry_with_backoff(
                lambda: self.client.get_bulk_prices(product_ids),
                settings.bulk_price_retry_attempts,
                settings.bulk_price_retry_delay,
                sleep=self._sleep,
                operation="get_bulk_prices",
            )
        except Exception as e:
            logger.error("bulk_price_fetch_failed", extra={"error": str(e)})
            result.errors.append(
                ItemError(game_id=None, external_product_id=None, error=str(e), stage="price_fetch")
            )
            return

        for game in games:
            raw = prices.get(game.external_product_id)
            if raw is None:
                continue
            new_price = to_money(raw)
            if new_price <= 0 or new_price == game.price:
                continue
            try:
                self._write(game.id, {"price": new_price, "last_sync_at": datetime.now(timezone.utc)})
            except Exception as e:
                result.errors.append(
                    ItemError(
                        game_id=game.id,
                        external_product_id=game.external_product_id,
                        error=f"Price update failed: {e}",
                        stage="price_update",
                    )
                )
                continue
            result.price_updated += 1
            reconcile_price_updates_total.inc()
            logger.info(
                "price_changed",
                extra={"game_id": game.id, "old_status": str(game.price), "new_status": str(new_price)},
            )

    # ------------------------------------------------------------------

    def _write(self, game_id: str, values: dict) -> None:
        """One committed UPDATE per game; a failed write is rolled back and re-raised."""
        try:
            self.db.execute(update(Game).where(Game.id == game_id).values(**values))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def _log_summary(self, result: ReconciliationResult) -> None:
        logger.info(
            "reconcile_stock_done",
            extra={
                "checked": result.checked,
                "stock_updated": result.stock_updated,
                "price_updated": result.price_updated,
                "batches": len(result.batches),
                "errors": len(result.errors),
            },
        )
        for err in result.errors[:5]:
            logger.warning(
                "reconcile_item_error",
                extra={"game_id": err.game_id, "external_product_id": err.external_product_id, "error": err.error},
            )
