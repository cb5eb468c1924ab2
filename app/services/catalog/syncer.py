"""
Full catalog sync: diff the upstream catalog against local games.

- new products are created, changed ones updated (every one on full_sync);
- with include_relationships, missing categories/genres/platforms are created and linked;
- on full_sync, games whose product disappeared upstream are marked out of stock (never deleted).

Products are written in SAVEPOINTs, batches are committed; a failing
product becomes an error entry. A failure while fetching the catalog as a
whole propagates, so the job can retry the complete run.
"""
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import insert, select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.category import Category
from app.models.game import Game, game_categories, game_genres, game_platforms
from app.models.genre import Genre
from app.models.platform import Platform
from app.services.cache.service import CATALOG_PATTERNS, CacheInvalidator, invalidate_quietly
from app.services.catalog.batching import chunked
from app.services.catalog.progress import SyncProgressStore
from app.services.marketplace.client import MarketplaceClient, ProductRecord
from app.services.retry import retry_with_backoff
from app.utils.currency import to_money
from app.utils.metrics import catalog_sync_products_total

logger = logging.getLogger(__name__)

DEFAULT_CATEGORIES = ("games",)


@dataclass
class SyncError:
    product_id: str
    error: str

    def as_dict(self) -> dict:
        return {"product_id": self.product_id, "error": self.error}


@dataclass
class CatalogSyncResult:
    added: int = 0
    updated: int = 0
    removed: int = 0
    categories_created: int = 0
    genres_created: int = 0
    platforms_created: int = 0
    errors: list[SyncError] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "added": self.added,
            "updated": self.updated,
            "removed": self.removed,
            "categories_created": self.categories_created,
            "genres_created": self.genres_created,
            "platforms_created": self.platforms_created,
            "errors": [e.as_dict() for e in self.errors],
        }


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9\s-]", "", name.lower())
    slug = re.sub(r"\s+", "-", slug.strip())
    slug = re.sub(r"-+", "-", slug).strip("-")
    return slug[:100] or "item"


# Relationship kind -> (model, association table, FK column)
_RELATIONS = {
    "categories": (Category, game_categories, "category_id"),
    "genres": (Genre, game_genres, "genre_id"),
    "platforms": (Platform, game_platforms, "platform_id"),
}


class CatalogSyncer:
    def __init__(
        self,
        db: Session,
        client: MarketplaceClient,
        cache: CacheInvalidator | None = None,
        *,
        progress: SyncProgressStore | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.db = db
        self.client = client
        self.cache = cache
        self.progress = progress
        self._sleep = sleep

    def sync(
        self,
        full_sync: bool = False,
        include_relationships: bool = False,
        product_ids: list[str] | None = None,
        categories: list[str] | None = None,
    ) -> CatalogSyncResult:
        result = CatalogSyncResult()
        logger.info(
            "catalog_sync_started",
            extra={"job": "full" if full_sync else "incremental", "payload": {
                "product_ids": len(product_ids or []),
                "categories": categories or list(DEFAULT_CATEGORIES),
                "include_relationships": include_relationships,
            }},
        )
        self._progress("start")

        try:
            if product_ids:
                products = self._fetch_products(product_ids, result)
            else:
                products = self._fetch_categories(categories or list(DEFAULT_CATEGORIES), result)
        except Exception:
            self._progress("finish", errors=len(result.errors) + 1)
            raise

        listing_complete = not product_ids and not result.errors
        self._progress("update", products_total=len(products))

        existing = {
            row.external_product_id: row.id
            for row in self.db.query(Game.id, Game.external_product_id)
            .filter(Game.external_product_id.isnot(None))
            .all()
        }

        processed = 0
        for batch in chunked(products, settings.catalog_write_batch_size):
            for product in batch:
                try:
                    with self.db.begin_nested():
                        game_id, outcome, created = self._apply_product(
                            product, existing, full_sync, include_relationships
                        )
                except Exception as e:
                    result.errors.append(SyncError(product_id=product.id, error=str(e)))
                    logger.error("catalog_product_failed", extra={"external_product_id": product.id, "error": str(e)})
                else:
                    existing[product.id] = game_id
                    if outcome == "added":
                        result.added += 1
                    elif outcome == "updated":
                        result.updated += 1
                    for counter, count in created.items():
                        setattr(result, counter, getattr(result, counter) + count)
                processed += 1
            self.db.commit()
            self._progress(
                "update",
                products_processed=processed,
                categories_created=result.categories_created,
                genres_created=result.genres_created,
                platforms_created=result.platforms_created,
                errors=len(result.errors),
            )

        if full_sync and listing_complete:
            fetched_ids = {p.id for p in products}
            self._mark_removed(existing, fetched_ids, result)
        elif full_sync:
            # a partial listing cannot tell a vanished product from an unfetched one
            logger.warning(
                "catalog_mark_removed_skipped",
                extra={"payload": {"product_ids": len(product_ids or []), "fetch_errors": len(result.errors)}},
            )

        catalog_sync_products_total.labels(action="added").inc(result.added)
        catalog_sync_products_total.labels(action="updated").inc(result.updated)
        catalog_sync_products_total.labels(action="removed").inc(result.removed)

        invalidate_quietly(self.cache, CATALOG_PATTERNS)
        self._progress("finish", products_processed=processed, errors=len(result.errors))

        logger.info(
            "catalog_sync_done",
            extra={
                "added": result.added,
                "updated": result.updated,
                "removed": result.removed,
                "categories_created": result.categories_created,
                "genres_created": result.genres_created,
                "platforms_created": result.platforms_created,
                "errors": len(result.errors),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Fetch
    # ------------------------------------------------------------------

    def _fetch_products(self, product_ids: list[str], result: CatalogSyncResult) -> list[ProductRecord]:
        products: list[ProductRecord] = []
        for index, product_id in enumerate(product_ids):
            try:
                product = self.client.get_product(product_id)
                if product is None:
                    result.errors.append(SyncError(product_id=product_id, error="Product not found upstream"))
                else:
                    products.append(product)
            except Exception as e:
                result.errors.append(SyncError(product_id=product_id, error=str(e)))
                logger.error("catalog_product_fetch_failed", extra={"external_product_id": product_id, "error": str(e)})
            if index < len(product_ids) - 1:
                self._sleep(settings.catalog_page_delay_seconds)
        return products

    def _fetch_categories(self, categories: list[str], result: CatalogSyncResult) -> list[ProductRecord]:
        """
        First page of each category sets the page count; a first page that fails
        even after retries aborts the fetch (the job retries the whole run).
        Later failing pages are recorded and skipped.
        """
        products: list[ProductRecord] = []
        for cat_index, category in enumerate(categories):
            first = self._fetch_page(1, category)
            products.extend(first.products)
            self._progress("update", current_page=1, total_pages=first.last_page, products_total=first.total)

            for page in range(2, first.last_page + 1):
                self._sleep(settings.catalog_page_delay_seconds)
                try:
                    response = self._fetch_page(page, category)
                except Exception as e:
                    result.errors.append(SyncError(product_id=f"category-{category}-page-{page}", error=str(e)))
                    logger.error(
                        "catalog_page_failed",
                        extra={"payload": {"category": category, "page": page}, "error": str(e)},
                    )
                    continue
                products.extend(response.products)
                self._progress("update", current_page=page, products_processed=len(products))

            if cat_index < len(categories) - 1:
                self._sleep(settings.catalog_page_delay_seconds)
        logger.info("catalog_fetched", extra={"checked": len(products)})
        return products

    def _fetch_page(self, page: int, category: str):
        return retry_with_backoff(
            lambda: self.client.fetch_products_page(page, category=category),
            settings.catalog_page_retry_attempts,
            settings.catalog_page_retry_delay,
            sleep=self._sleep,
            operation="fetch_products_page",
        )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def _apply_product(
        self,
        product: ProductRecord,
        existing: dict[str, str],
        full_sync: bool,
        include_relationships: bool,
    ) -> tuple[str, str | None, dict[str, int]]:
        """Write one product. Returns (game_id, "added" / "updated" / None, created metadata counts)."""
        now = datetime.now(timezone.utc)
        values = {
            "name": product.name,
            "description": product.description or f"Get {product.name} at the best price!",
            "price": to_money(product.price),
            "original_price": to_money(product.original_price) if product.original_price else None,
            "in_stock": product.in_stock,
            "external_stock": product.stock,
            "image_url": product.image_url,
            "last_sync_at": now,
        }

        outcome = None
        game_id = existing.get(product.id)
        if game_id is None:
            game = Game(external_product_id=product.id, slug=self._unique_slug(product), **values)
            self.db.add(game)
            self.db.flush()
            game_id = game.id
            outcome = "added"
        elif full_sync or self._has_changed(game_id, values):
            self.db.execute(update(Game).where(Game.id == game_id).values(**values))
            outcome = "updated"

        created: dict[str, int] = {}
        if include_relationships:
            created["categories_created"] = self._link(game_id, "categories", product.categories or ["Games"])
            created["genres_created"] = self._link(game_id, "genres", product.genres)
            created["platforms_created"] = self._link(game_id, "platforms", product.platforms)
        return game_id, outcome, created

    def _has_changed(self, game_id: str, values: dict) -> bool:
        game = self.db.get(Game, game_id)
        if game is None:
            return True
        tracked = ("price", "original_price", "in_stock", "external_stock", "description", "image_url")
        for key in tracked:
            current = getattr(game, key)
            if key in ("price", "original_price") and current is not None:
                current = to_money(current)
            if current != values[key]:
                return True
        return False

    def _unique_slug(self, product: ProductRecord) -> str:
        slug = slugify(product.name)
        taken = self.db.query(Game.id).filter(Game.slug == slug).first()
        if taken:
            slug = f"{slug}-{slugify(product.id)}"
        return slug

    def _link(self, game_id: str, kind: str, names: list[str]) -> int:
        """Link game to each named category/genre/platform. Returns how many metadata rows were created."""
        model, table, fk = _RELATIONS[kind]
        created = 0
        for name in dict.fromkeys(names):
            row = self.db.query(model.id).filter(model.name == name).first()
            if row:
                meta_id = row.id
            else:
                obj = model(name=name, slug=slugify(name))
                self.db.add(obj)
                self.db.flush()
                meta_id = obj.id
                created += 1
            linked = self.db.execute(
                select(table.c.game_id).where(table.c.game_id == game_id, getattr(table.c, fk) == meta_id)
            ).first()
            if not linked:
                self.db.execute(insert(table).values(game_id=game_id, **{fk: meta_id}))
        return created

    def _mark_removed(self, existing: dict[str, str], fetched_ids: set[str], result: CatalogSyncResult) -> None:
        for product_id, game_id in existing.items():
            if product_id in fetched_ids:
                continue
            try:
                self.db.execute(
                    update(Game)
                    .where(Game.id == game_id)
                    .values(in_stock=False, last_sync_at=datetime.now(timezone.utc))
                )
                self.db.commit()
                result.removed += 1
            except Exception as e:
                self.db.rollback()
                result.errors.append(SyncError(product_id=product_id, error=str(e)))
                logger.error("catalog_mark_removed_failed", extra={"external_product_id": product_id, "error": str(e)})

    def _progress(self, action: str, **fields) -> None:
        if self.progress is None:
            return
        getattr(self.progress, action)(**fields)
