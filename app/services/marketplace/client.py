"""
Upstream marketplace client (httpx sync client).
Sync interface: used from Celery workers and scripts, no event loop.

All prices returned by this client already carry the configured markup.
"""
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
import pybreaker

from app.core.config import settings
from app.services.catalog.batching import chunked
from app.services.circuit_breaker import get_circuit_breaker
from app.utils.currency import apply_markup
from app.utils.metrics import marketplace_request_duration_seconds, marketplace_requests_total


logger = logging.getLogger(__name__)


class MarketplaceError(Exception):
    """Upstream call failed. retryable=False means a retry cannot help (4xx other than 429)."""

    def __init__(self, message: str, status_code: int | None = None, retryable: bool = True):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class MarketplaceRequestError(MarketplaceError):
    """Rejected request (bad id, validation). Does not count against the circuit breaker."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message, status_code=status_code, retryable=False)


@dataclass
class StockResult:
    product_id: str
    available: bool
    stock: int


@dataclass
class ProductRecord:
    id: str
    name: str
    price: Decimal
    original_price: Decimal | None = None
    stock: int = 0
    description: str | None = None
    image_url: str | None = None
    categories: list[str] = field(default_factory=list)
    genres: list[str] = field(default_factory=list)
    platforms: list[str] = field(default_factory=list)

    @property
    def in_stock(self) -> bool:
        return self.stock > 0


@dataclass
class ProductPage:
    products: list[ProductRecord]
    page: int
    last_page: int
    total: int


def _first(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, "", 0):
            return value
    return None


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _names(value: Any) -> list[str]:
    """Upstream sends either ["Action"] or [{"id": 1, "name": "Action"}] or a bare string."""
    if not value:
        return []
    if isinstance(value, (str, dict)):
        value = [value]
    names = []
    for item in value:
        name = item.get("name") if isinstance(item, dict) else item
        if name:
            names.append(str(name).strip())
    return [n for n in names if n]


def parse_stock(data: dict[str, Any]) -> int:
    raw = _first(data, "qty", "stock", "quantity", "available")
    try:
        return max(int(raw or 0), 0)
    except (TypeError, ValueError):
        return 0


def parse_product(data: dict[str, Any], markup_percent: Decimal) -> ProductRecord:
    raw_price = _decimal(_first(data, "minPrice", "price", "retailPrice")) or Decimal(0)
    raw_original = _decimal(_first(data, "retailPrice", "originalPrice"))
    images = data.get("images") if isinstance(data.get("images"), list) else []
    image_url = images[0] if images else _first(data, "coverImage", "thumbnail", "smallImage")
    return ProductRecord(
        id=str(data["id"]),
        name=str(data.get("name") or data["id"]),
        price=apply_markup(raw_price, markup_percent),
        original_price=apply_markup(raw_original, markup_percent) if raw_original else None,
        stock=parse_stock(data),
        description=data.get("description"),
        image_url=image_url,
        categories=_names(data.get("categories")),
        genres=_names(data.get("genres") or data.get("genre")),
        platforms=_names(data.get("platforms") or data.get("platform")),
    )


class MarketplaceClient:
    """
    Sync client for the upstream marketplace.
    Uses httpx sync client; every request goes through the marketplace circuit breaker.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        markup_percent: Decimal | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
        http_client: httpx.Client | None = None,
    ) -> None:
        self._base_url = (base_url or settings.marketplace_api_url).rstrip("/")
        self._api_key = api_key if api_key is not None else settings.marketplace_api_key
        self._timeout = timeout or settings.marketplace_timeout
        self.markup_percent = (
            markup_percent if markup_percent is not None else settings.marketplace_markup_percent
        )
        self._breaker = breaker or get_circuit_breaker("marketplace", exclude=[MarketplaceRequestError])
        self._headers = {"Authorization": f"Bearer {self._api_key}", "Accept": "application/json"}
        self._client = http_client

    @property
    def client(self) -> httpx.Client:
        """Lazy initialization of httpx client."""
        if self._client is None:
            self._client = httpx.Client(base_url=self._base_url, timeout=self._timeout)
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "MarketplaceClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _get(self, endpoint: str, path: str, params: dict | None = None) -> Any:
        return self._breaker.call(self._request, endpoint, path, params)

    def _request(self, endpoint: str, path: str, params: dict | None) -> Any:
        start = time.time()
        status = "error"
        try:
            try:
                resp = self.client.get(path, params=params, headers=self._headers)
            except httpx.TransportError as e:
                raise MarketplaceError(f"{endpoint}: transport error: {e}") from e
            status = str(resp.status_code)
            if resp.status_code == 429 or resp.status_code >= 500:
                raise MarketplaceError(
                    f"{endpoint}: upstream returned {resp.status_code}",
                    status_code=resp.status_code,
                )
            if resp.status_code >= 400:
                raise MarketplaceRequestError(
                    f"{endpoint}: upstream rejected request ({resp.status_code})",
                    status_code=resp.status_code,
                )
            try:
                return resp.json()
            except ValueError as e:
                raise MarketplaceError(f"{endpoint}: invalid JSON response") from e
        finally:
            marketplace_requests_total.labels(endpoint=endpoint, status=status).inc()
            marketplace_request_duration_seconds.labels(endpoint=endpoint).observe(time.time() - start)

    # ------------------------------------------------------------------
    # Stock / price
    # ------------------------------------------------------------------

    def check_stock(self, product_id: str) -> StockResult:
        """Stock is part of the product payload (qty / stock / quantity / available)."""
        data = self._get("check_stock", f"/products/{product_id}")
        stock = parse_stock(data or {})
        logger.debug("stock_checked", extra={"external_product_id": product_id, "checked": stock})
        return StockResult(product_id=product_id, available=stock > 0, stock=stock)

    def get_bulk_prices(self, product_ids: list[str]) -> dict[str, Decimal]:
        """Current prices (markup applied) keyed by product id. Products without a price are omitted."""
        prices: dict[str, Decimal] = {}
        for chunk in chunked(list(product_ids), settings.marketplace_price_chunk_size):
            data = self._get("bulk_prices", "/products", params={"ids": ",".join(chunk)})
            for item in (data or {}).get("data", []):
                raw = _decimal(_first(item, "minPrice", "price", "retailPrice"))
                if raw is not None and raw > 0:
                    prices[str(item["id"])] = apply_markup(raw, self.markup_percent)
        return prices

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    def get_product(self, product_id: str) -> ProductRecord | None:
        try:
            data = self._get("product", f"/products/{product_id}")
        except MarketplaceRequestError as e:
            if e.status_code == 404:
                return None
            raise
        return parse_product(data, self.markup_percent) if data else None

    def fetch_products_page(self, page: int = 1, per_page: int | None = None, category: str | None = None) -> ProductPage:
        params: dict[str, Any] = {"page": page, "perPage": per_page or settings.marketplace_page_size}
        if category:
            params["category"] = category
        data = self._get("products_page", "/products", params=params) or {}
        meta = data.get("meta") or {}
        products = [parse_product(item, self.markup_percent) for item in data.get("data", [])]
        return ProductPage(
            products=products,
            page=int(meta.get("currentPage") or page),
            last_page=int(meta.get("lastPage") or page),
            total=int(meta.get("total") or len(products)),
        )
