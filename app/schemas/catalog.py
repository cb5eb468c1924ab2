from pydantic import BaseModel


class CatalogSyncRequest(BaseModel):
    full_sync: bool = True
    include_relationships: bool = True
    product_ids: list[str] | None = None
    categories: list[str] | None = None


class ItemErrorOut(BaseModel):
    game_id: str | None = None
    external_product_id: str | None = None
    error: str
    stage: str


class ReconciliationOut(BaseModel):
    checked: int
    stock_updated: int
    price_updated: int
    batches: int
    errors: list[ItemErrorOut]


class TaskQueuedOut(BaseModel):
    task_id: str
    status: str = "queued"


class SyncProgressOut(BaseModel):
    in_progress: bool
    current_page: int = 0
    total_pages: int = 0
    products_processed: int = 0
    products_total: int = 0
    categories_created: int = 0
    genres_created: int = 0
    platforms_created: int = 0
    errors: int = 0
    started_at: str | None = None
    finished_at: str | None = None
