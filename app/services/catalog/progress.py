"""
Full catalog sync progress, published to Redis so the admin API can show it
while the sync runs in a worker.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any

import redis

from app.core.config import settings

logger = logging.getLogger(__name__)

PROGRESS_KEY = "catalog_sync:progress"

DEFAULT_PROGRESS: dict[str, Any] = {
    "in_progress": False,
    "current_page": 0,
    "total_pages": 0,
    "products_processed": 0,
    "products_total": 0,
    "categories_created": 0,
    "genres_created": 0,
    "platforms_created": 0,
    "errors": 0,
    "started_at": None,
    "finished_at": None,
}


class SyncProgressStore:
    def __init__(self, client: redis.Redis | None = None, ttl_seconds: int | None = None) -> None:
        self.client = client or redis.Redis.from_url(settings.redis_url, decode_responses=True)
        self.ttl_seconds = ttl_seconds or settings.sync_progress_ttl

    def get(self) -> dict[str, Any]:
        try:
            raw = self.client.get(PROGRESS_KEY)
        except redis.RedisError as e:
            logger.warning("sync_progress_read_error", extra={"error": str(e)})
            raw = None
        if not raw:
            return dict(DEFAULT_PROGRESS)
        try:
            data = json.loads(raw)
        except ValueError:
            return dict(DEFAULT_PROGRESS)
        return {**DEFAULT_PROGRESS, **data}

    def update(self, **fields: Any) -> None:
        """Merge fields into the stored progress. Progress is informational: errors are logged only."""
        try:
            current = self.get()
            current.update(fields)
            self.client.set(PROGRESS_KEY, json.dumps(current, default=str), ex=self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning("sync_progress_write_error", extra={"error": str(e)})

    def start(self) -> None:
        self.update(**{**DEFAULT_PROGRESS, "in_progress": True, "started_at": datetime.now(timezone.utc).isoformat()})

    def finish(self, **fields: Any) -> None:
        self.update(in_progress=False, finished_at=datetime.now(timezone.utc).isoformat(), **fields)
