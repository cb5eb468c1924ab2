import json
import logging
from logging.handlers import RotatingFileHandler
from datetime import datetime, timezone
from typing import Any

from app.core.config import settings


REDACTED = "[REDACTED]"

# Substrings of field names that are never emitted as-is
SENSITIVE_KEYS = ("api_key", "apikey", "secret", "token", "password", "authorization", "card", "hash")


def redact(payload: dict[str, Any]) -> dict[str, Any]:
    """Return a copy of payload with sensitive keys masked (recurses into dicts)."""
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if any(s in key.lower() for s in SENSITIVE_KEYS):
            out[key] = REDACTED
        elif isinstance(value, dict):
            out[key] = redact(value)
        else:
            out[key] = value
    return out


class JsonFormatter(logging.Formatter):
    """JSON log formatter with support for extra fields."""

    # Fields to extract from log record's extra dict
    EXTRA_FIELDS = (
        "request_id", "path", "method", "status_code", "latency_ms", "error",
        "game_id", "external_product_id", "order_id", "user_id", "transaction_id",
        "old_status", "new_status", "amount", "reason", "refund_path",
        "checked", "stock_updated", "price_updated", "errors", "batches",
        "added", "updated", "removed", "categories_created", "genres_created",
        "platforms_created", "attempt", "max_attempts", "delay_seconds", "operation",
        "pattern", "deleted", "lock", "job", "skipped", "payload", "audit",
        "breaker_name", "old_state", "new_state",
    )

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extra = {}
        for field in self.EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                extra[field] = value
        payload.update(redact(extra))

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, ensure_ascii=False, default=str)


def audit(logger: logging.Logger, event: str, **fields: Any) -> None:
    """Emit an audit record; sensitive fields are masked before the record is built."""
    logger.info(event, extra={"audit": True, "payload": redact(fields)})


def configure_logging() -> None:
    formatter = JsonFormatter()
    handler = logging.StreamHandler()
    handler.setFormatter(formatter)
    root = logging.getLogger()
    root.setLevel(settings.log_level.upper())
    handlers = [handler]
    if settings.log_file:
        file_handler = RotatingFileHandler(
            settings.log_file,
            maxBytes=settings.log_max_bytes,
            backupCount=settings.log_backup_count,
        )
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    root.handlers = handlers
