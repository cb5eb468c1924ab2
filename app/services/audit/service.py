from typing import Any

from sqlalchemy.orm import Session

from app.models.audit_log import AuditLog
from app.core.logging import redact


class AuditService:
    def __init__(self, db: Session) -> None:
        self.db = db

    def log(
        self,
        actor_type: str,
        actor_id: str | None,
        action: str,
        entity_type: str,
        entity_id: str | None,
        payload: dict[str, Any] | None = None,
        commit: bool = True,
    ) -> AuditLog:
        """Persist an audit entry. commit=False leaves it in the caller's unit of work."""
        entry = AuditLog(
            actor_type=actor_type,
            actor_id=actor_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            payload=redact(payload or {}),
        )
        self.db.add(entry)
        if commit:
            self.db.commit()
            self.db.refresh(entry)
        else:
            self.db.flush()
        return entry
