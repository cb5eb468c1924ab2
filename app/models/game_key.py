"""
GameKey: a digital key issued at fulfillment.
Keys bound to an order that never reached COMPLETED are removed on cancellation;
keys of a completed order are already disclosed and stay.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String

from app.db.base import Base


class GameKey(Base):
    __tablename__ = "game_keys"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    game_id = Column(String, ForeignKey("games.id"), nullable=False, index=True)
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    key = Column(String, nullable=False)
    activated = Column(Boolean, nullable=False, default=False)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
