"""
Order: checkout result. Status changes go through OrderService only.
completed_at is set iff status == COMPLETED; CANCELLED is terminal.
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, Text

from app.db.base import Base


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    status = Column(String, nullable=False, default=OrderStatus.PENDING.value, index=True)
    payment_status = Column(String, nullable=False, default=OrderStatus.PENDING.value)
    payment_method = Column(String, nullable=True)            # "balance" / "stripe" / "paypal" / ...
    total = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    # PURCHASE transaction that paid for the order (if captured)
    transaction_id = Column(String, ForeignKey("transactions.id", use_alter=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancel_reason = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
