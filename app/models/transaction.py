"""
Transaction: money movement tied to a user (and optionally an order).
At most one COMPLETED REFUND per order: enforced by a partial unique index
in addition to the check in the cancellation workflow.
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Index, Numeric, String, Text, text

from app.db.base import Base


class TransactionType(str, Enum):
    TOP_UP = "TOP_UP"
    PURCHASE = "PURCHASE"
    REFUND = "REFUND"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


_completed_refund = text("type = 'REFUND' AND status = 'COMPLETED'")


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        Index(
            "uq_transactions_completed_refund_per_order",
            "order_id",
            unique=True,
            postgresql_where=_completed_refund,
            sqlite_where=_completed_refund,
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String, ForeignKey("orders.id"), nullable=True, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    amount = Column(Numeric(12, 2), nullable=False)
    currency = Column(String, nullable=False, default="EUR")
    method = Column(String, nullable=True)
    status = Column(String, nullable=False, default=TransactionStatus.PENDING.value)
    description = Column(Text, nullable=True)
    transaction_hash = Column(String, nullable=True)          # gateway reference (payment intent, capture id, refund id)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
