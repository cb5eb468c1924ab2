from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict

from app.models.order import OrderStatus


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


class OrderUpdate(BaseModel):
    status: OrderStatus | None = None
    payment_status: OrderStatus | None = None
    payment_method: str | None = None


class OrderCancel(BaseModel):
    reason: str | None = None


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: str
    payment_status: str
    payment_method: str | None = None
    total: Decimal
    currency: str
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None
