"""
Order lifecycle: validated status transitions and the cancellation/refund workflow.

Cancellation runs as one unit of work under a row lock on the order:
- captured purchase: gateway refund (at most one COMPLETED REFUND per order);
  if the gateway fails, the user's balance is credited and a PENDING REFUND
  is left for manual reconciliation;
- never-captured PENDING/PROCESSING order: balance credit + COMPLETED REFUND;
- keys of an order that never reached COMPLETED are deleted.
Either everything above is committed or nothing is.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.logging import audit
from app.models.game_key import GameKey
from app.models.order import Order, OrderStatus
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.models.user import User
from app.services.audit.service import AuditService
from app.services.cache.service import CacheInvalidator, invalidate_quietly, order_patterns
from app.services.orders.errors import AlreadyCancelled, InvalidTransition, OrderNotFound
from app.services.payments.service import PaymentService
from app.utils.currency import to_money
from app.utils.metrics import order_cancellations_total, order_transitions_total

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, tuple[str, ...]] = {
    OrderStatus.PENDING.value: (OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value),
    OrderStatus.PROCESSING.value: (
        OrderStatus.COMPLETED.value,
        OrderStatus.FAILED.value,
        OrderStatus.CANCELLED.value,
    ),
    OrderStatus.COMPLETED.value: (OrderStatus.CANCELLED.value,),
    OrderStatus.FAILED.value: (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value),
    OrderStatus.CANCELLED.value: (),
}

NEVER_CAPTURED = (OrderStatus.PENDING.value, OrderStatus.PROCESSING.value)


def refund_idempotency_key(order_id: str) -> str:
    return f"order-cancel:{order_id}"


class OrderService:
    def __init__(
        self,
        db: Session,
        payments: PaymentService | None = None,
        cache: CacheInvalidator | None = None,
        actor_id: str | None = None,
    ):
        self.db = db
        self.payments = payments or PaymentService(db)
        self.cache = cache
        self.actor_id = actor_id

    def _lock_order(self, order_id: str) -> Order:
        order = self.db.query(Order).filter(Order.id == order_id).with_for_update().one_or_none()
        if not order:
            raise OrderNotFound(order_id)
        return order

    @staticmethod
    def validate_transition(current: str, requested: str) -> None:
        allowed = list(ALLOWED_TRANSITIONS.get(current, ()))
        if requested not in allowed:
            raise InvalidTransition(current, requested, allowed)

    # ------------------------------------------------------------------
    # Status updates
    # ------------------------------------------------------------------

    def update_order_status(self, order_id: str, new_status: str) -> Order:
        return self.update_order(order_id, status=new_status)

    def update_order(
        self,
        order_id: str,
        status: str | None = None,
        payment_status: str | None = None,
        payment_method: str | None = None,
    ) -> Order:
        """
        Generic admin update. A status change is validated against ALLOWED_TRANSITIONS
        before anything is written; CANCELLED goes through cancel_order.
        """
        status = status.value if isinstance(status, OrderStatus) else status
        if status == OrderStatus.CANCELLED.value:
            order = self.db.query(Order).filter(Order.id == order_id).one_or_none()
            if not order:
                raise OrderNotFound(order_id)
            self.validate_transition(order.status, status)
            if payment_status is not None or payment_method is not None:
                logger.info("order_update_fields_ignored_on_cancel", extra={"order_id": order_id})
            return self.cancel_order(order_id)

        try:
            order = self._lock_order(order_id)
            previous = order.status
            if status is not None:
                self.validate_transition(previous, status)
                order.status = status
                order.completed_at = (
                    datetime.now(timezone.utc) if status == OrderStatus.COMPLETED.value else None
                )
            if payment_status is not None:
                order.payment_status = payment_status
            if payment_method is not None:
                order.payment_method = payment_method

            AuditService(self.db).log(
                "admin",
                self.actor_id,
                "order_updated",
                "order",
                order.id,
                {
                    "old_status": previous,
                    "new_status": order.status,
                    "payment_status": order.payment_status,
                    "payment_method": order.payment_method,
                },
                commit=False,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if status is not None:
            order_transitions_total.labels(from_status=previous, to_status=status).inc()
        logger.info(
            "order_status_updated",
            extra={"order_id": order.id, "old_status": previous, "new_status": order.status},
        )
        invalidate_quietly(self.cache, order_patterns(order.id, order.user_id))
        return order

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_order(self, order_id: str, reason: str | None = None) -> Order:
        """
        Cancel an order and reverse its payment.
        Raises OrderNotFound / AlreadyCancelled; any other failure rolls the whole cancellation back.
        """
        try:
            order = self._lock_order(order_id)
            if order.status == OrderStatus.CANCELLED.value:
                raise AlreadyCancelled(order_id)

            previous = order.status
            total = to_money(order.total)
            description = reason or f"Order {order_id} cancelled by admin"

            order.status = OrderStatus.CANCELLED.value
            order.payment_status = OrderStatus.CANCELLED.value
            order.completed_at = None
            order.cancelled_at = datetime.now(timezone.utc)
            order.cancel_reason = reason

            purchase = self._captured_purchase(order)
            if purchase is not None:
                refund_path = self._refund_purchase(order, purchase, total, description)
            elif previous in NEVER_CAPTURED:
                self._credit_balance(order.user_id, total)
                self._record_refund(
                    order,
                    total,
                    method=order.payment_method or "balance",
                    status=TransactionStatus.COMPLETED.value,
                    description=description,
                )
                refund_path = "balance"
            else:
                refund_path = "none"

            keys_deleted = 0
            if previous != OrderStatus.COMPLETED.value:
                keys_deleted = (
                    self.db.query(GameKey)
                    .filter(GameKey.order_id == order.id)
                    .delete(synchronize_session=False)
                )

            AuditService(self.db).log(
                "admin",
                self.actor_id,
                "order_cancelled",
                "order",
                order.id,
                {
                    "old_status": previous,
                    "reason": reason,
                    "refund_path": refund_path,
                    "amount": str(total),
                    "keys_deleted": keys_deleted,
                },
                commit=False,
            )
            self.db.commit()
        except (OrderNotFound, AlreadyCancelled):
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.exception("order_cancel_failed", extra={"order_id": order_id})
            raise

        order_transitions_total.labels(from_status=previous, to_status=OrderStatus.CANCELLED.value).inc()
        order_cancellations_total.labels(refund_path=refund_path).inc()
        audit(
            logger,
            "order_cancelled",
            order_id=order.id,
            user_id=order.user_id,
            old_status=previous,
            refund_path=refund_path,
            amount=str(total),
            reason=reason,
        )
        invalidate_quietly(self.cache, order_patterns(order.id, order.user_id))
        return order

    def _captured_purchase(self, order: Order) -> Transaction | None:
        if not order.transaction_id:
            return None
        transaction = self.db.query(Transaction).filter(Transaction.id == order.transaction_id).one_or_none()
        if (
            transaction is not None
            and transaction.type == TransactionType.PURCHASE.value
            and transaction.status == TransactionStatus.COMPLETED.value
        ):
            return transaction
        return None

    def _refund_purchase(self, order: Order, purchase: Transaction, total: Decimal, description: str) -> str:
        if self.payments.find_completed_refund(order.id):
            logger.info("order_refund_already_completed", extra={"order_id": order.id})
            return "already_refunded"

        try:
            with self.db.begin_nested():
                self.payments.refund_transaction(
                    purchase.id,
                    reason=description,
                    idempotency_key=refund_idempotency_key(order.id),
                )
            return "gateway"
        except Exception as e:
            logger.error(
                "order_gateway_refund_failed",
                extra={"order_id": order.id, "transaction_id": purchase.id, "error": str(e)},
            )

        self._record_refund(
            order,
            total,
            method=purchase.method,
            status=TransactionStatus.PENDING.value,
            description=f"{description} - refund pending",
        )
        self._credit_balance(order.user_id, total)
        return "gateway_failed"

    def _credit_balance(self, user_id: str, amount: Decimal) -> None:
        user = self.db.query(User).filter(User.id == user_id).with_for_update().one()
        user.balance = to_money(user.balance) + amount
        self.db.flush()

    def _record_refund(
        self, order: Order, amount: Decimal, method: str | None, status: str, description: str
    ) -> Transaction:
        refund = Transaction(
            user_id=order.user_id,
            order_id=order.id,
            type=TransactionType.REFUND.value,
            amount=amount,
            currency=order.currency,
            method=method,
            status=status,
            description=description,
        )
        self.db.add(refund)
        self.db.flush()
        return refund
