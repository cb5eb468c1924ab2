"""
PaymentService: refunds of captured payments.

Responsibilities:
- Validation: the transaction exists, is refundable and was not refunded yet
- Routing to the gateway by transaction.method
- Recording the REFUND transaction (COMPLETED / PENDING) in the caller's session

The service never commits: the caller owns the unit of work (order cancellation
runs the refund inside its own transaction).
"""
import logging
from decimal import Decimal

from sqlalchemy.orm import Session

from app.core.logging import audit
from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.services.payments.gateways import (
    PaymentGateway,
    PaymentGatewayError,
    PaymentGatewayFactory,
    RefundRequest,
    RefundResult,
    resolve_gateway,
)
from app.utils.currency import to_money

logger = logging.getLogger(__name__)

REFUNDABLE_TYPES = (TransactionType.TOP_UP.value, TransactionType.PURCHASE.value)


class RefundError(Exception):
    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


class PaymentService:
    def __init__(self, db: Session, gateways: dict[str, PaymentGateway] | None = None):
        self.db = db
        self._gateways = gateways

    @property
    def gateways(self) -> dict[str, PaymentGateway]:
        if self._gateways is None:
            self._gateways = PaymentGatewayFactory.from_settings()
        return self._gateways

    def find_completed_refund(self, order_id: str | None) -> Transaction | None:
        if order_id is None:
            return None
        return (
            self.db.query(Transaction)
            .filter(
                Transaction.order_id == order_id,
                Transaction.type == TransactionType.REFUND.value,
                Transaction.status == TransactionStatus.COMPLETED.value,
            )
            .first()
        )

    def refund_transaction(
        self,
        transaction_id: str,
        amount: Decimal | None = None,
        reason: str | None = None,
        idempotency_key: str | None = None,
    ) -> RefundResult:
        """
        Refund a completed TOP_UP / PURCHASE through its gateway.
        Raises RefundError on validation, PaymentGatewayError when the gateway fails
        or reports the refund as failed / canceled / rejected.
        Money goes back through the gateway: the user's balance is not touched.
        """
        transaction = self.db.query(Transaction).filter(Transaction.id == transaction_id).one_or_none()
        if not transaction:
            raise RefundError("Transaction not found", status_code=404)
        if transaction.type not in REFUNDABLE_TYPES:
            raise RefundError("Transaction type is not refundable")
        if transaction.status != TransactionStatus.COMPLETED.value:
            raise RefundError("Only completed transactions can be refunded")
        if self.find_completed_refund(transaction.order_id):
            raise RefundError("Transaction has already been refunded")

        gateway = resolve_gateway(transaction.method, self.gateways)
        if gateway is None:
            raise RefundError(f"Refund not supported for payment method: {transaction.method}")

        refund_amount = to_money(amount) if amount is not None else abs(to_money(transaction.amount))
        result = gateway.refund(
            RefundRequest(
                reference=transaction.transaction_hash or transaction.id,
                amount=refund_amount,
                currency=transaction.currency,
                reason=reason,
                idempotency_key=idempotency_key,
            )
        )
        if result.failed:
            raise PaymentGatewayError(
                f"{gateway.name} refund {result.status}",
                detail={"refund_id": result.refund_id, "status": result.status},
            )

        refund = Transaction(
            user_id=transaction.user_id,
            order_id=transaction.order_id,
            type=TransactionType.REFUND.value,
            amount=refund_amount,
            currency=transaction.currency,
            method=transaction.method,
            status=(
                TransactionStatus.COMPLETED.value if result.succeeded else TransactionStatus.PENDING.value
            ),
            description=reason or f"Refund for transaction {transaction.id}",
            transaction_hash=result.refund_id,
        )
        self.db.add(refund)
        self.db.flush()

        audit(
            logger,
            "refund_issued",
            transaction_id=transaction.id,
            order_id=transaction.order_id,
            user_id=transaction.user_id,
            amount=str(refund_amount),
            method=transaction.method,
            status=refund.status,
            refund_id=result.refund_id,
        )
        return result
