"""Tests for PaymentService.refund_transaction and the HTTP gateways."""
from decimal import Decimal

import httpx
import pybreaker
import pytest

from app.models.transaction import Transaction, TransactionStatus, TransactionType
from app.services.payments.gateways import (
    HttpPaymentGateway,
    PaymentGatewayError,
    PaymentGatewayFactory,
    RefundRequest,
    StripeGateway,
    resolve_gateway,
)
from app.services.payments.service import PaymentService, RefundError


def _purchase(db, order):
    return db.get(Transaction, order.transaction_id)


class TestRefundTransaction:
    def test_completed_refund_recorded_without_commit(self, db, make_order, payments, gateway):
        order = make_order(status="COMPLETED", paid_by="stripe", total="30.00")
        result = payments.refund_transaction(order.transaction_id, reason="duplicate", idempotency_key="k-1")

        assert result.succeeded
        assert gateway.requests[0].idempotency_key == "k-1"
        refund = db.query(Transaction).filter(Transaction.type == TransactionType.REFUND.value).one()
        assert refund.status == TransactionStatus.COMPLETED.value
        assert Decimal(refund.amount) == Decimal("30.00")
        assert refund.description == "duplicate"

        db.rollback()
        assert db.query(Transaction).filter(Transaction.type == TransactionType.REFUND.value).count() == 0

    def test_pending_gateway_status(self, db, make_order, gateway):
        gateway.status = "pending"
        order = make_order(status="COMPLETED", paid_by="stripe")
        PaymentService(db, gateways={"stripe": gateway}).refund_transaction(order.transaction_id)
        refund = db.query(Transaction).filter(Transaction.type == TransactionType.REFUND.value).one()
        assert refund.status == TransactionStatus.PENDING.value

    @pytest.mark.parametrize("status", ["failed", "canceled", "Rejected"])
    def test_terminal_gateway_status_raises(self, db, make_order, gateway, status):
        gateway.status = status
        order = make_order(status="COMPLETED", paid_by="stripe")
        with pytest.raises(PaymentGatewayError, match=status):
            PaymentService(db, gateways={"stripe": gateway}).refund_transaction(order.transaction_id)
        assert db.query(Transaction).filter(Transaction.type == TransactionType.REFUND.value).count() == 0

    def test_partial_amount(self, db, make_order, payments, gateway):
        order = make_order(status="COMPLETED", paid_by="stripe", total="30.00")
        payments.refund_transaction(order.transaction_id, amount=Decimal("10"))
        assert gateway.requests[0].amount == Decimal("10.00")

    def test_not_found(self, payments):
        with pytest.raises(RefundError) as exc_info:
            payments.refund_transaction("missing")
        assert exc_info.value.status_code == 404

    def test_only_completed_refundable(self, db, make_order, payments):
        order = make_order(status="COMPLETED", paid_by="stripe")
        _purchase(db, order).status = TransactionStatus.PENDING.value
        db.commit()
        with pytest.raises(RefundError, match="completed"):
            payments.refund_transaction(order.transaction_id)

    def test_refund_not_refundable(self, db, make_order, payments):
        order = make_order(status="COMPLETED", paid_by="stripe")
        _purchase(db, order).type = TransactionType.REFUND.value
        db.commit()
        with pytest.raises(RefundError, match="not refundable"):
            payments.refund_transaction(order.transaction_id)

    def test_already_refunded(self, db, make_order, payments, gateway):
        order = make_order(status="COMPLETED", paid_by="stripe")
        payments.refund_transaction(order.transaction_id)
        db.commit()
        with pytest.raises(RefundError, match="already been refunded"):
            payments.refund_transaction(order.transaction_id)
        assert len(gateway.requests) == 1

    def test_unknown_method(self, db, make_order, payments):
        order = make_order(status="COMPLETED", paid_by="crypto")
        with pytest.raises(RefundError, match="not supported"):
            payments.refund_transaction(order.transaction_id)

    def test_gateway_error_propagates(self, db, make_order, gateway):
        gateway.fail = True
        order = make_order(status="COMPLETED", paid_by="stripe")
        with pytest.raises(PaymentGatewayError):
            PaymentService(db, gateways={"stripe": gateway}).refund_transaction(order.transaction_id)


class TestResolveGateway:
    def test_substring_match(self, gateway):
        assert resolve_gateway("Stripe_Card", {"stripe": gateway}) is gateway

    def test_no_method(self, gateway):
        assert resolve_gateway(None, {"stripe": gateway}) is None


class TestFactory:
    def test_create(self):
        gw = PaymentGatewayFactory.create("Stripe", {"api_url": "https://pay.example", "api_key": "sk"})
        assert isinstance(gw, StripeGateway)
        assert gw.is_available()

    def test_unknown(self):
        with pytest.raises(ValueError, match="Available gateways"):
            PaymentGatewayFactory.create("bitcoin", {})


def _http_gateway(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return StripeGateway(
        {"api_url": "https://pay.example/v1", "api_key": "sk_test"},
        http_client=client,
        breaker=pybreaker.CircuitBreaker(fail_max=5),
    )


def _request():
    return RefundRequest(reference="pi_1", amount=Decimal("12.50"), currency="EUR", idempotency_key="order-cancel:o1")


class TestHttpGateway:
    def test_success(self):
        seen = {}

        def handler(request):
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            return httpx.Response(200, json={"id": "re_9", "status": "succeeded"})

        result = _http_gateway(handler).refund(_request())
        assert result.refund_id == "re_9"
        assert result.succeeded
        assert seen["url"] == "https://pay.example/v1/refunds"
        assert seen["headers"]["Idempotency-Key"] == "order-cancel:o1"
        assert seen["headers"]["Authorization"] == "Bearer sk_test"

    def test_rejected(self):
        gw = _http_gateway(lambda request: httpx.Response(402, json={"error": "insufficient funds"}))
        with pytest.raises(PaymentGatewayError) as exc_info:
            gw.refund(_request())
        assert exc_info.value.detail["status_code"] == 402

    def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("connection refused")

        with pytest.raises(PaymentGatewayError, match="request failed"):
            _http_gateway(handler).refund(_request())

    def test_not_configured(self):
        with pytest.raises(PaymentGatewayError, match="not configured"):
            HttpPaymentGateway({}, breaker=pybreaker.CircuitBreaker()).refund(_request())

    def test_open_circuit(self):
        breaker = pybreaker.CircuitBreaker(fail_max=1)
        client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(500, json={})))
        gw = StripeGateway({"api_url": "https://pay.example", "api_key": "sk"}, http_client=client, breaker=breaker)
        with pytest.raises(PaymentGatewayError):
            gw.refund(_request())
        with pytest.raises(PaymentGatewayError, match="circuit open"):
            gw.refund(_request())
