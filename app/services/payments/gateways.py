"""
Payment gateways used for refunds.

Every gateway speaks the same small HTTP contract (POST {api_url}/refunds)
and is configured from PAYMENT_GATEWAYS, e.g.
{"stripe": {"api_url": "...", "api_key": "..."}}.
Calls go through the "payment_gateway" circuit breaker.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

import httpx
import pybreaker

from app.core.config import settings
from app.services.circuit_breaker import get_circuit_breaker
from app.utils.metrics import refunds_total

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = ("succeeded", "completed", "success")
FAILED_STATUSES = ("failed", "canceled", "cancelled", "rejected")


class PaymentGatewayError(Exception):
    """Gateway refused or failed the call; detail holds the sanitized response for logging."""

    def __init__(self, message: str, detail: dict[str, Any] | None = None):
        super().__init__(message)
        self.detail = detail or {}


@dataclass
class RefundRequest:
    """Refund of a captured payment."""
    reference: str                    # gateway payment reference (payment intent, capture id, ...)
    amount: Decimal
    currency: str
    reason: str | None = None
    idempotency_key: str | None = None


@dataclass
class RefundResult:
    refund_id: str | None
    status: str
    amount: Decimal
    currency: str
    raw_response: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return (self.status or "").lower() in SUCCESS_STATUSES

    @property
    def failed(self) -> bool:
        return (self.status or "").lower() in FAILED_STATUSES


class PaymentGateway(ABC):
    """Base class for refund-capable gateways."""

    name = "base"

    def __init__(self, config: dict):
        self.config = config

    @abstractmethod
    def is_available(self) -> bool:
        """Gateway has the credentials it needs."""

    @abstractmethod
    def refund(self, request: RefundRequest) -> RefundResult:
        """Issue a refund. Raises PaymentGatewayError on failure."""


class HttpPaymentGateway(PaymentGateway):
    """Refunds over the gateway's HTTP API (httpx sync client)."""

    name = "http"

    def __init__(
        self,
        config: dict,
        http_client: httpx.Client | None = None,
        breaker: pybreaker.CircuitBreaker | None = None,
    ):
        super().__init__(config)
        self.api_url = (config.get("api_url") or "").rstrip("/")
        self.api_key = config.get("api_key")
        self.timeout = config.get("timeout", settings.payment_gateway_timeout)
        self._client = http_client
        self._breaker = breaker or get_circuit_breaker("payment_gateway")

    def is_available(self) -> bool:
        return bool(self.api_url and self.api_key)

    def refund(self, request: RefundRequest) -> RefundResult:
        if not self.is_available():
            raise PaymentGatewayError(f"{self.name} gateway not configured")
        try:
            result = self._breaker.call(self._post_refund, request)
        except pybreaker.CircuitBreakerError as e:
            refunds_total.labels(method=self.name, status="circuit_open").inc()
            raise PaymentGatewayError(f"{self.name} gateway unavailable: circuit open") from e
        except PaymentGatewayError:
            refunds_total.labels(method=self.name, status="failed").inc()
            raise
        refunds_total.labels(method=self.name, status=result.status.lower()).inc()
        return result

    def _post_refund(self, request: RefundRequest) -> RefundResult:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        if request.idempotency_key:
            headers["Idempotency-Key"] = request.idempotency_key
        payload = {
            "payment_reference": request.reference,
            "amount": str(request.amount),
            "currency": request.currency,
        }
        if request.reason:
            payload["reason"] = request.reason

        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(f"{self.api_url}/refunds", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"{self.name} refund request failed: {e}") from e
        finally:
            if self._client is None:
                client.close()

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400:
            raise PaymentGatewayError(
                f"{self.name} refund rejected ({response.status_code})",
                detail={"status_code": response.status_code, "error": data.get("error")},
            )
        return RefundResult(
            refund_id=data.get("id") or data.get("refund_id"),
            status=str(data.get("status") or "pending"),
            amount=request.amount,
            currency=request.currency,
            raw_response=data,
        )


class StripeGateway(HttpPaymentGateway):
    name = "stripe"


class PayPalGateway(HttpPaymentGateway):
    name = "paypal"


class MollieGateway(HttpPaymentGateway):
    name = "mollie"


class TerminalGateway(HttpPaymentGateway):
    name = "terminal"


class PaymentGatewayFactory:
    """Creates gateways by payment method name."""

    GATEWAYS = {
        "stripe": StripeGateway,
        "paypal": PayPalGateway,
        "mollie": MollieGateway,
        "terminal": TerminalGateway,
    }

    @classmethod
    def create(cls, name: str, config: dict) -> PaymentGateway:
        """
        Create gateway instance by name.

        Raises:
            ValueError: If gateway name is unknown
        """
        gateway_class = cls.GATEWAYS.get(name.lower())
        if not gateway_class:
            available = ", ".join(cls.GATEWAYS.keys())
            raise ValueError(f"Unknown payment gateway: {name}. Available gateways: {available}")

        gateway = gateway_class(config)
        if not gateway.is_available():
            logger.warning("payment_gateway_not_configured", extra={"payload": {"gateway": name}})
        return gateway

    @classmethod
    def from_settings(cls) -> dict[str, PaymentGateway]:
        return {
            name.lower(): cls.create(name, config)
            for name, config in settings.payment_gateways_config.items()
        }


def resolve_gateway(method: str | None, gateways: dict[str, PaymentGateway]) -> PaymentGateway | None:
    """Payment method strings look like "stripe" or "stripe_card": match on the gateway name."""
    method = (method or "").lower()
    if not method:
        return None
    for name, gateway in gateways.items():
        if name in method:
            return gateway
    return None
