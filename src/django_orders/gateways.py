"""Payment gateway implementations for django-orders.

The engine never processes cards itself. It talks to a gateway through the
PaymentGateway interface: create the gateway-side order for the payment
step, look up a payment's outcome, and refund a captured payment. Every
call is bounded by ORDERS_GATEWAY_TIMEOUT; a timeout raises
GatewayTimeoutError instead of hanging.
"""

import hashlib
import hmac
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

import httpx

from django_orders.conf import get_setting
from django_orders.exceptions import GatewayError, GatewayTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GatewayOrder:
    """Gateway-side order created for the payment step."""

    id: str
    amount: int
    currency: str
    receipt: str = ""


@dataclass(frozen=True)
class PaymentConfirmation:
    """Settled outcome of a payment: 'paid', 'failed' or 'pending'."""

    payment_id: str
    outcome: str
    gateway_order_id: str = ""


@dataclass(frozen=True)
class RefundResult:
    """Refund accepted by the gateway."""

    refund_id: str
    amount: int
    status: str = "processed"


class PaymentGateway(ABC):
    """Abstract base class for payment gateways."""

    @abstractmethod
    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        """Create the gateway-side order the client pays against."""
        pass

    @abstractmethod
    def confirm_payment(self, payment_id: str) -> PaymentConfirmation:
        """Look up the settled outcome of a payment."""
        pass

    @abstractmethod
    def refund(self, payment_id: str, amount: int) -> RefundResult:
        """Refund a captured payment. Raises GatewayError on failure."""
        pass


class RazorpayGateway(PaymentGateway):
    """Razorpay REST API gateway."""

    PAYMENT_OUTCOMES = {
        "captured": "paid",
        "failed": "failed",
        "refunded": "failed",
    }

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.key_id = key_id if key_id is not None else get_setting('RAZORPAY_KEY_ID')
        self.key_secret = key_secret if key_secret is not None else get_setting('RAZORPAY_KEY_SECRET')
        self.timeout = timeout if timeout is not None else float(get_setting('GATEWAY_TIMEOUT'))
        self.client = httpx.Client(
            base_url=base_url or get_setting('RAZORPAY_BASE_URL'),
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=transport,
        )

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            logger.warning(f"Razorpay {method} {path} timed out after {self.timeout}s")
            raise GatewayTimeoutError(f"Gateway timed out on {method} {path}") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"Gateway request failed on {method} {path}: {e}") from e

        if response.is_error:
            try:
                description = response.json().get("error", {}).get("description", "")
            except ValueError:
                description = response.text
            raise GatewayError(
                f"Gateway returned {response.status_code} on {method} {path}: {description}"
            )
        return response.json()

    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        data = self._request(
            "POST",
            "/orders",
            json={"amount": amount, "currency": currency, "receipt": receipt},
        )
        return GatewayOrder(id=data["id"], amount=data["amount"], currency=data["currency"], receipt=receipt)

    def confirm_payment(self, payment_id: str) -> PaymentConfirmation:
        data = self._request("GET", f"/payments/{payment_id}")
        return PaymentConfirmation(
            payment_id=data["id"],
            outcome=self.PAYMENT_OUTCOMES.get(data.get("status"), "pending"),
            gateway_order_id=data.get("order_id") or "",
        )

    def refund(self, payment_id: str, amount: int) -> RefundResult:
        data = self._request("POST", f"/payments/{payment_id}/refund", json={"amount": amount})
        return RefundResult(
            refund_id=data["id"],
            amount=data.get("amount", amount),
            status=data.get("status", "processed"),
        )


@dataclass
class MockGateway(PaymentGateway):
    """
    In-memory gateway for development and tests.

    Usage:
        gateway = MockGateway(payments={'pay_1': 'paid'})
        gateway.refund('pay_1', 58646)
        gateway.refunds  # [RefundResult(...)]

        gateway.fail_refunds = True   # next refund raises GatewayError
        gateway.timeout = True        # every call raises GatewayTimeoutError
    """

    payments: dict = field(default_factory=dict)
    orders: list = field(default_factory=list)
    refunds: list = field(default_factory=list)
    fail_refunds: bool = False
    timeout: bool = False

    def _check_timeout(self):
        if self.timeout:
            raise GatewayTimeoutError("Mock gateway timed out")

    def create_order(self, amount: int, currency: str, receipt: str) -> GatewayOrder:
        self._check_timeout()
        order = GatewayOrder(id=f"order_{uuid.uuid4().hex[:14]}", amount=amount, currency=currency, receipt=receipt)
        self.orders.append(order)
        return order

    def confirm_payment(self, payment_id: str) -> PaymentConfirmation:
        self._check_timeout()
        return PaymentConfirmation(payment_id=payment_id, outcome=self.payments.get(payment_id, "pending"))

    def refund(self, payment_id: str, amount: int) -> RefundResult:
        self._check_timeout()
        if self.fail_refunds:
            raise GatewayError(f"Refund declined for {payment_id}")
        result = RefundResult(refund_id=f"rfnd_{uuid.uuid4().hex[:14]}", amount=amount)
        self.refunds.append(result)
        return result


def _hmac_sha256(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(
    gateway_order_id: str,
    payment_id: str,
    signature: str,
    secret: Optional[str] = None,
) -> bool:
    """Verify the checkout signature: HMAC-SHA256 of "<order_id>|<payment_id>"."""
    secret = secret if secret is not None else get_setting('RAZORPAY_KEY_SECRET')
    if not secret or not signature:
        return False
    expected = _hmac_sha256(secret, f"{gateway_order_id}|{payment_id}".encode())
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(body: bytes, signature: str, secret: Optional[str] = None) -> bool:
    """Verify a webhook: HMAC-SHA256 of the raw request body."""
    secret = secret if secret is not None else get_setting('WEBHOOK_SECRET')
    if not secret or not signature:
        return False
    return hmac.compare_digest(_hmac_sha256(secret, body), signature)
