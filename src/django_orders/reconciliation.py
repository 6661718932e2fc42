"""Payment reconciliation.

Applies settled payment outcomes to orders. Outcomes arrive from three
places: the client-side checkout callback (verify_payment), gateway
webhooks (handle_gateway_event) and explicit lookups
(reconcile_with_gateway). All of them funnel into on_payment_confirmed(),
which is safe to call any number of times for the same payment.
"""

import logging
from typing import Optional

from django.utils import timezone

from .conf import get_payment_gateway
from .exceptions import (
    ConflictError,
    FulfillmentRetryableError,
    GatewayError,
    InvalidSignatureError,
    NotFoundError,
)
from .fulfillment import grant_access, queue_fulfillment_retry
from .gateways import verify_payment_signature
from .models import FulfillmentRetry, Order, OrderStatus, PaymentStatus
from .selectors import get_order
from .services import update_order_status

logger = logging.getLogger(__name__)


PAYMENT_OUTCOMES = frozenset({"paid", "failed"})


def _apply_paid(order_id, payment_id: str) -> Order:
    try:
        return update_order_status(
            order_id,
            expected_status=OrderStatus.PENDING,
            new_status=OrderStatus.PROCESSING,
            fields={
                "payment_status": PaymentStatus.PAID,
                "payment_id": payment_id,
                "paid_at": timezone.now(),
            },
            message="Payment confirmed",
        )
    except ConflictError:
        order = Order.objects.get(pk=order_id)

    if order.payment_id and order.payment_id != payment_id:
        logger.error(
            f"Order {order.order_number} already paid by {order.payment_id}, "
            f"ignoring second payment {payment_id}"
        )
    elif order.status in (OrderStatus.CANCELLED, OrderStatus.REFUNDED):
        # Captured after cancellation; the money needs a manual refund.
        logger.error(
            f"Payment {payment_id} captured for {order.status} order {order.order_number}"
        )
    else:
        logger.info(f"Payment {payment_id} already applied to order {order.order_number}")
    return order


def _apply_failed(order_id) -> Order:
    try:
        return update_order_status(
            order_id,
            expected_status=OrderStatus.PENDING,
            new_status=OrderStatus.PENDING,
            fields={"payment_status": PaymentStatus.FAILED},
            message="Payment failed",
        )
    except ConflictError:
        order = Order.objects.get(pk=order_id)
        logger.info(f"Ignoring payment failure for order {order.order_number} ({order.status}/{order.payment_status})")
        return order


def on_payment_confirmed(order_id, payment_id: str, outcome: str) -> Order:
    """
    Apply a settled payment outcome to an order.

    paid: pending -> processing with payment_status=paid, then grant access.
    A replay finds the order already processing and still (re)attempts the
    idempotent grant, so a crash between the two steps heals on redelivery.

    failed: order stays pending with payment_status=failed. A replay is a
    no-op.

    Never calls the gateway.

    Args:
        order_id: Our order id
        payment_id: Gateway payment id
        outcome: 'paid' or 'failed'

    Returns:
        The order after the outcome was applied

    Raises:
        ValueError: If outcome is not 'paid' or 'failed'
        NotFoundError: If the order does not exist
    """
    if outcome not in PAYMENT_OUTCOMES:
        raise ValueError(f"Unknown payment outcome: {outcome!r}")

    if not Order.objects.filter(pk=order_id).exists():
        raise NotFoundError(f"Order not found: {order_id}")

    if outcome == "failed":
        return _apply_failed(order_id)

    order = _apply_paid(order_id, payment_id)
    try:
        grant_access(order)
    except FulfillmentRetryableError as e:
        queue_fulfillment_retry(order, FulfillmentRetry.Action.GRANT, e)
        logger.error(f"Order {order.order_number} paid but access not granted: {e}")
    return order


def _find_by_gateway_order(gateway_order_id: str) -> Optional[Order]:
    if not gateway_order_id:
        return None
    return Order.objects.filter(gateway_order_id=gateway_order_id).first()


def verify_payment(user, gateway_order_id: str, payment_id: str, signature: str) -> Order:
    """Apply a checkout callback after checking its signature.

    Raises:
        InvalidSignatureError: If the signature does not verify
        NotFoundError: If the user has no order for this gateway order
    """
    if not verify_payment_signature(gateway_order_id, payment_id, signature):
        logger.warning(f"Invalid payment signature for gateway order {gateway_order_id}")
        raise InvalidSignatureError("Invalid payment signature")

    order = _find_by_gateway_order(gateway_order_id)
    if order is None:
        raise NotFoundError(f"No order for gateway order {gateway_order_id}")
    get_order(order.pk, user)

    return on_payment_confirmed(order.pk, payment_id, "paid")


def _payment_entity(event: dict) -> dict:
    return ((event.get("payload") or {}).get("payment") or {}).get("entity") or {}


def handle_gateway_event(event: dict) -> Optional[Order]:
    """
    Dispatch a verified gateway webhook event.

    Handles payment.captured, payment.failed and order.paid (fallback for a
    missed capture). payment.authorized and unknown events are logged and
    ignored.

    Returns:
        The affected order, or None when the event changes nothing
    """
    event_type = event.get("event", "")
    logger.info(f"Received gateway event {event_type} ({event.get('id', '')})")

    if event_type in ("payment.captured", "payment.failed"):
        payment = _payment_entity(event)
        outcome = "paid" if event_type == "payment.captured" else "failed"
    elif event_type == "order.paid":
        gateway_order = ((event.get("payload") or {}).get("order") or {}).get("entity") or {}
        payment = _payment_entity(event)
        if not payment:
            payments = (gateway_order.get("payments") or {}).get("entities") or []
            payment = payments[0] if payments else {}
        if payment.get("status") != "captured":
            logger.info(f"order.paid for {gateway_order.get('id')} without a captured payment")
            return None
        outcome = "paid"
    elif event_type == "payment.authorized":
        logger.info(f"Payment authorized but not captured yet: {_payment_entity(event).get('id')}")
        return None
    else:
        logger.info(f"Unhandled gateway event type: {event_type}")
        return None

    payment_id = payment.get("id") or ""
    if not payment_id:
        logger.warning(f"Ignoring {event_type} without a payment id for gateway order {payment.get('order_id')}")
        return None

    order = _find_by_gateway_order(payment.get("order_id", ""))
    if order is None:
        logger.warning(f"No order for gateway order {payment.get('order_id')} ({event_type})")
        return None

    return on_payment_confirmed(order.pk, payment_id, outcome)


def reconcile_with_gateway(order_id, payment_id: str, gateway=None) -> Order:
    """
    Ask the gateway for a payment's outcome and apply it.

    A gateway error or timeout is classified as 'failed'; a payment the
    gateway still reports as pending leaves the order untouched.
    """
    gateway = gateway or get_payment_gateway()
    try:
        outcome = gateway.confirm_payment(payment_id).outcome
    except GatewayError as e:
        logger.warning(f"Gateway lookup for payment {payment_id} failed, treating as failed: {e}")
        outcome = "failed"

    if outcome == "pending":
        logger.info(f"Payment {payment_id} still pending at the gateway")
        try:
            return Order.objects.get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFoundError(f"Order not found: {order_id}")

    return on_payment_confirmed(order_id, payment_id, outcome)
