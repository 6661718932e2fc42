"""Cancellation and refund coordinator.

cancel_order() re-reads the order under a row lock, refunds the captured
payment if there is one, moves the order to cancelled or refunded, and
only after that commits revokes the access the order granted.

If the refund fails nothing changes. If the revoke fails the cancellation
stands and the revoke is queued for retry.
"""

import logging
from decimal import Decimal

from django.core.mail import EmailMultiAlternatives
from django.db import transaction
from django.utils import timezone

from .conf import get_payment_gateway, get_setting
from .exceptions import (
    ORDER_CANNOT_BE_CANCELLED,
    FulfillmentRetryableError,
    GatewayError,
    InvalidTransitionError,
    RefundFailedError,
)
from .fulfillment import queue_fulfillment_retry, revoke_access
from .lifecycle import CANCELLABLE_STATUSES, is_cancellable
from .models import FulfillmentRetry, Order, OrderStatus, PaymentStatus
from .selectors import get_order
from .services import update_order_status

logger = logging.getLogger(__name__)


def cancel_order(order_id, user, gateway=None) -> Order:
    """
    Cancel an order on behalf of its owner.

    Args:
        order_id: The order to cancel
        user: The requesting user; must own the order
        gateway: Payment gateway for the refund (default ORDERS_PAYMENT_GATEWAY)

    Returns:
        The order, now cancelled (nothing captured) or refunded

    Raises:
        NotFoundError: If the order does not exist or belongs to someone else
        InvalidTransitionError: ORDER_CANNOT_BE_CANCELLED if the order is
            not pending or processing
        RefundFailedError: If the gateway refund failed or timed out; the
            order is unchanged
        ConflictError: If a concurrent writer moved the order first
    """
    order = get_order(order_id, user)

    refund = None
    try:
        with transaction.atomic():
            locked = Order.objects.select_for_update().get(pk=order.pk)

            if not is_cancellable(locked.status):
                raise InvalidTransitionError(
                    f"Cannot cancel order with status: {locked.status}",
                    code=ORDER_CANNOT_BE_CANCELLED,
                )

            if locked.payment_status == PaymentStatus.PAID:
                gateway = gateway or get_payment_gateway()
                try:
                    refund = gateway.refund(locked.payment_id, locked.total)
                except GatewayError as e:
                    logger.warning(f"Refund failed for order {locked.order_number}: {e}")
                    raise RefundFailedError(
                        f"Refund failed for order {locked.order_number}: {e}"
                    ) from e

                order = update_order_status(
                    locked.pk,
                    expected_status=OrderStatus.PROCESSING,
                    new_status=OrderStatus.REFUNDED,
                    fields={
                        "payment_status": PaymentStatus.REFUNDED,
                        "refund_id": refund.refund_id,
                        "cancelled_at": timezone.now(),
                    },
                    message=f"Order cancelled, refund {refund.refund_id} issued",
                )
            else:
                order = update_order_status(
                    locked.pk,
                    expected_status=CANCELLABLE_STATUSES,
                    new_status=OrderStatus.CANCELLED,
                    fields={"cancelled_at": timezone.now()},
                    message="Order cancelled by user",
                )
    except Exception:
        # The money is back with the customer but the order still reads paid.
        if refund is not None:
            logger.error(
                f"Refund {refund.refund_id} issued for payment {order.payment_id} "
                f"but order {order.order_number} was not updated; needs manual reconciliation"
            )
        raise

    try:
        revoke_access(order, reason=f"order {order.status}")
    except FulfillmentRetryableError as e:
        queue_fulfillment_retry(order, FulfillmentRetry.Action.REVOKE, e)
        logger.error(
            f"Order {order.order_number} is {order.status} but access was not revoked: {e}"
        )

    send_cancellation_email(order)
    return order


def send_cancellation_email(order: Order) -> bool:
    """Notify the customer that their order was cancelled.

    Best effort: failures are logged and never undo the cancellation.

    Returns:
        True if an email was sent
    """
    if not get_setting("SEND_CANCELLATION_EMAIL"):
        return False

    to_email = getattr(order.user, "email", "")
    if not to_email:
        logger.debug(f"No email address for order {order.order_number}, skipping notification")
        return False

    lines = [
        f"Your order {order.order_number} has been cancelled.",
    ]
    if order.status == OrderStatus.REFUNDED:
        lines.append(
            f"A refund of {order.currency} {Decimal(order.total) / 100:.2f} has been issued "
            f"under reference {order.refund_id}."
        )

    try:
        email = EmailMultiAlternatives(
            subject=f"Order {order.order_number} cancelled",
            body="\n\n".join(lines),
            from_email=get_setting("DEFAULT_FROM_EMAIL"),
            to=[to_email],
        )
        email.send()
    except Exception as e:
        logger.exception(f"Failed to send cancellation email for order {order.order_number}: {e}")
        return False

    logger.info(f"Cancellation email sent for order {order.order_number}")
    return True
