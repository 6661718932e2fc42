"""Order services: checkout, order creation and status transitions.

update_order_status() is the only write path for order status. It is a
compare-and-swap: the order row is locked with select_for_update(), the
current status is checked against the caller's expectation, and the
conditional UPDATE also matches the row's version counter so a second
writer can never overwrite a transition it did not see.
"""

import logging
from typing import Iterable, Optional

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from .catalog import Catalog
from .conf import get_catalog, get_payment_gateway, get_setting
from .exceptions import ConflictError, EmptyCartError, InvalidTransitionError, NotFoundError
from .lifecycle import transition_reason, validate_transition
from .models import Order, OrderItem, OrderSequence, OrderStatus, OrderStatusEvent, PaymentStatus
from .pricing import PricingResult, calculate_pricing
from .selectors import get_order

logger = logging.getLogger(__name__)


UPDATABLE_FIELDS = frozenset({
    "payment_status",
    "payment_id",
    "paid_at",
    "completed_at",
    "cancelled_at",
    "refund_id",
})


def next_order_number() -> str:
    """
    Allocate the next order number atomically, e.g. "ORD-2026-000001".

    The sequence row is locked with select_for_update() so concurrent
    checkouts never share a number.
    """
    with transaction.atomic():
        seq, _ = OrderSequence.objects.select_for_update().get_or_create(scope="order")
        seq.current_value += 1
        seq.save(update_fields=["current_value", "updated_at"])
        return seq.format(
            prefix=get_setting("ORDER_NUMBER_PREFIX"),
            pad_width=get_setting("ORDER_NUMBER_PAD_WIDTH"),
        )


@transaction.atomic
def create_order(
    user,
    pricing: PricingResult,
    payment_method: str = "online",
    billing_address: Optional[dict] = None,
) -> Order:
    """
    Persist a priced cart as a pending order.

    Order, items and the initial status event are written in one
    transaction; nothing is persisted if any step fails.

    Args:
        user: The purchasing user
        pricing: Result of pricing.calculate_pricing()
        payment_method: How the customer intends to pay
        billing_address: Optional billing address snapshot

    Returns:
        The created Order (status=pending, payment_status=pending)

    Raises:
        EmptyCartError: If the pricing has no lines
        ValueError: If the pricing totals do not reconcile
    """
    if not pricing.lines:
        raise EmptyCartError("No items in order")

    if pricing.subtotal != sum(line.total for line in pricing.lines):
        raise ValueError(f"Subtotal {pricing.subtotal} does not match line totals")
    if pricing.total != pricing.subtotal - pricing.discount + pricing.tax:
        raise ValueError(
            f"Total {pricing.total} != {pricing.subtotal} - {pricing.discount} + {pricing.tax}"
        )

    order = Order.objects.create(
        order_number=next_order_number(),
        user=user,
        status=OrderStatus.PENDING,
        payment_status=PaymentStatus.PENDING,
        subtotal=pricing.subtotal,
        discount=pricing.discount,
        tax=pricing.tax,
        total=pricing.total,
        currency=pricing.currency,
        coupon_code=pricing.coupon_code,
        payment_method=payment_method or "online",
        billing_address=billing_address or {},
    )

    for line in pricing.lines:
        OrderItem.objects.create(
            order=order,
            item_id=line.item_id,
            title=line.title,
            quantity=line.quantity,
            price=line.unit_price,
            total=line.total,
        )

    OrderStatusEvent.objects.create(
        order=order,
        status=OrderStatus.PENDING,
        message="Order created",
    )

    order.check_totals()

    logger.info(
        f"Created order {order.order_number} for user {order.user_id}: "
        f"{len(pricing.lines)} items, total {order.total} {order.currency}"
    )
    return order


def checkout(
    user,
    items: Iterable,
    coupon_code: Optional[str] = None,
    payment_method: str = "online",
    billing_address: Optional[dict] = None,
    catalog: Optional[Catalog] = None,
) -> Order:
    """Price a cart and create the pending order for it.

    Raises:
        EmptyCartError: If items is empty
        InvalidCartError: If a line is invalid or an item is not purchasable
    """
    items = list(items or [])
    if not items:
        raise EmptyCartError("No items in order")

    pricing = calculate_pricing(items, catalog or get_catalog(), coupon_code=coupon_code)
    return create_order(
        user,
        pricing,
        payment_method=payment_method,
        billing_address=billing_address,
    )


def _expected_statuses(expected_status) -> frozenset:
    if isinstance(expected_status, str):
        return frozenset({expected_status})
    return frozenset(expected_status)


def update_order_status(
    order_id,
    expected_status,
    new_status: str,
    fields: Optional[dict] = None,
    message: str = "",
) -> Order:
    """
    Compare-and-swap an order's status.

    Args:
        order_id: The order to transition
        expected_status: Status (or iterable of statuses) the caller saw
        new_status: Target status; must be a legal transition
        fields: Extra fields to set (payment_status, payment_id, ...)
        message: Status event message (defaults to the transition's reason)

    Returns:
        The refreshed Order

    Raises:
        NotFoundError: If the order does not exist
        ConflictError: If the order is no longer in an expected status, or
            the update would change nothing (duplicate replay)
        InvalidTransitionError: If the transition is not allowed

    Usage:
        update_order_status(
            order.pk,
            expected_status=OrderStatus.PENDING,
            new_status=OrderStatus.PROCESSING,
            fields={'payment_status': PaymentStatus.PAID, 'payment_id': 'pay_123'},
            message='Payment confirmed',
        )
    """
    expected = _expected_statuses(expected_status)
    fields = dict(fields or {})
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update order fields: {sorted(unknown)}")

    with transaction.atomic():
        try:
            order = Order.objects.select_for_update().get(pk=order_id)
        except Order.DoesNotExist:
            raise NotFoundError(f"Order not found: {order_id}")

        current = order.status
        if current not in expected:
            raise ConflictError(
                f"Order {order.order_number} is {current}, expected {sorted(expected)}"
            )

        validate_transition(current, new_status)

        changes = {
            name: value for name, value in fields.items()
            if getattr(order, name) != value
        }
        if new_status == current and not changes:
            raise ConflictError(f"Order {order.order_number} already {current}, nothing to change")
        if "payment_id" in changes and order.payment_id:
            raise ConflictError(
                f"Order {order.order_number} already has payment {order.payment_id}"
            )

        updated = Order.objects.filter(
            pk=order.pk,
            status=current,
            version=order.version,
        ).update(
            status=new_status,
            version=F("version") + 1,
            updated_at=timezone.now(),
            **changes,
        )
        if updated != 1:
            raise ConflictError(f"Order {order.order_number} changed concurrently")

        if new_status == current:
            event_status = changes.get("payment_status", new_status)
        else:
            event_status = new_status
        OrderStatusEvent.objects.create(
            order=order,
            status=event_status,
            message=message or transition_reason(current, new_status),
        )

        order.refresh_from_db()

    logger.info(f"Order {order.order_number}: {current} -> {new_status} ({message or event_status})")
    return order


def complete_order(order_id, message: str = "Order completed") -> Order:
    """Mark a processing order completed (fulfillment or manual completion)."""
    return update_order_status(
        order_id,
        expected_status=OrderStatus.PROCESSING,
        new_status=OrderStatus.COMPLETED,
        fields={"completed_at": timezone.now()},
        message=message,
    )


def start_payment(order_id, user, gateway=None) -> Order:
    """
    Create the gateway order a pending order is paid against.

    Reuses the gateway order if one was already created.

    Raises:
        NotFoundError: If the user does not own the order
        InvalidTransitionError: If the order is not awaiting payment
        GatewayError: If the gateway call fails or times out
    """
    order = get_order(order_id, user)
    if order.status != OrderStatus.PENDING or order.payment_status == PaymentStatus.PAID:
        raise InvalidTransitionError(
            f"Order {order.order_number} is not awaiting payment ({order.status}/{order.payment_status})"
        )
    if order.gateway_order_id:
        return order

    gateway = gateway or get_payment_gateway()
    gateway_order = gateway.create_order(
        amount=order.total,
        currency=order.currency,
        receipt=order.order_number,
    )
    Order.objects.filter(pk=order.pk, gateway_order_id="").update(
        gateway_order_id=gateway_order.id,
        updated_at=timezone.now(),
    )
    order.refresh_from_db()

    logger.info(f"Order {order.order_number}: payment started with gateway order {order.gateway_order_id}")
    return order
