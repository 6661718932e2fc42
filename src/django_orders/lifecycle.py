"""Order lifecycle state machine.

    pending -> processing -> completed
    pending/processing -> cancelled
    processing -> refunded

completed, cancelled and refunded are terminal. A failed payment keeps the
order pending and only moves payment_status to failed, which is modelled as
the pending -> pending transition.
"""

from django_orders.exceptions import ORDER_CANNOT_BE_CANCELLED, InvalidTransitionError
from django_orders.models import OrderStatus


TRANSITIONS = {
    (OrderStatus.PENDING, OrderStatus.PROCESSING): "payment confirmed",
    (OrderStatus.PENDING, OrderStatus.PENDING): "payment failed",
    (OrderStatus.PENDING, OrderStatus.CANCELLED): "cancelled before payment",
    (OrderStatus.PROCESSING, OrderStatus.CANCELLED): "cancelled, no payment captured",
    (OrderStatus.PROCESSING, OrderStatus.COMPLETED): "fulfillment completed",
    (OrderStatus.PROCESSING, OrderStatus.REFUNDED): "cancelled, payment refunded",
}

TERMINAL_STATUSES = frozenset({
    OrderStatus.COMPLETED,
    OrderStatus.CANCELLED,
    OrderStatus.REFUNDED,
})

CANCELLABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})

_CANCELLATION_TARGETS = frozenset({OrderStatus.CANCELLED, OrderStatus.REFUNDED})


def can_transition(from_status: str, to_status: str) -> bool:
    """Check whether from_status -> to_status is a legal transition."""
    return (from_status, to_status) in TRANSITIONS


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


def is_cancellable(status: str) -> bool:
    return status in CANCELLABLE_STATUSES


def validate_transition(from_status: str, to_status: str) -> None:
    """
    Raise InvalidTransitionError unless the transition is in the table.

    Cancelling or refunding an order that already reached a terminal
    status reports ORDER_CANNOT_BE_CANCELLED.
    """
    if can_transition(from_status, to_status):
        return

    if to_status in _CANCELLATION_TARGETS and is_terminal(from_status):
        raise InvalidTransitionError(
            f"Cannot cancel order with status: {from_status}",
            code=ORDER_CANNOT_BE_CANCELLED,
        )

    raise InvalidTransitionError(
        f"Cannot move order from {from_status} to {to_status}"
    )


def transition_reason(from_status: str, to_status: str) -> str:
    """Default event message for a legal transition."""
    return TRANSITIONS.get((from_status, to_status), f"Order status updated to {to_status}")
