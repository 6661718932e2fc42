"""Order selectors for read-only queries.

Ownership is checked here: every read path for a user goes through
get_order() or list_orders().
"""

import logging
from typing import List, NamedTuple, Optional

from django.core.exceptions import ValidationError
from django.db.models import Prefetch

from .exceptions import ForbiddenError, NotFoundError
from .models import Order, OrderItem, OrderStatusEvent

logger = logging.getLogger(__name__)


class OrderPage(NamedTuple):
    """One page of a user's order history."""

    orders: List[Order]
    total: int
    page: int
    total_pages: int
    limit: int


def _with_details(queryset):
    return queryset.prefetch_related(
        Prefetch("items", queryset=OrderItem.objects.order_by("item_id")),
        Prefetch("events", queryset=OrderStatusEvent.objects.order_by("timestamp", "id")),
    )


def get_order(order_id, user) -> Order:
    """Fetch an order owned by the requesting user.

    Args:
        order_id: UUID (or its string form) of the order
        user: The requesting user, or its primary key

    Returns:
        The Order with items and events prefetched

    Raises:
        NotFoundError: If no such order exists
        ForbiddenError: If the order belongs to someone else (a NotFoundError)
    """
    try:
        order = _with_details(Order.objects.all()).get(pk=order_id)
    except (Order.DoesNotExist, ValidationError, ValueError):
        raise NotFoundError(f"Order not found: {order_id}")

    user_id = getattr(user, "pk", user)
    if order.user_id != user_id:
        logger.warning(f"User {user_id} requested order {order.order_number} owned by {order.user_id}")
        raise ForbiddenError(f"Order not found: {order_id}")

    return order


def list_orders(
    user,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
) -> OrderPage:
    """List a user's orders, newest first.

    Args:
        user: The requesting user, or its primary key
        status: Optional status filter ('all' or None for every status)
        page: 1-based page number
        limit: Page size
    """
    page = max(int(page), 1)
    limit = max(int(limit), 1)

    queryset = Order.objects.for_user(user)
    if status and status != "all":
        queryset = queryset.with_status(status)

    total = queryset.count()
    offset = (page - 1) * limit
    orders = list(_with_details(queryset.order_by("-created_at"))[offset:offset + limit])

    return OrderPage(
        orders=orders,
        total=total,
        page=page,
        total_pages=(total + limit - 1) // limit,
        limit=limit,
    )


def get_order_history(order: Order) -> List[OrderStatusEvent]:
    """Status events for an order, oldest first."""
    return list(order.events.order_by("timestamp", "id"))
