"""Fulfillment services: access grants for paid orders.

When an order is paid, grant_access() records one AccessGrant per order
item. When a paid order is refunded or cancelled, revoke_access() flags the
grants that came from that order and no others. Both are idempotent.

A grant or revoke that fails after its status transition committed is not
lost: it is queued as a FulfillmentRetry and replayed by
process_fulfillment_retries() (see the retry_fulfillment command).
"""

import logging
from datetime import timedelta
from typing import List, NamedTuple

from django.db import DatabaseError, IntegrityError, transaction
from django.utils import timezone

from .conf import get_setting
from .exceptions import FulfillmentRetryableError
from .models import AccessGrant, FulfillmentRetry, Order, OrderStatus, PaymentStatus

logger = logging.getLogger(__name__)


GRANTABLE_STATUSES = frozenset({OrderStatus.PROCESSING, OrderStatus.COMPLETED})


def _is_grantable(order: Order) -> bool:
    return order.status in GRANTABLE_STATUSES and order.payment_status == PaymentStatus.PAID


def grant_access(order: Order) -> List[AccessGrant]:
    """Grant the purchasing user access to every item in a paid order.

    Grants are keyed by (order, item_id), so calling this again for the
    same order returns the existing grants without creating new ones.

    Args:
        order: The order to fulfill

    Returns:
        List of AccessGrants for the order (new and existing). Empty when
        the order is not paid and processing/completed.

    Raises:
        FulfillmentRetryableError: If the grants could not be written
    """
    grants = []
    created_count = 0
    try:
        with transaction.atomic():
            # Same row lock as cancel_order; check status on the locked row.
            locked = Order.objects.select_for_update().get(pk=order.pk)
            if not _is_grantable(locked):
                logger.info(
                    f"Skipping grant for order {locked.order_number}: "
                    f"status={locked.status} payment_status={locked.payment_status}"
                )
                return []

            for item in locked.items.all():
                grant, created = AccessGrant.objects.get_or_create(
                    order=locked,
                    item_id=item.item_id,
                    defaults={
                        "user_id": locked.user_id,
                        "order_item": item,
                    },
                )
                grants.append(grant)
                created_count += int(created)
    except DatabaseError as e:
        raise FulfillmentRetryableError(
            f"Could not grant access for order {order.order_number}: {e}"
        ) from e

    logger.info(
        f"Fulfilled order {order.order_number}: {created_count} new grants, "
        f"{len(grants) - created_count} already present"
    )
    return grants


def revoke_access(order: Order, reason: str = "") -> int:
    """Revoke access granted by one order.

    Grants for the same user and item that came from other orders are
    left alone. Already revoked grants keep their original revoked_at.

    Returns:
        Number of grants revoked by this call

    Raises:
        FulfillmentRetryableError: If the grants could not be updated
    """
    try:
        with transaction.atomic():
            revoked = AccessGrant.objects.filter(order=order).active().update(
                revoked_at=timezone.now(),
                revoke_reason=reason or f"order {order.status}",
            )
    except DatabaseError as e:
        raise FulfillmentRetryableError(
            f"Could not revoke access for order {order.order_number}: {e}"
        ) from e

    logger.info(f"Revoked {revoked} grants for order {order.order_number}")
    return revoked


def user_has_access(user, item_id: str) -> bool:
    """Check whether a user holds an active grant for an item."""
    return AccessGrant.objects.for_user(user).active().filter(item_id=item_id).exists()


# =============================================================================
# Retries
# =============================================================================


def _backoff(attempts: int) -> timedelta:
    return timedelta(seconds=int(get_setting("RETRY_BACKOFF_SECONDS")) * 2 ** attempts)


def queue_fulfillment_retry(order: Order, action: str, error) -> FulfillmentRetry:
    """Queue a failed grant or revoke for a later attempt.

    At most one pending retry exists per (order, action); queueing again
    only records the latest error.
    """
    try:
        retry, created = FulfillmentRetry.objects.get_or_create(
            order=order,
            action=action,
            state=FulfillmentRetry.State.PENDING,
            defaults={
                "last_error": str(error),
                "next_attempt_at": timezone.now() + _backoff(0),
            },
        )
    except IntegrityError:
        retry = FulfillmentRetry.objects.get(
            order=order,
            action=action,
            state=FulfillmentRetry.State.PENDING,
        )
        created = False

    if not created:
        retry.last_error = str(error)
        retry.save(update_fields=["last_error", "updated_at"])

    logger.warning(f"Queued {action} retry for order {order.order_number}: {error}")
    return retry


class RetryRun(NamedTuple):
    """Outcome of one process_fulfillment_retries() pass."""

    succeeded: int
    rescheduled: int
    failed: int


def _run_action(retry: FulfillmentRetry) -> None:
    order = retry.order
    if retry.action == FulfillmentRetry.Action.GRANT:
        grant_access(order)
    elif retry.action == FulfillmentRetry.Action.REVOKE:
        revoke_access(order)
    else:
        raise ValueError(f"Unknown fulfillment action: {retry.action}")


def process_fulfillment_retries(limit: int = 100) -> RetryRun:
    """Replay due fulfillment retries.

    A retry that fails again is rescheduled with exponential backoff
    (ORDERS_RETRY_BACKOFF_SECONDS * 2**attempts). After
    ORDERS_FULFILLMENT_MAX_ATTEMPTS attempts it is marked failed and logged
    at ERROR for manual follow-up.

    Args:
        limit: Maximum number of retries to process

    Returns:
        RetryRun with succeeded/rescheduled/failed counts
    """
    max_attempts = int(get_setting("FULFILLMENT_MAX_ATTEMPTS"))
    due = list(
        FulfillmentRetry.objects.select_related("order")
        .filter(
            state=FulfillmentRetry.State.PENDING,
            next_attempt_at__lte=timezone.now(),
        )
        .order_by("next_attempt_at")[:limit]
    )

    succeeded = rescheduled = failed = 0
    for retry in due:
        retry.attempts += 1
        try:
            _run_action(retry)
        except FulfillmentRetryableError as e:
            retry.last_error = str(e)
            if retry.attempts >= max_attempts:
                retry.state = FulfillmentRetry.State.FAILED
                failed += 1
                logger.error(
                    f"Giving up {retry.action} for order {retry.order.order_number} "
                    f"after {retry.attempts} attempts: {e}"
                )
            else:
                retry.next_attempt_at = timezone.now() + _backoff(retry.attempts)
                rescheduled += 1
        else:
            retry.state = FulfillmentRetry.State.SUCCEEDED
            succeeded += 1
            logger.info(f"Retried {retry.action} for order {retry.order.order_number}")

        retry.save(update_fields=["attempts", "state", "last_error", "next_attempt_at", "updated_at"])

    return RetryRun(succeeded=succeeded, rescheduled=rescheduled, failed=failed)
