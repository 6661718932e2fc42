"""Order, OrderItem, OrderStatusEvent, AccessGrant and FulfillmentRetry models.

Money amounts are integers in minor currency units (paise, cents).
"""

import uuid
from datetime import date

from django.conf import settings
from django.db import models
from django.db.models import F, Q

from django_orders.exceptions import ImmutableEventError


class OrderStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PROCESSING = 'processing', 'Processing'
    COMPLETED = 'completed', 'Completed'
    CANCELLED = 'cancelled', 'Cancelled'
    REFUNDED = 'refunded', 'Refunded'


class PaymentStatus(models.TextChoices):
    PENDING = 'pending', 'Pending'
    PAID = 'paid', 'Paid'
    FAILED = 'failed', 'Failed'
    REFUNDED = 'refunded', 'Refunded'


class OrderQuerySet(models.QuerySet):
    """Custom queryset for Order model."""

    def for_user(self, user):
        """Return orders owned by the given user (instance or pk)."""
        return self.filter(user_id=getattr(user, 'pk', user))

    def with_status(self, status):
        """Return orders in the given status."""
        return self.filter(status=status)


class Order(models.Model):
    """
    A purchase of one or more catalog items.

    Created pending/pending by checkout; afterwards mutated only through
    services.update_order_status(). Never deleted.

    Invariants (enforced by check constraints):
        total == subtotal - discount + tax
        discount <= subtotal
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_number = models.CharField(max_length=50, unique=True)

    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name='orders',
    )

    status = models.CharField(
        max_length=20,
        choices=OrderStatus.choices,
        default=OrderStatus.PENDING,
        db_index=True,
    )
    payment_status = models.CharField(
        max_length=20,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True,
    )

    # Totals in minor units
    subtotal = models.PositiveBigIntegerField(default=0)
    discount = models.PositiveBigIntegerField(default=0)
    tax = models.PositiveBigIntegerField(default=0)
    total = models.PositiveBigIntegerField(default=0)
    currency = models.CharField(max_length=3, default='INR')
    coupon_code = models.CharField(max_length=50, blank=True, default='')

    # Payment
    payment_method = models.CharField(max_length=50, default='online')
    payment_id = models.CharField(
        max_length=255,
        null=True,
        blank=True,
        unique=True,
        help_text="External gateway payment reference, set once on confirmation",
    )
    gateway_order_id = models.CharField(
        max_length=255,
        blank=True,
        default='',
        db_index=True,
        help_text="Gateway-side order created for the payment step",
    )
    refund_id = models.CharField(max_length=255, blank=True, default='')

    billing_address = models.JSONField(
        default=dict,
        blank=True,
        help_text="Billing address snapshot taken at checkout",
    )

    # Optimistic lock counter, bumped on every transition
    version = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)

    objects = OrderQuerySet.as_manager()

    class Meta:
        app_label = 'django_orders'
        ordering = ['-created_at']
        constraints = [
            models.CheckConstraint(
                condition=Q(total=F('subtotal') - F('discount') + F('tax')),
                name='order_total_reconciles',
            ),
            models.CheckConstraint(
                condition=Q(discount__lte=F('subtotal')),
                name='order_discount_within_subtotal',
            ),
        ]
        indexes = [
            models.Index(fields=['user', 'status'], name='order_user_status_idx'),
        ]

    def __str__(self):
        return f"Order {self.order_number} - {self.total} {self.currency} ({self.status})"

    def check_totals(self):
        """Raise ValueError if money totals do not reconcile."""
        if self.total != self.subtotal - self.discount + self.tax:
            raise ValueError(
                f"Order {self.order_number}: total {self.total} != "
                f"{self.subtotal} - {self.discount} + {self.tax}"
            )
        items_total = sum(item.total for item in self.items.all())
        if items_total != self.subtotal:
            raise ValueError(
                f"Order {self.order_number}: items sum {items_total} != subtotal {self.subtotal}"
            )


class OrderItem(models.Model):
    """
    Line item on an order.

    Unit price is a snapshot taken at checkout and is never re-read
    from the catalog.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(
        Order,
        on_delete=models.CASCADE,
        related_name='items',
    )
    item_id = models.CharField(
        max_length=255,
        help_text="Purchased test/content id",
    )
    title = models.CharField(max_length=255, blank=True, default='')
    quantity = models.PositiveIntegerField()
    price = models.PositiveBigIntegerField(help_text="Unit price at purchase time")
    total = models.PositiveBigIntegerField()

    class Meta:
        app_label = 'django_orders'
        constraints = [
            models.CheckConstraint(
                condition=Q(quantity__gt=0),
                name='orderitem_quantity_positive',
            ),
            models.CheckConstraint(
                condition=Q(total=F('price') * F('quantity')),
                name='orderitem_total_is_price_times_quantity',
            ),
        ]

    def __str__(self):
        return f"{self.quantity}x {self.title or self.item_id}"


class OrderStatusEvent(models.Model):
    """
    Append-only audit record written on every order transition.

    Events are never modified or deleted.
    """

    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='events',
    )
    status = models.CharField(max_length=20)
    message = models.CharField(max_length=500, blank=True, default='')
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        app_label = 'django_orders'
        ordering = ['timestamp', 'id']

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableEventError(
                f"Cannot modify status event {self.pk} - events are append-only"
            )
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ImmutableEventError(
            f"Cannot delete status event {self.pk} - events are append-only"
        )

    def __str__(self):
        return f"{self.order_id}: {self.status} ({self.message})"


class AccessGrantQuerySet(models.QuerySet):
    """Custom queryset for AccessGrant model."""

    def active(self):
        """Return grants that have not been revoked."""
        return self.filter(revoked_at__isnull=True)

    def revoked(self):
        """Return revoked grants."""
        return self.filter(revoked_at__isnull=False)

    def for_user(self, user):
        return self.filter(user_id=getattr(user, 'pk', user))


class AccessGrant(models.Model):
    """
    Records that a user may consume a purchased item.

    (order, item_id) is unique: it is the idempotency key for grants.
    Revocation sets revoked_at; the row stays for audit.
    """

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.CASCADE,
        related_name='access_grants',
    )
    item_id = models.CharField(max_length=255, db_index=True)
    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='access_grants',
    )
    order_item = models.ForeignKey(
        OrderItem,
        on_delete=models.PROTECT,
        related_name='access_grants',
    )
    granted_at = models.DateTimeField(auto_now_add=True)
    revoked_at = models.DateTimeField(null=True, blank=True, db_index=True)
    revoke_reason = models.CharField(max_length=255, blank=True, default='')

    objects = AccessGrantQuerySet.as_manager()

    class Meta:
        app_label = 'django_orders'
        ordering = ['-granted_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'item_id'],
                name='accessgrant_unique_order_item',
            ),
        ]
        indexes = [
            models.Index(fields=['user', 'item_id'], name='accessgrant_user_item_idx'),
        ]

    def __str__(self):
        return f"{self.user_id} -> {self.item_id} (order {self.order_id})"

    @property
    def is_active(self) -> bool:
        return self.revoked_at is None


class FulfillmentRetry(models.Model):
    """
    Grant or revoke that failed after its status transition committed.

    State machine: pending -> succeeded/failed
    At most one pending row exists per (order, action).
    """

    class Action(models.TextChoices):
        GRANT = 'grant', 'Grant access'
        REVOKE = 'revoke', 'Revoke access'

    class State(models.TextChoices):
        PENDING = 'pending', 'Pending'
        SUCCEEDED = 'succeeded', 'Succeeded'
        FAILED = 'failed', 'Failed'

    order = models.ForeignKey(
        Order,
        on_delete=models.PROTECT,
        related_name='fulfillment_retries',
    )
    action = models.CharField(max_length=10, choices=Action.choices)
    state = models.CharField(
        max_length=20,
        choices=State.choices,
        default=State.PENDING,
    )
    attempts = models.PositiveIntegerField(default=0)
    last_error = models.TextField(blank=True, default='')
    next_attempt_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        app_label = 'django_orders'
        ordering = ['created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['order', 'action'],
                condition=Q(state='pending'),
                name='fulfillmentretry_one_pending_per_action',
            ),
        ]
        indexes = [
            models.Index(fields=['state', 'next_attempt_at'], name='fulfillretry_state_next_idx'),
        ]

    def __str__(self):
        return f"{self.action} for {self.order_id} ({self.state}, {self.attempts} attempts)"


class OrderSequence(models.Model):
    """
    Counter behind human-readable order numbers like "ORD-2026-000123".

    Incremented under select_for_update() by services.next_order_number().
    """

    scope = models.CharField(max_length=50, unique=True)
    current_value = models.PositiveBigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        app_label = 'django_orders'

    def __str__(self):
        return f"{self.scope}: {self.current_value}"

    def format(self, prefix: str, pad_width: int) -> str:
        """Format the current value, e.g. "ORD-2026-000123"."""
        return f"{prefix}{date.today().year}-{str(self.current_value).zfill(pad_width)}"
