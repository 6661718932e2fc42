"""Django Orders - Order lifecycle and fulfillment engine for paid content."""

__version__ = "0.1.0"

__all__ = [
    # Models
    "Order",
    "OrderItem",
    "OrderStatusEvent",
    "AccessGrant",
    "FulfillmentRetry",
    # Operations
    "calculate_pricing",
    "checkout",
    "create_order",
    "get_order",
    "update_order_status",
    "grant_access",
    "revoke_access",
    "on_payment_confirmed",
    "cancel_order",
    # Exceptions
    "OrderError",
]


def __getattr__(name):
    """Lazy import to avoid AppRegistryNotReady errors."""
    if name in ("Order", "OrderItem", "OrderStatusEvent", "AccessGrant", "FulfillmentRetry"):
        from django_orders import models
        return getattr(models, name)
    if name == "calculate_pricing":
        from django_orders import pricing
        return getattr(pricing, name)
    if name in ("checkout", "create_order", "update_order_status"):
        from django_orders import services
        return getattr(services, name)
    if name == "get_order":
        from django_orders import selectors
        return getattr(selectors, name)
    if name in ("grant_access", "revoke_access"):
        from django_orders import fulfillment
        return getattr(fulfillment, name)
    if name == "on_payment_confirmed":
        from django_orders import reconciliation
        return getattr(reconciliation, name)
    if name == "cancel_order":
        from django_orders import cancellation
        return getattr(cancellation, name)
    if name == "OrderError":
        from django_orders import exceptions
        return getattr(exceptions, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
