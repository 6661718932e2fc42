"""Exceptions for django-orders.

Every error carries a stable ``code`` and the ``http_status`` the JSON
views report it with.
"""

ORDER_CANNOT_BE_CANCELLED = "ORDER_CANNOT_BE_CANCELLED"


class OrderError(Exception):
    """Base exception for order errors."""

    code = "ORDER_ERROR"
    http_status = 400

    def __init__(self, message="", *, code=None):
        if code is not None:
            self.code = code
        super().__init__(message or self.code)


class InvalidCartError(OrderError):
    """Cart has a bad quantity or an item that cannot be bought."""

    code = "INVALID_CART"


class EmptyCartError(OrderError):
    """Cart has no items."""

    code = "EMPTY_CART"


class NotFoundError(OrderError):
    """Order does not exist for the requesting user."""

    code = "ORDER_NOT_FOUND"
    http_status = 404


class ForbiddenError(NotFoundError):
    """Order exists but belongs to another user.

    Reported to clients exactly like NotFoundError.
    """


class ConflictError(OrderError):
    """Compare-and-swap lost: the order is no longer in the expected state."""

    code = "ORDER_CONFLICT"
    http_status = 409


class InvalidTransitionError(OrderError):
    """Transition is not allowed by the order lifecycle."""

    code = "INVALID_TRANSITION"


class RefundFailedError(OrderError):
    """Gateway refused or timed out on the refund; order left unchanged."""

    code = "REFUND_FAILED"
    http_status = 502


class FulfillmentRetryableError(OrderError):
    """Grant or revoke failed after the status transition committed."""

    code = "FULFILLMENT_RETRY"
    http_status = 503


class UnauthenticatedError(OrderError):
    """No signed-in user."""

    code = "UNAUTHENTICATED"
    http_status = 401


class InvalidSignatureError(OrderError):
    """Gateway signature did not verify."""

    code = "INVALID_SIGNATURE"


class ImmutableEventError(OrderError):
    """Raised when attempting to modify or delete a status event."""

    code = "IMMUTABLE_EVENT"


class NotPurchasableError(Exception):
    """Catalog item is unpublished, deleted or unknown."""

    def __init__(self, item_id):
        self.item_id = item_id
        super().__init__(f"Item is not purchasable: {item_id}")


class GatewayError(Exception):
    """Payment gateway call failed."""

    pass


class GatewayTimeoutError(GatewayError):
    """Payment gateway did not answer within the configured timeout."""

    pass
