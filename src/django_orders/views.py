"""JSON API views for orders and payments.

Errors are reported as {"error": <message>, "code": <code>} with the
exception's http_status.
"""

import json
import logging
from functools import wraps

from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_http_methods, require_POST

from .cancellation import cancel_order
from .exceptions import GatewayError, OrderError, UnauthenticatedError
from .gateways import verify_webhook_signature
from .reconciliation import handle_gateway_event, verify_payment
from .selectors import get_order, list_orders
from .services import checkout, start_payment

logger = logging.getLogger(__name__)


def _error(code: str, message: str, status: int) -> JsonResponse:
    return JsonResponse({"error": message, "code": code}, status=status)


def _json_body(request) -> dict:
    try:
        body = json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        raise OrderError("Request body must be JSON", code="INVALID_REQUEST")
    if not isinstance(body, dict):
        raise OrderError("Request body must be a JSON object", code="INVALID_REQUEST")
    return body


def api_view(view_func):
    """Require a signed-in user and render OrderError/GatewayError as JSON."""

    @wraps(view_func)
    def wrapper(request, *args, **kwargs):
        try:
            if not request.user.is_authenticated:
                raise UnauthenticatedError("Authentication required")
            return view_func(request, *args, **kwargs)
        except OrderError as e:
            return _error(e.code, str(e), e.http_status)
        except GatewayError as e:
            logger.warning(f"Gateway error in {view_func.__name__}: {e}")
            return _error("GATEWAY_ERROR", "Payment gateway unavailable", 502)

    return wrapper


def serialize_order(order) -> dict:
    return {
        "id": str(order.pk),
        "order_number": order.order_number,
        "status": order.status,
        "payment_status": order.payment_status,
        "subtotal": order.subtotal,
        "discount": order.discount,
        "tax": order.tax,
        "total": order.total,
        "currency": order.currency,
        "coupon_code": order.coupon_code,
        "payment_method": order.payment_method,
        "payment_id": order.payment_id,
        "gateway_order_id": order.gateway_order_id or None,
        "billing_address": order.billing_address,
        "created_at": order.created_at.isoformat(),
        "paid_at": order.paid_at.isoformat() if order.paid_at else None,
        "completed_at": order.completed_at.isoformat() if order.completed_at else None,
        "cancelled_at": order.cancelled_at.isoformat() if order.cancelled_at else None,
        "items": [
            {
                "item_id": item.item_id,
                "title": item.title,
                "quantity": item.quantity,
                "price": item.price,
                "total": item.total,
            }
            for item in order.items.all()
        ],
        "events": [
            {
                "status": event.status,
                "message": event.message,
                "timestamp": event.timestamp.isoformat(),
            }
            for event in order.events.all()
        ],
    }


# =============================================================================
# Orders
# =============================================================================


@csrf_exempt
@require_http_methods(["GET", "POST"])
@api_view
def orders(request):
    """GET: paginated order history. POST: checkout a cart."""
    if request.method == "POST":
        body = _json_body(request)
        order = checkout(
            request.user,
            body.get("items") or [],
            coupon_code=body.get("coupon_code"),
            payment_method=body.get("payment_method") or "online",
            billing_address=body.get("billing_address"),
        )
        return JsonResponse({"order": serialize_order(get_order(order.pk, request.user))}, status=201)

    try:
        page = int(request.GET.get("page", 1))
        limit = int(request.GET.get("limit", 10))
    except ValueError:
        return _error("INVALID_REQUEST", "page and limit must be integers", 400)

    result = list_orders(request.user, status=request.GET.get("status"), page=page, limit=limit)
    return JsonResponse({
        "orders": [serialize_order(order) for order in result.orders],
        "pagination": {
            "total": result.total,
            "page": result.page,
            "limit": result.limit,
            "total_pages": result.total_pages,
        },
    })


@require_GET
@api_view
def order_detail(request, order_id):
    """Single order with items and status history."""
    return JsonResponse({"order": serialize_order(get_order(order_id, request.user))})


@csrf_exempt
@require_POST
@api_view
def order_cancel(request, order_id):
    """Cancel an order, refunding a captured payment."""
    order = cancel_order(order_id, request.user)
    return JsonResponse({
        "order": serialize_order(get_order(order.pk, request.user)),
        "refunded": bool(order.refund_id),
    })


@csrf_exempt
@require_POST
@api_view
def order_payment(request, order_id):
    """Create the gateway order the client pays against."""
    order = start_payment(order_id, request.user)
    return JsonResponse({
        "order_id": str(order.pk),
        "gateway_order_id": order.gateway_order_id,
        "amount": order.total,
        "currency": order.currency,
    })


# =============================================================================
# Payments
# =============================================================================


@csrf_exempt
@require_POST
@api_view
def payment_verify(request):
    """Apply the checkout callback (gateway order id, payment id, signature)."""
    body = _json_body(request)
    gateway_order_id = body.get("gateway_order_id") or body.get("razorpay_order_id")
    payment_id = body.get("payment_id") or body.get("razorpay_payment_id")
    signature = body.get("signature") or body.get("razorpay_signature")
    if not (gateway_order_id and payment_id and signature):
        return _error(
            "INVALID_REQUEST",
            "gateway_order_id, payment_id and signature are required",
            400,
        )

    order = verify_payment(request.user, gateway_order_id, payment_id, signature)
    return JsonResponse({"success": True, "order": serialize_order(get_order(order.pk, request.user))})


@csrf_exempt
@require_POST
def payment_webhook(request):
    """
    Gateway webhook endpoint.

    Rejects unsigned or badly signed requests with 400. Once the signature
    verifies, processing errors are logged and answered with 200 so the
    gateway does not keep redelivering an event that cannot succeed.
    """
    signature = request.headers.get("X-Razorpay-Signature", "")
    if not signature:
        logger.warning("Webhook without X-Razorpay-Signature header")
        return _error("INVALID_SIGNATURE", "Missing signature header", 400)
    if not verify_webhook_signature(request.body, signature):
        logger.warning("Webhook with invalid signature")
        return _error("INVALID_SIGNATURE", "Invalid signature", 400)

    try:
        event = json.loads(request.body)
    except (ValueError, UnicodeDecodeError):
        event = None
    if not isinstance(event, dict):
        logger.error("Webhook body is not a JSON object")
        return JsonResponse({"error": "Error processing webhook"}, status=200)

    try:
        handle_gateway_event(event)
    except (OrderError, GatewayError, ValueError) as e:
        logger.error(f"Error processing {event.get('event')} webhook: {e}")
        return JsonResponse({"error": "Error processing event"}, status=200)

    return JsonResponse({"received": True})
