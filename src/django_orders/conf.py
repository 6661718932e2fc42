"""Django Orders configuration.

All settings can be overridden in your Django settings.py.

Example:
    # settings.py
    ORDERS_CATALOG = 'courses.catalog.PublishedTestCatalog'
    ORDERS_PAYMENT_GATEWAY = 'django_orders.gateways.RazorpayGateway'
    ORDERS_TAX_RATE = Decimal('0.18')
"""

from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured
from django.utils.module_loading import import_string


DEFAULTS = {
    # Money
    'CURRENCY': 'INR',
    'TAX_RATE': Decimal('0.18'),
    'COUPONS': {
        'WELCOME10': {'type': 'percentage', 'value': '0.10'},
        'SAVE20': {'type': 'fixed', 'value': 2000},
    },
    # Order numbers
    'ORDER_NUMBER_PREFIX': 'ORD-',
    'ORDER_NUMBER_PAD_WIDTH': 6,
    # Collaborators (dotted paths)
    'CATALOG': None,
    'PAYMENT_GATEWAY': 'django_orders.gateways.RazorpayGateway',
    # Gateway
    'GATEWAY_TIMEOUT': 10.0,
    'RAZORPAY_BASE_URL': 'https://api.razorpay.com/v1',
    'RAZORPAY_KEY_ID': '',
    'RAZORPAY_KEY_SECRET': '',
    'WEBHOOK_SECRET': '',
    # Fulfillment retries
    'FULFILLMENT_MAX_ATTEMPTS': 5,
    'RETRY_BACKOFF_SECONDS': 30,
    # Notifications
    'SEND_CANCELLATION_EMAIL': True,
    'DEFAULT_FROM_EMAIL': None,
}


def get_setting(name: str, default=None):
    """Get a setting with ORDERS_ prefix, falling back to the app default."""
    if default is None:
        default = DEFAULTS.get(name)
    return getattr(settings, f"ORDERS_{name}", default)


def get_tax_rate() -> Decimal:
    """Tax rate as a Decimal fraction (0.18 = 18%)."""
    return Decimal(str(get_setting('TAX_RATE')))


def get_catalog():
    """Instantiate the configured catalog collaborator."""
    path = get_setting('CATALOG')
    if not path:
        raise ImproperlyConfigured(
            "ORDERS_CATALOG must point to a Catalog implementation"
        )
    return import_string(path)()


def get_payment_gateway():
    """Instantiate the configured payment gateway."""
    return import_string(get_setting('PAYMENT_GATEWAY'))()


# =============================================================================
# DEFAULT SETTINGS REFERENCE
# =============================================================================

# ORDERS_CATALOG = 'courses.catalog.PublishedTestCatalog'  # REQUIRED
# ORDERS_PAYMENT_GATEWAY = 'django_orders.gateways.RazorpayGateway'
# ORDERS_RAZORPAY_KEY_ID / ORDERS_RAZORPAY_KEY_SECRET  # gateway credentials
# ORDERS_WEBHOOK_SECRET  # HMAC secret for gateway webhooks
# ORDERS_GATEWAY_TIMEOUT = 10.0  # seconds, applies to every gateway call
