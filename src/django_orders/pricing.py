"""Cart pricing.

Computes subtotal, discount, tax and total for a cart. Pure: reads prices
from the catalog collaborator and writes nothing. The result is frozen into
OrderItem snapshots by services.create_order().
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional

from django_orders.catalog import Catalog
from django_orders.conf import get_setting, get_tax_rate
from django_orders.exceptions import InvalidCartError, NotPurchasableError


@dataclass(frozen=True)
class CartLine:
    """Requested item and quantity."""

    item_id: str
    quantity: int


@dataclass(frozen=True)
class PricedLine:
    """A cart line with its unit price snapshot."""

    item_id: str
    quantity: int
    unit_price: int
    total: int
    title: str = ""


@dataclass(frozen=True)
class PricingResult:
    """Money totals for a cart, all in minor units."""

    lines: List[PricedLine]
    subtotal: int
    discount: int
    tax: int
    total: int
    currency: str
    coupon_code: str = ""


def round_half_up(amount: Decimal) -> int:
    """Round to the nearest minor unit, halves away from zero."""
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class CouponDiscounts:
    """
    Coupon lookup backed by the ORDERS_COUPONS setting.

    Each coupon is {'type': 'percentage'|'fixed', 'value': ...}. Percentage
    values are fractions of the subtotal; fixed values are minor units.
    Discounts never exceed the subtotal.
    """

    def __init__(self, coupons: Optional[dict] = None):
        self.coupons = coupons if coupons is not None else get_setting('COUPONS')

    def resolve(self, code: Optional[str]) -> Optional[str]:
        """Return the normalized coupon code, or None if unknown."""
        if not code:
            return None
        normalized = code.strip().upper()
        return normalized if normalized in self.coupons else None

    def discount_for(self, code: Optional[str], subtotal: int) -> int:
        normalized = self.resolve(code)
        if normalized is None:
            return 0

        rule = self.coupons[normalized]
        value = Decimal(str(rule['value']))
        if rule['type'] == 'percentage':
            discount = round_half_up(Decimal(subtotal) * value)
        elif rule['type'] == 'fixed':
            discount = int(value)
        else:
            raise ValueError(f"Unknown coupon type for {normalized}: {rule['type']}")

        return max(0, min(discount, subtotal))


def _normalize_line(line) -> CartLine:
    if isinstance(line, CartLine):
        return line
    if isinstance(line, dict):
        return CartLine(item_id=line.get('item_id'), quantity=line.get('quantity'))
    item_id, quantity = line
    return CartLine(item_id=item_id, quantity=quantity)


def calculate_pricing(
    items: Iterable,
    catalog: Catalog,
    coupon_code: Optional[str] = None,
    tax_rate: Optional[Decimal] = None,
    discounts: Optional[CouponDiscounts] = None,
) -> PricingResult:
    """
    Price a cart.

    Args:
        items: CartLine objects, (item_id, quantity) tuples or
               {'item_id': ..., 'quantity': ...} dicts.
        catalog: Price lookup collaborator.
        coupon_code: Optional coupon; unknown codes are ignored.
        tax_rate: Fraction applied to subtotal - discount (default ORDERS_TAX_RATE).
        discounts: Coupon collaborator (default CouponDiscounts()).

    Returns:
        PricingResult with subtotal, discount, tax and total.

    Raises:
        InvalidCartError: If a quantity is not a positive integer or an item
            is not purchasable.

    Usage:
        result = calculate_pricing(
            [('t1', 1), ('t2', 2)],
            catalog=get_catalog(),
        )
        # 9900 + 2 * 19900 = 49700, tax 18% = 8946, total 58646
    """
    tax_rate = get_tax_rate() if tax_rate is None else Decimal(str(tax_rate))
    discounts = discounts or CouponDiscounts()

    priced_lines: List[PricedLine] = []
    for raw_line in items:
        try:
            line = _normalize_line(raw_line)
        except (TypeError, ValueError) as e:
            raise InvalidCartError(f"Malformed cart line: {raw_line!r}") from e

        if not line.item_id:
            raise InvalidCartError(f"Cart line has no item: {raw_line!r}")
        if isinstance(line.quantity, bool) or not isinstance(line.quantity, int) or line.quantity <= 0:
            raise InvalidCartError(
                f"Quantity must be a positive integer for {line.item_id}, got {line.quantity!r}"
            )

        try:
            price = catalog.get_purchasable_price(line.item_id)
        except NotPurchasableError as e:
            raise InvalidCartError(str(e)) from e

        priced_lines.append(
            PricedLine(
                item_id=str(line.item_id),
                quantity=line.quantity,
                unit_price=price.unit_price,
                total=price.unit_price * line.quantity,
                title=price.title,
            )
        )

    subtotal = sum(line.total for line in priced_lines)
    discount = discounts.discount_for(coupon_code, subtotal)
    tax = round_half_up(Decimal(subtotal - discount) * tax_rate)

    return PricingResult(
        lines=priced_lines,
        subtotal=subtotal,
        discount=discount,
        tax=tax,
        total=subtotal - discount + tax,
        currency=get_setting('CURRENCY'),
        coupon_code=(discounts.resolve(coupon_code) or "") if discount else "",
    )
