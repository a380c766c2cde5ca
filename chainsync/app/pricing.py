"""
Cart totals. Pure functions over Decimal; no state, no I/O.

Tax-exclusive:  total = (subtotal - redeem) + tax(subtotal - redeem)
Tax-inclusive:  total = subtotal - redeem, tax is backed out of it, and the
                displayed subtotal is the pre-tax amount (subtotal + tax == total).
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional

CENT = Decimal("0.01")
ZERO = Decimal("0")


def to_decimal(v, default: Decimal = ZERO) -> Decimal:
    if v is None or v == "":
        return default
    if isinstance(v, Decimal):
        return v
    try:
        d = Decimal(str(v))
    except (InvalidOperation, ValueError):
        return default
    if not d.is_finite():
        return default
    return d


def q(v) -> Decimal:
    return to_decimal(v).quantize(CENT, rounding=ROUND_HALF_UP)


def fmt_amount(v) -> str:
    """Wire format for money: 2-decimal string."""
    return str(q(v))


def line_total(quantity: Optional[int], unit_price) -> Decimal:
    if not quantity or quantity <= 0:
        return q(ZERO)
    return q(to_decimal(unit_price) * quantity)


@dataclass(frozen=True)
class CartSummary:
    item_count: int
    subtotal: Decimal
    gross_subtotal: Decimal
    promotion_discount: Decimal
    redeem_discount: Decimal
    tax: Decimal
    total: Decimal
    tax_rate: Decimal
    tax_included: bool

    def to_dict(self) -> dict:
        return {
            "itemCount": self.item_count,
            "subtotal": fmt_amount(self.subtotal),
            "grossSubtotal": fmt_amount(self.gross_subtotal),
            "promotionDiscount": fmt_amount(self.promotion_discount),
            "redeemDiscount": fmt_amount(self.redeem_discount),
            "tax": fmt_amount(self.tax),
            "total": fmt_amount(self.total),
            "taxRate": str(self.tax_rate),
            "taxIncluded": self.tax_included,
        }


def redeem_discount(gross_subtotal: Decimal, points: int, value_per_point) -> Decimal:
    if not points or points <= 0:
        return q(ZERO)
    value = max(ZERO, to_decimal(value_per_point))
    return min(q(gross_subtotal), q(Decimal(int(points)) * value))


def compute_summary(
    items: Iterable,
    tax_rate,
    tax_included: bool = False,
    redeem_points: int = 0,
    redeem_value=Decimal("0.01"),
) -> CartSummary:
    """
    `items` are CartItem-like: quantity, unit_price and optional list_price.
    Lines with a zero or missing quantity contribute nothing.
    """
    rate = min(Decimal(1), max(ZERO, to_decimal(tax_rate)))
    item_count = 0
    gross = ZERO
    promo = ZERO
    for it in items:
        qty = getattr(it, "quantity", None)
        if not qty or qty <= 0:
            continue
        item_count += qty
        gross += line_total(qty, it.unit_price)
        list_price = getattr(it, "list_price", None)
        if list_price is not None:
            diff = to_decimal(list_price) - to_decimal(it.unit_price)
            if diff > 0:
                promo += q(diff * qty)

    gross = q(gross)
    redeem = redeem_discount(gross, redeem_points, redeem_value)
    net = gross - redeem

    if tax_included:
        total = net
        pre_tax = q(total / (Decimal(1) + rate))
        tax = total - pre_tax
        subtotal = pre_tax
    else:
        tax = q(net * rate)
        total = net + tax
        subtotal = gross

    return CartSummary(
        item_count=item_count,
        subtotal=q(subtotal),
        gross_subtotal=gross,
        promotion_discount=q(promo),
        redeem_discount=redeem,
        tax=q(tax),
        total=q(total),
        tax_rate=rate,
        tax_included=bool(tax_included),
    )


def change_due(amount_received, total) -> Decimal:
    return q(max(ZERO, to_decimal(amount_received) - to_decimal(total)))
