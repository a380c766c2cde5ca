"""
Plain-text receipts sized for a 58mm thermal roll (32 columns).

render_receipt() is pure: same job in, same bytes out. Currency and dates are
formatted with fixed rules rather than the host locale.
"""

import textwrap
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Union

from .pricing import ZERO, q, to_decimal

DEFAULT_WIDTH = 32
DEFAULT_FOOTER = "Thank you for shopping with us!"

CURRENCY_SYMBOLS = {
    "USD": "$",
    "CAD": "$",
    "AUD": "$",
    "EUR": "€",
    "GBP": "£",
    "JPY": "¥",
    "INR": "₹",
    "NGN": "₦",
}


@dataclass
class ReceiptLineItem:
    name: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    sku: Optional[str] = None


@dataclass
class ReceiptTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal
    payment_method: str
    currency: str = "USD"
    discount: Decimal = ZERO


@dataclass
class ReceiptPrintJob:
    receipt_number: str
    store_name: str
    timestamp: Union[datetime, str]
    totals: ReceiptTotals
    items: list[ReceiptLineItem] = field(default_factory=list)
    store_address: Optional[str] = None
    cashier: Optional[str] = None
    footer_note: Optional[str] = None
    # Set when the sale is waiting in the offline queue.
    pending_sync: bool = False


def format_currency(value, currency: str) -> str:
    amount = q(value)
    code = (currency or "").upper()
    sign = "-" if amount < 0 else ""
    body = f"{abs(amount):,.2f}"
    symbol = CURRENCY_SYMBOLS.get(code)
    if symbol:
        return f"{sign}{symbol}{body}"
    return f"{sign}{code} {body}".strip()


def format_timestamp(ts: Union[datetime, str]) -> str:
    if isinstance(ts, str):
        ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
    if ts.tzinfo is not None:
        ts = ts.astimezone(timezone.utc)
    return ts.strftime("%Y-%m-%d %H:%M")


def _two_col(left: str, right: str, width: int) -> str:
    gap = width - len(left) - len(right)
    if gap < 2:
        return f"{left}  {right}"
    return left + " " * gap + right


def render_receipt(job: ReceiptPrintJob, width: int = DEFAULT_WIDTH) -> str:
    cur = job.totals.currency
    divider = "-" * width
    lines = [job.store_name.upper()]
    if job.store_address:
        lines.append(job.store_address)
    if job.cashier:
        lines.append(f"Cashier: {job.cashier}")
    lines.append(f"Receipt: {job.receipt_number}")
    lines.append(f"Date: {format_timestamp(job.timestamp)}")
    lines.append(divider)
    for item in job.items:
        lines.extend(textwrap.wrap(f"{item.name} x{item.quantity}", width=width) or [f"x{item.quantity}"])
        lines.append(_two_col(f"  @ {format_currency(item.unit_price, cur)}", format_currency(item.total, cur), width))
    lines.append(divider)
    t = job.totals
    lines.append(_two_col("Subtotal:", format_currency(t.subtotal, cur), width))
    if q(t.discount) > 0:
        lines.append(_two_col("Discount:", "-" + format_currency(t.discount, cur), width))
    lines.append(_two_col("Tax:", format_currency(t.tax, cur), width))
    lines.append(_two_col("TOTAL:", format_currency(t.total, cur), width))
    lines.append(f"Paid via {t.payment_method.upper()}")
    if job.pending_sync:
        lines.append("Pending sync (saved offline)")
    lines.append(divider)
    lines.append(job.footer_note or DEFAULT_FOOTER)
    return "\n".join(lines)


def build_receipt_job(
    payload: dict,
    receipt_number: str,
    store_name: str,
    timestamp: Union[datetime, str],
    currency: str = "USD",
    cashier: Optional[str] = None,
    store_address: Optional[str] = None,
    footer_note: Optional[str] = None,
    pending_sync: bool = False,
) -> ReceiptPrintJob:
    """Map a sale payload (as posted to the server) to a print job."""
    items = []
    for ln in payload.get("items") or []:
        items.append(
            ReceiptLineItem(
                name=str(ln.get("name") or ln.get("productId") or ""),
                quantity=int(ln.get("quantity") or 0),
                unit_price=to_decimal(ln.get("unitPrice")),
                total=to_decimal(ln.get("lineTotal")),
                sku=ln.get("sku"),
            )
        )
    # Promotion savings are already in the unit prices; only redemption is a separate line.
    discount = to_decimal(payload.get("redeemDiscount"))
    tax = to_decimal(payload.get("tax"))
    total = to_decimal(payload.get("total"))
    subtotal = to_decimal(payload.get("subtotal"))
    if payload.get("taxIncluded"):
        # The wire subtotal is pre-tax net of redemption; print it before redemption so the lines add up.
        subtotal = total - tax + discount
    return ReceiptPrintJob(
        receipt_number=receipt_number,
        store_name=store_name,
        store_address=store_address,
        cashier=cashier if cashier is not None else payload.get("cashier"),
        timestamp=timestamp,
        items=items,
        totals=ReceiptTotals(
            subtotal=subtotal,
            discount=discount,
            tax=tax,
            total=total,
            currency=currency,
            payment_method=str(payload.get("paymentMethod") or "cash"),
        ),
        footer_note=footer_note,
        pending_sync=pending_sync,
    )
